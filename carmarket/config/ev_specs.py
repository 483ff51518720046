"""
Electric vehicle specs by make, model and variant.

Used to fill EV fields the registration lookup does not return. Values are
keyed by Car column name. Models without variant data carry a "default"
entry.
"""


def _spec(range_mi, battery_kwh, charge_h, home_kw, rapid_kw, ten_to_80_min, power_kw, torque_nm, port):
    return {
        "electric_range": range_mi,
        "battery_capacity": battery_kwh,
        "charging_time": charge_h,
        "home_charging_speed": home_kw,
        "rapid_charging_speed": rapid_kw,
        "charging_time_10_to_80": ten_to_80_min,
        "electric_motor_power": power_kw,
        "electric_motor_torque": torque_nm,
        "charging_port_type": port,
    }


_CCS = "Type 2 / CCS"
_SUPERCHARGER = "Tesla Supercharger / Type 2"

EV_SPECS: dict[str, dict[str, dict[str, dict]]] = {
    "BMW": {
        "i4": {
            "M50": _spec(270, 83.9, 8.25, 7.4, 100, 45, 400, 795, _CCS),
            "eDrive40": _spec(365, 83.9, 8.25, 11, 150, 35, 250, 430, _CCS),
        },
        "i3": {
            "default": _spec(190, 42.2, 6, 11, 50, 40, 125, 250, _CCS),
        },
        "iX": {
            "xDrive50": _spec(380, 111.5, 11, 11, 200, 35, 385, 765, _CCS),
        },
    },
    "TESLA": {
        "Model 3": {
            "Standard Range Plus": _spec(267, 54, 8, 11, 170, 25, 211, 375, _SUPERCHARGER),
            "Long Range": _spec(358, 75, 10, 11, 250, 30, 239, 420, _SUPERCHARGER),
            "Performance": _spec(315, 75, 10, 11, 250, 30, 340, 639, _SUPERCHARGER),
        },
        "Model S": {
            "default": _spec(405, 100, 12, 11, 250, 40, 493, 800, _SUPERCHARGER),
        },
        "Model Y": {
            "Long Range": _spec(326, 75, 10, 11, 250, 30, 324, 493, _SUPERCHARGER),
        },
    },
    "AUDI": {
        "e-tron": {
            "default": _spec(250, 95, 9.5, 11, 150, 30, 300, 664, _CCS),
        },
    },
}

# Applied when an electric vehicle is not in EV_SPECS
GENERIC_EV_DEFAULTS: dict = _spec(200, 60, 8, 7.4, 100, 45, 150, 300, _CCS)

EV_FIELDS: tuple[str, ...] = tuple(GENERIC_EV_DEFAULTS)


def _match_model(models: dict, model: str) -> dict | None:
    wanted = model.lower()
    for name, variants in models.items():
        key = name.lower()
        if key == wanted or key in wanted or (wanted and wanted in key):
            return variants
    return None


def lookup_ev_spec(make: str | None, model: str | None, variant: str | None = None) -> dict | None:
    """Look up EV specs with partial model/variant matching. None when unknown."""
    models = EV_SPECS.get((make or "").upper())
    if not models or not model:
        return None
    variants = _match_model(models, model)
    if variants is None:
        return None
    wanted = (variant or "").lower()
    if wanted:
        for name, spec in variants.items():
            if name.lower() == wanted or name.lower() in wanted:
                return dict(spec)
    if "default" in variants:
        return dict(variants["default"])
    return dict(next(iter(variants.values())))
