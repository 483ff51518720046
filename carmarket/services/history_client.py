"""
Vehicle history and MOT client.

History checks go to the CheckCarDetails provider. MOT history tries the
provider first, then the government MOT API, then a clearly tagged mock
dataset so listing pages keep rendering when both are down.

Transient failures (timeouts, connection/DNS errors, 5xx) are retried with
exponential backoff; client errors fail immediately.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date

import httpx
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from carmarket.config.settings import get_settings
from carmarket.services.history_parser import (
    HistoryCheckResult,
    HistoryParseError,
    MotDefect,
    MotTestRecord,
    parse_dvsa_mot_response,
    parse_history_payload,
    parse_mot_response,
)

logger = logging.getLogger(__name__)


class HistoryApiError(Exception):
    """A history provider call failed after retries, or was rejected outright."""

    def __init__(
        self,
        message: str,
        *,
        original_error: Exception | None = None,
        status_code: int | None = None,
        status_text: str | None = None,
        vrm: str | None = None,
        datapoint: str | None = None,
        test_mode: bool = False,
        is_daily_limit: bool = False,
    ):
        super().__init__(message)
        self.original_error = original_error
        self.status_code = status_code
        self.status_text = status_text
        self.vrm = vrm
        self.datapoint = datapoint
        self.test_mode = test_mode
        self.is_daily_limit = is_daily_limit


class HistoryApiValidationError(HistoryApiError):
    """Registration rejected before any request was made."""


@dataclass
class MotHistoryResult:
    registration: str
    tests: list[MotTestRecord] = field(default_factory=list)
    source: str = "checkcardetails"  # checkcardetails, dvsa, mock

    @property
    def is_mock(self) -> bool:
        return self.source == "mock"


def normalize_registration(registration) -> str:
    if not isinstance(registration, str) or not registration.strip():
        raise HistoryApiValidationError("Registration must be a non-empty string", vrm=None)
    return "".join(registration.split()).upper()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(body, dict):
        return str(body.get("message") or "")
    return ""


def mock_mot_history(registration: str) -> MotHistoryResult:
    """Fixed sample history; never persisted."""
    tests = [
        MotTestRecord(
            test_date=date(2024, 10, 15),
            expiry_date=date(2025, 10, 14),
            test_result="PASSED",
            odometer_value=45000,
            odometer_unit="mi",
            test_number="MOCK-3",
            defects=[MotDefect(type="ADVISORY", text="Nearside front tyre worn close to legal limit")],
            advisory_text=["Nearside front tyre worn close to legal limit"],
        ),
        MotTestRecord(
            test_date=date(2023, 10, 12),
            expiry_date=date(2024, 10, 11),
            test_result="PASSED",
            odometer_value=38000,
            odometer_unit="mi",
            test_number="MOCK-2",
        ),
        MotTestRecord(
            test_date=date(2022, 10, 8),
            test_result="FAILED",
            odometer_value=31000,
            odometer_unit="mi",
            test_number="MOCK-1",
            defects=[MotDefect(type="MAJOR", text="Offside headlamp aim too high")],
        ),
    ]
    return MotHistoryResult(registration=registration, tests=tests, source="mock")


class HistoryApiClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        test_mode: bool = False,
        mot_fallback_url: str | None = None,
        mot_fallback_api_key: str | None = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        sleep=time.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.test_mode = test_mode
        self.mot_fallback_url = mot_fallback_url.rstrip("/") if mot_fallback_url else None
        self.mot_fallback_api_key = mot_fallback_api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings=None) -> "HistoryApiClient":
        settings = settings or get_settings()
        return cls(
            api_key=settings.active_history_api_key,
            base_url=settings.active_history_base_url,
            test_mode=settings.history_test_mode,
            mot_fallback_url=settings.mot_fallback_base_url,
            mot_fallback_api_key=settings.mot_fallback_api_key,
            timeout=settings.history_api_timeout_seconds,
            max_attempts=settings.history_api_max_attempts,
        )

    # --- transport ---

    def _get(self, url: str, params: dict | None = None, headers: dict | None = None):
        resp = httpx.get(url, params=params, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _request(self, url: str, vrm: str, datapoint: str, params=None, headers=None):
        """GET with retries on transient failures; anything else becomes HistoryApiError."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=4),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                "%s request for %s failed (attempt %d), retrying",
                datapoint, vrm, state.attempt_number,
            ),
            reraise=True,
        )
        try:
            return retrying(self._get, url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise self._format_error(exc, vrm, datapoint) from exc
        except ValueError as exc:
            # Body was not JSON
            raise HistoryApiError(
                f"{datapoint} returned an unreadable body for {vrm}",
                original_error=exc, vrm=vrm, datapoint=datapoint, test_mode=self.test_mode,
            ) from exc

    def _format_error(self, exc: httpx.HTTPError, vrm: str, datapoint: str) -> HistoryApiError:
        status_code = None
        status_text = None
        is_daily_limit = False
        message = f"History API {datapoint} failed for {vrm}: {exc}"
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            status_text = exc.response.reason_phrase
            if status_code == 403 and "daily limit" in _error_message(exc.response).lower():
                is_daily_limit = True
                message = "History API daily limit reached; try again tomorrow"
        return HistoryApiError(
            message,
            original_error=exc,
            status_code=status_code,
            status_text=status_text,
            vrm=vrm,
            datapoint=datapoint,
            test_mode=self.test_mode,
            is_daily_limit=is_daily_limit,
        )

    # --- public API ---

    def check_history(self, registration: str) -> HistoryCheckResult:
        vrm = normalize_registration(registration)
        if self.test_mode and "A" not in vrm:
            raise HistoryApiValidationError(
                f"Test mode only accepts registrations containing 'A' (got {vrm})",
                vrm=vrm, datapoint="carhistorycheck", test_mode=True,
            )
        # Failures propagate unlogged; the caller logs them once
        payload = self._request(
            f"{self.base_url}/vehicledata/carhistorycheck",
            vrm,
            "carhistorycheck",
            params={"apikey": self.api_key, "vrm": vrm},
        )
        result = parse_history_payload(payload, test_mode=self.test_mode)
        if result.vrm is None:
            result.vrm = vrm
        return result

    def get_mot_history(self, registration: str) -> MotHistoryResult:
        vrm = normalize_registration(registration)
        try:
            payload = self._request(
                f"{self.base_url}/vehicledata/mothistory",
                vrm,
                "mothistory",
                params={"apikey": self.api_key, "vrm": vrm},
            )
            return MotHistoryResult(vrm, parse_mot_response(payload), "checkcardetails")
        except (HistoryApiError, HistoryParseError) as exc:
            logger.warning("Provider MOT history failed for %s: %s", vrm, exc)

        if self.mot_fallback_url:
            headers = {"x-api-key": self.mot_fallback_api_key} if self.mot_fallback_api_key else None
            try:
                payload = self._request(
                    f"{self.mot_fallback_url}/trade/vehicles/mot-tests",
                    vrm,
                    "mot-tests",
                    params={"registration": vrm},
                    headers=headers,
                )
                return MotHistoryResult(vrm, parse_dvsa_mot_response(payload), "dvsa")
            except (HistoryApiError, HistoryParseError) as exc:
                logger.warning("Government MOT history failed for %s: %s", vrm, exc)

        logger.warning("Both MOT sources unavailable for %s, returning mock history", vrm)
        return mock_mot_history(vrm)
