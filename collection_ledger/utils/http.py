import logging
import time
from typing import Any, Dict, Optional

import requests


logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429})


class HttpError(RuntimeError):
    """Non-2xx response (or no response at all) for ``endpoint``.

    ``status`` is ``None`` when the request never produced a response
    (connection error, timeout).
    """

    def __init__(self, status: Optional[int], endpoint: str, message: str = "") -> None:
        self.status = status
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"HTTP {status} on {endpoint}: {message}")

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)


def is_retryable_status(status: Optional[int]) -> bool:
    if status is None:
        return True
    return status in RETRYABLE_STATUSES or 500 <= status < 600


class HttpClient:
    error_class = HttpError

    def __init__(
        self,
        base_url: str,
        rate_limit_per_second: float = 5.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 20.0,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rate_limit_per_second = rate_limit_per_second
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._last_request_at = 0.0
        self.session = requests.Session()
        if headers:
            self.session.headers.update(headers)

    def _sleep_for_rate_limit(self) -> None:
        min_interval = 1.0 / max(self.rate_limit_per_second, 0.1)
        elapsed = time.time() - self._last_request_at
        if elapsed < min_interval:
            time.sleep(min_interval - elapsed)

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2**attempt), self.max_delay)

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{endpoint}"
        last_error: Optional[HttpError] = None
        for attempt in range(self.max_retries):
            self._sleep_for_rate_limit()
            self._last_request_at = time.time()
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = self.error_class(None, endpoint, str(exc))
            else:
                if response.ok:
                    return response.json()
                last_error = self.error_class(response.status_code, endpoint, response.reason or "")
                if not is_retryable_status(response.status_code):
                    raise last_error

            if attempt < self.max_retries - 1:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "%s %s failed (%s), attempt %d/%d, retrying in %.1fs",
                    method, endpoint, last_error.status, attempt + 1, self.max_retries, delay,
                )
                time.sleep(delay)

        logger.error("%s %s failed after %d attempts (%s)", method, endpoint, self.max_retries, last_error.status)
        raise self.error_class(last_error.status, endpoint, "Max retries exceeded")

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("GET", endpoint, params=params)

    def post(self, endpoint: str, payload: Any) -> Any:
        return self._request(
            "POST",
            endpoint,
            json=payload,
            headers={"content-type": "application/json"},
        )
