import logging
import time
from collections.abc import Callable
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# client errors will not change on a retry
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 409, 422})


class RetryPolicy:
    def __init__(
        self,
        attempts: int,
        sleep_sec: float,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.attempts = attempts
        self.sleep_sec = sleep_sec
        self.sleep = sleep


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        super().__init__(
            f"{method} {url} failed after {attempts} attempt(s) ({error_type}: {detail})"
        )


def _status_detail(response: httpx.Response) -> str:
    body = (response.text or "").strip()
    if body:
        return f"HTTP {response.status_code}: {body[:240]}"
    return f"HTTP {response.status_code}"


def request_with_retry(
    client: httpx.Client,
    method: str,
    url: str,
    retry: RetryPolicy,
    *,
    allowed_statuses: frozenset[int] = frozenset(),
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, retrying transport errors and server-side failures.

    Responses whose status is in ``allowed_statuses`` are returned as-is so
    callers can branch on them (e.g. a 404 from the registry).
    """
    error: Exception | None = None
    status_code: int | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempt = 0
    while attempt < retry.attempts:
        attempt += 1
        try:
            response = client.request(method, url, **kwargs)
            if response.status_code in allowed_statuses:
                return response
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            detail = _status_detail(exc.response)
            error_type = exc.__class__.__name__
            if status_code in NON_RETRYABLE_STATUSES:
                break
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            logger.warning(
                "http retry method=%s url=%s attempt=%s/%s detail=%s",
                method,
                url,
                attempt,
                retry.attempts,
                detail,
            )
            retry.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempt,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
    ) from error
