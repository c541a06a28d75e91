"""Classify provider failures as retryable and compute backoff delays."""

from __future__ import annotations

import errno
import json
import math
import socket
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import litellm

from codeloop.core.stream import StreamParserError
from codeloop.errors import AbortedError

RETRY_INITIAL_DELAY_MS = 2000
RETRY_BACKOFF_FACTOR = 2
RETRY_MAX_DELAY_NO_HEADERS_MS = 30_000
RETRY_MAX_DELAY_MS = 2_147_483_647

TRANSIENT_ERROR_CODES = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "EPIPE",
    "ECONNREFUSED",
    "ENOTFOUND",
    "EAI_AGAIN",
    "UND_ERR_CONNECT_TIMEOUT",
    "UND_ERR_HEADERS_TIMEOUT",
    "UND_ERR_BODY_TIMEOUT",
    "UND_ERR_SOCKET",
})

_OVERLOADED_STATUSES = frozenset({502, 503, 504, 529})


@dataclass(frozen=True)
class RetryableReason:
    message: str
    retry_after_ms: Optional[float] = None


def retry_delay_ms(attempt: int, retry_after_ms: Optional[float] = None) -> int:
    """Delay before retry number ``attempt`` (1-based).

    A positive provider hint wins and is only clamped to the timer ceiling;
    otherwise the delay grows exponentially up to the hint-less cap.
    """
    if retry_after_ms is not None and math.isfinite(retry_after_ms) and retry_after_ms > 0:
        return min(math.ceil(retry_after_ms), RETRY_MAX_DELAY_MS)
    computed = RETRY_INITIAL_DELAY_MS * RETRY_BACKOFF_FACTOR ** max(0, attempt - 1)
    return min(computed, RETRY_MAX_DELAY_NO_HEADERS_MS)


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _cause(error: BaseException) -> Any:
    return error.__cause__ or _get(error, "cause")


def get_status_code(error: BaseException) -> Optional[int]:
    response = _get(error, "response")
    cause = _cause(error)
    candidates = [
        _get(error, "status_code"),
        _get(error, "status"),
        _get(response, "status_code"),
        _get(response, "status"),
        _get(cause, "status_code") if cause is not None else None,
        _get(cause, "status") if cause is not None else None,
    ]
    for value in candidates:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                continue
    return None


def get_response_headers(error: BaseException) -> dict[str, str]:
    cause = _cause(error)
    candidates = [
        _get(error, "litellm_response_headers"),
        _get(error, "headers"),
        _get(_get(error, "response"), "headers"),
    ]
    if cause is not None:
        candidates += [_get(cause, "headers"), _get(_get(cause, "response"), "headers")]
    for value in candidates:
        if value is None:
            continue
        try:
            items = value.items()
        except AttributeError:
            continue
        headers = {str(k).lower(): v for k, v in items if isinstance(v, str)}
        if headers:
            return headers
    return {}


def parse_retry_after_ms(headers: Mapping[str, str], now: Optional[float] = None) -> Optional[float]:
    """Read ``retry-after-ms`` or ``retry-after`` (seconds or HTTP date)."""
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return float(raw_ms)
        except ValueError:
            pass

    raw = headers.get("retry-after")
    if raw:
        try:
            return float(math.ceil(float(raw) * 1000))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            return None
        delta_ms = (when.timestamp() - (time.time() if now is None else now)) * 1000
        if delta_ms > 0:
            return float(math.ceil(delta_ms))
    return None


def get_error_code(error: BaseException) -> Optional[str]:
    for candidate in (error, _cause(error)):
        if candidate is None:
            continue
        code = _get(candidate, "code")
        if isinstance(code, str) and code.strip():
            return code.strip()
        if isinstance(candidate, socket.gaierror):
            return "ENOTFOUND"
        err_no = _get(candidate, "errno")
        if isinstance(err_no, int) and err_no in errno.errorcode:
            return errno.errorcode[err_no]
    return None


def _is_abort(error: BaseException) -> bool:
    return isinstance(error, (AbortedError, KeyboardInterrupt)) or type(error).__name__ == "AbortError"


def _classify_json_body(message: str) -> Optional[str]:
    try:
        body = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(body, dict):
        return None
    inner = body.get("error") if isinstance(body.get("error"), dict) else {}
    body_type = body.get("type") if isinstance(body.get("type"), str) else ""
    error_type = inner.get("type") if isinstance(inner.get("type"), str) else ""
    error_code = inner.get("code") if isinstance(inner.get("code"), str) else ""
    code = body.get("code") if isinstance(body.get("code"), str) else ""
    error_message = inner.get("message") if isinstance(inner.get("message"), str) else ""

    if body_type == "error" and error_type == "too_many_requests":
        return "Too Many Requests"
    if body_type == "error" and ("rate_limit" in error_code or "rate_limit" in code):
        return "Rate limited"
    if "exhausted" in code or "unavailable" in code:
        return "Provider is overloaded"
    if "no_kv_space" in error_message or (body_type == "error" and error_type == "server_error") or body.get("error"):
        return "Provider server error"
    return None


def classify_retryable(error: BaseException) -> Optional[RetryableReason]:
    """Return why ``error`` is worth retrying, or None if it is fatal.

    Cancellation is never retryable. HTTP status wins over error codes,
    which win over message heuristics; a JSON error body is the last resort.
    """
    if _is_abort(error):
        return None

    status = get_status_code(error)
    retry_after_ms = parse_retry_after_ms(get_response_headers(error))

    def reason(message: str) -> RetryableReason:
        return RetryableReason(message, retry_after_ms)

    if status == 429:
        return reason("Too Many Requests")
    if status in _OVERLOADED_STATUSES:
        return reason("Provider is overloaded")
    if status is not None and status >= 500:
        return reason("Provider server error")

    code = get_error_code(error)
    if code in TRANSIENT_ERROR_CODES:
        return reason("Network error")
    if isinstance(error, StreamParserError):
        return reason("Stream interrupted")
    if isinstance(error, (litellm.APIConnectionError, litellm.Timeout, ConnectionError, TimeoutError)):
        return reason("Network error")

    message = str(_get(error, "message") or error or "")
    lower = message.lower()
    if "terminated" in lower:
        return reason("Connection terminated")
    if "socket hang up" in lower:
        return reason("Network error")
    if "rate limit" in lower or "too many requests" in lower:
        return reason("Rate limited")
    if "overloaded" in lower or "exhausted" in lower or "unavailable" in lower:
        return reason("Provider is overloaded")
    if "no_kv_space" in lower or "server_error" in lower or "internal server error" in lower:
        return reason("Provider server error")

    body_reason = _classify_json_body(message)
    if body_reason:
        return reason(body_reason)
    return None
