"""
Retry executor shared by every outbound call.

    with_retry(operation, classify, max_attempts, base_delay) -> result

A failure is classified as transient or permanent. Permanent failures
propagate on the spot; transient ones are retried after
``base_delay * 2 ** (attempt - 1)`` seconds until ``max_attempts`` is reached,
at which point a ``RetryExhaustedError`` carrying a diagnostic hint is raised
from the last error.
"""

import logging
import socket
import time
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import requests
from sqlalchemy.exc import OperationalError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_MESSAGE_MAX = 220


class Classification(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class UpstreamError(Exception):
    """An outbound call returned something other than a usable JSON success."""

    def __init__(self, message: str, status: Optional[int] = None,
                 content_type: Optional[str] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.content_type = content_type
        self.body = body


class RetryExhaustedError(UpstreamError):
    """Final failure of a transient error after every attempt was used."""

    def __init__(self, message: str, status: Optional[int], hint: str, attempts: int,
                 content_type: Optional[str] = None):
        super().__init__(message, status=status, content_type=content_type)
        self.hint = hint
        self.attempts = attempts


def _truncate(value: str, limit: int = ERROR_MESSAGE_MAX) -> str:
    return value if len(value) <= limit else f"{value[:limit]}..."


def extract_status(error: BaseException) -> Optional[int]:
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def extract_content_type(error: BaseException) -> Optional[str]:
    content_type = getattr(error, "content_type", None)
    if isinstance(content_type, str):
        return content_type
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        return headers.get("content-type")
    return None


def _is_network_error(error: BaseException) -> bool:
    return isinstance(
        error,
        (
            requests.ConnectionError,
            requests.Timeout,
            socket.timeout,
            TimeoutError,
            ConnectionError,
            OperationalError,
        ),
    )


def classify_error(error: BaseException) -> Classification:
    """Default classification for HTTP, network and database failures."""
    status = extract_status(error)
    if status is not None:
        if status == 429 or status >= 500:
            return Classification.TRANSIENT
        if 400 <= status < 500:
            return Classification.PERMANENT

    content_type = (extract_content_type(error) or "").lower()
    if content_type and "application/json" not in content_type:
        # HTML or plain text where JSON was expected: a gateway or proxy fault.
        return Classification.TRANSIENT

    if _is_network_error(error):
        return Classification.TRANSIENT
    return Classification.PERMANENT


def diagnostic_hint(error: BaseException) -> str:
    status = extract_status(error)
    content_type = (extract_content_type(error) or "").lower()
    if status == 429:
        return "rate_limited"
    if status is not None and status >= 500:
        return "upstream_5xx"
    if content_type and "application/json" not in content_type:
        return "html_response"
    if _is_network_error(error):
        return "network"
    return "transient"


def _log_retry(label: str, max_attempts: int):
    def before_sleep(retry_state) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            f"[retry] {label}: attempt {retry_state.attempt_number}/{max_attempts} failed "
            f"(status={extract_status(error)}): {_truncate(str(error))}. "
            f"Retrying in {retry_state.next_action.sleep:.2f}s"
        )
    return before_sleep


def with_retry(
    operation: Callable[[], T],
    classify: Callable[[BaseException], Classification] = classify_error,
    max_attempts: int = 4,
    base_delay: float = 0.3,
    label: str = "operation",
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Run ``operation`` under the classification-driven retry policy."""
    max_attempts = max(1, max_attempts)
    attempts = {"count": 0}

    def attempt() -> T:
        attempts["count"] += 1
        return operation()

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        retry=retry_if_exception(lambda e: classify(e) is Classification.TRANSIENT),
        before_sleep=_log_retry(label, max_attempts),
        sleep=sleep,
        reraise=True,
    )
    try:
        return retrying(attempt)
    except Exception as error:
        if classify(error) is not Classification.TRANSIENT:
            raise
        status = extract_status(error)
        hint = diagnostic_hint(error)
        message = (
            f"{label} failed after {attempts['count']} attempts "
            f"(status={status if status is not None else 'unknown'}, hint={hint}): "
            f"{_truncate(str(error))}"
        )
        logger.error(f"[retry] {message}")
        raise RetryExhaustedError(
            message,
            status=status,
            hint=hint,
            attempts=attempts["count"],
            content_type=extract_content_type(error),
        ) from error
