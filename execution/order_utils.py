"""
Venue call results, error classification and rate limiting.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Optional, TypeVar

from pybit.exceptions import FailedRequestError, InvalidRequestError
from pydantic import ValidationError

from core.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class VenueErrorKind(str, Enum):
    TRANSIENT = "transient"                # Timeout, rate limit, server busy: try next tick
    REJECTED = "rejected"                  # Venue refused the request as sent
    NOT_MODIFIED = "not_modified"          # Requested state already in place
    INVALID_RESPONSE = "invalid_response"  # Response failed schema validation
    UNAVAILABLE = "unavailable"            # Credentials/permissions or client not configured


# Bybit v5 retCodes, see https://bybit-exchange.github.io/docs/v5/error_code
NOT_MODIFIED_CODES = {
    34040,   # Trading stop not modified
    110043,  # Leverage not modified
}
TRANSIENT_CODES = {
    10002,   # Request time outside recv window
    10006,   # Too many visits
    10010,   # Request expired
    10016,   # Server error / busy
    10018,   # Request duplicate
    130150,  # System error
    131204,  # Request frequently
}
UNAVAILABLE_CODES = {
    10003,   # Invalid API key
    10004,   # Invalid signature
    10005,   # Permission denied
    10009,   # IP mismatch
}


@dataclass(frozen=True)
class VenueError:
    kind: VenueErrorKind
    message: str
    code: Optional[int] = None

    @property
    def is_transient(self) -> bool:
        return self.kind == VenueErrorKind.TRANSIENT

    def __str__(self) -> str:
        code = f" [{self.code}]" if self.code is not None else ""
        return f"{self.kind.value}{code}: {self.message}"


@dataclass(frozen=True)
class VenueResult(Generic[T]):
    """Either ``value`` or ``error``; venue calls never raise into callers."""
    value: Optional[T] = None
    error: Optional[VenueError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def not_modified(self) -> bool:
        return self.error is not None and self.error.kind == VenueErrorKind.NOT_MODIFIED

    @classmethod
    def success(cls, value: T = None) -> "VenueResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: VenueErrorKind, message: str, code: Optional[int] = None) -> "VenueResult[T]":
        return cls(error=VenueError(kind=kind, message=message, code=code))


def classify_ret_code(code: int) -> VenueErrorKind:
    if code in NOT_MODIFIED_CODES:
        return VenueErrorKind.NOT_MODIFIED
    if code in TRANSIENT_CODES:
        return VenueErrorKind.TRANSIENT
    if code in UNAVAILABLE_CODES:
        return VenueErrorKind.UNAVAILABLE
    return VenueErrorKind.REJECTED


def classify_error(exc: BaseException) -> VenueError:
    """Map an exception raised around a venue call onto a ``VenueError``."""
    if isinstance(exc, InvalidRequestError):
        code = getattr(exc, "status_code", None)
        kind = classify_ret_code(code) if isinstance(code, int) else VenueErrorKind.REJECTED
        return VenueError(kind=kind, message=getattr(exc, "message", str(exc)), code=code)
    if isinstance(exc, FailedRequestError):
        # HTTP-level failure after pybit's own retries (5xx, 403 rate limit, network)
        return VenueError(
            kind=VenueErrorKind.TRANSIENT,
            message=getattr(exc, "message", str(exc)),
            code=getattr(exc, "status_code", None),
        )
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return VenueError(kind=VenueErrorKind.TRANSIENT, message=f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ValidationError, KeyError, IndexError, TypeError, ValueError)):
        return VenueError(kind=VenueErrorKind.INVALID_RESPONSE, message=f"{type(exc).__name__}: {exc}")
    return VenueError(kind=VenueErrorKind.TRANSIENT, message=f"{type(exc).__name__}: {exc}")


@dataclass
class RateLimiter:
    """
    Sliding-window rate limiter for API calls.
    Bybit v5 private endpoints allow 10-20 requests/second per UID.
    """
    max_requests: int = 8  # Conservative limit
    window_seconds: float = 1.0
    _requests: list = field(default_factory=list)

    async def async_wait_if_needed(self):
        now = time.monotonic()
        self._requests = [t for t in self._requests if now - t < self.window_seconds]

        if len(self._requests) >= self.max_requests:
            sleep_time = self.window_seconds - (now - self._requests[0])
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
            self._requests = self._requests[1:]

        self._requests.append(time.monotonic())


def calculate_limit_price(market_price: float, side_sign: int, offset: float) -> float:
    """Shift the market price by ``offset`` points in the marketable direction.

    Longs bid slightly above market and shorts offer slightly below, which
    improves the odds of a prompt fill without sending a market order.
    """
    return market_price + side_sign * offset
