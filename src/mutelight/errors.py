"""
Error taxonomy and result types for MuteLight.

Provides:
- Error classification (transient, expected absence, config, permanent)
- Specific exception types for the different failure modes
- Outcome, the explicit success/failure value every public operation returns
- Async retry with linear or exponential backoff
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp


class ErrorType(Enum):
    """Classification of error types."""
    TRANSIENT = "transient"                # Connectivity, recovered by retry/backoff
    EXPECTED_ABSENCE = "expected_absence"  # Not in a voice channel, not authenticated
    CONFIG = "config"                      # Malformed address, missing target
    PERMANENT = "permanent"                # Reconnect budget exhausted


class MuteLightError(Exception):
    """Base class for MuteLight errors."""
    error_type: ErrorType = ErrorType.TRANSIENT


class TransientError(MuteLightError):
    """Transient error that should be retried."""
    error_type = ErrorType.TRANSIENT


class ConfigurationError(MuteLightError):
    """Invalid configuration or unknown target. Never retried."""
    error_type = ErrorType.CONFIG


class PermanentError(MuteLightError):
    """Permanent error that should not be retried."""
    error_type = ErrorType.PERMANENT


def classify_error(error: BaseException) -> ErrorType:
    """
    Classify an exception into an error type.

    Args:
        error: The exception to classify

    Returns:
        ErrorType classification
    """
    if isinstance(error, MuteLightError):
        return error.error_type
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, OSError)):
        return ErrorType.TRANSIENT
    if isinstance(error, (ValueError, KeyError)):
        return ErrorType.CONFIG

    error_str = str(error).lower()
    if any(x in error_str for x in ['not in a voice channel', 'not authenticated']):
        return ErrorType.EXPECTED_ABSENCE
    if any(x in error_str for x in ['invalid', 'missing', 'not found']):
        return ErrorType.CONFIG

    # Default to transient for unknown errors
    return ErrorType.TRANSIENT


@dataclass
class Outcome:
    """Explicit result of a public operation.

    ``skipped`` marks a deliberate no-op (a disabled state config) which still
    counts as success.
    """
    ok: bool
    message: str = ""
    skipped: bool = False
    data: Any = None
    error_type: Optional[ErrorType] = None

    @classmethod
    def success(cls, data: Any = None, message: str = "") -> "Outcome":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def skip(cls, message: str = "") -> "Outcome":
        return cls(ok=True, message=message, skipped=True)

    @classmethod
    def failure(cls, message: str, error_type: ErrorType = ErrorType.TRANSIENT) -> "Outcome":
        return cls(ok=False, message=message, error_type=error_type)

    @classmethod
    def from_error(cls, error: BaseException) -> "Outcome":
        return cls.failure(str(error) or type(error).__name__, classify_error(error))

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": self.ok}
        if self.message:
            result["message"] = self.message
        if self.skipped:
            result["skipped"] = True
        if self.data is not None:
            result["data"] = self.data
        if self.error_type is not None:
            result["error_type"] = self.error_type.value
        return result


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: Optional[float] = None  # no cap when None
    exponential_base: float = 2.0
    linear: bool = False  # delay grows as initial_delay * n instead of base ** n

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt."""
        if self.linear:
            delay = self.initial_delay * (attempt + 1)
        else:
            delay = self.initial_delay * (self.exponential_base ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


T = TypeVar('T')


async def retry_with_backoff_async(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_failure: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Retry an async function with backoff.

    Args:
        func: Async function to retry (no arguments)
        config: Retry configuration
        sleep: Awaitable used for inter-attempt delays
        on_failure: Called with (attempt number, error) after each failed attempt

    Returns:
        Function result

    Raises:
        Last exception if all retries fail, or immediately for config and
        permanent errors
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if on_failure is not None:
                on_failure(attempt + 1, e)

            error_type = classify_error(e)
            if error_type in (ErrorType.CONFIG, ErrorType.PERMANENT):
                raise

            # Don't sleep after the last attempt
            if attempt == config.max_attempts - 1:
                break

            await sleep(config.delay_for(attempt))

    # All retries failed
    assert last_error is not None
    raise last_error
