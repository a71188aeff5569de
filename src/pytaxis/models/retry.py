"""
Retry policies for work-unit execution.

Design Pattern: Strategy Pattern
The engine asks a RetryPolicy how long to wait after a failed attempt and
stops once the policy has no further delay to offer. No retries unless a
policy says otherwise (RetryPolicy.NONE).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times a unit is attempted and how long to back off in between.

    Delays grow geometrically from ``initial_delay_ms`` by
    ``backoff_multiplier`` and are capped at ``max_delay_ms``.

    Examples:
        RetryPolicy.STANDARD
        RetryPolicy.with_max_attempts(5)
        RetryPolicy(max_attempts=4, initial_delay_ms=250, max_delay_ms=2000,
                    backoff_multiplier=3.0)
    """

    max_attempts: int
    """Total attempts, the first one included."""

    initial_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float

    NONE: ClassVar[RetryPolicy]
    STANDARD: ClassVar[RetryPolicy]
    AGGRESSIVE: ClassVar[RetryPolicy]

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """STANDARD delays with a different attempt budget."""
        return cls(
            max_attempts=max_attempts,
            initial_delay_ms=cls.STANDARD.initial_delay_ms,
            max_delay_ms=cls.STANDARD.max_delay_ms,
            backoff_multiplier=cls.STANDARD.backoff_multiplier,
        )

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Backoff after ``attempt`` (1-indexed) failed.

        Returns:
            Milliseconds to wait before the next attempt, or None when
            ``attempt`` was the last one the policy allows.

        Example:
            RetryPolicy.STANDARD.delay_for_attempt(1)  # 1000
            RetryPolicy.STANDARD.delay_for_attempt(2)  # 2000
            RetryPolicy.STANDARD.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None
        grown = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(grown, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy({self.max_attempts} attempts, "
            f"{self.initial_delay_ms}ms x{self.backoff_multiplier} <= {self.max_delay_ms}ms)"
        )


RetryPolicy.NONE = RetryPolicy(1, 0, 0, 1.0)
RetryPolicy.STANDARD = RetryPolicy(3, 1_000, 10_000, 2.0)
RetryPolicy.AGGRESSIVE = RetryPolicy(10, 100, 10_000, 1.5)


class RetryableError(Exception):
    """
    Unit error that decides whether another attempt makes sense.

    Example:
        class ModelError(RetryableError):
            def __init__(self, message: str, transient: bool):
                super().__init__(message)
                self.transient = transient

            def is_retryable(self) -> bool:
                return self.transient

        raise ModelError("Rate limited", transient=True)    # backed off and retried
        raise ModelError("Prompt rejected", transient=False)  # unit fails now
    """

    def is_retryable(self) -> bool:
        return True


def is_retryable_error(error: BaseException) -> bool:
    """Errors without an ``is_retryable()`` hook are treated as transient."""
    check = getattr(error, "is_retryable", None)
    if callable(check):
        return bool(check())
    return True
