"""Exception hierarchy for pytaxis.

Errors are values: each class names one failure kind so callers can
handle it once, at the seam where it matters. Unit-level failures are
captured on execution records and never abort sibling units; only
validation failures abort a run before any unit starts.
"""


class TaxisError(Exception):
    """Base class for all pytaxis errors."""


class ValidationError(TaxisError):
    """Malformed manifest, invalid DAG, or bad configuration value."""


class CircularDependencyError(ValidationError):
    """A dependency cycle was found among the requested units.

    Attributes:
        unit_ids: Units that could not be ordered
    """

    def __init__(self, unit_ids: list[str]):
        self.unit_ids = list(unit_ids)
        super().__init__(f"Circular dependency detected among units: {', '.join(self.unit_ids)}")


class LockContentionError(TaxisError):
    """Lock was not acquired within the retry budget.

    Attributes:
        resource_id: Lock key that was contended
    """

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"Failed to acquire lock for resource: {resource_id}")


class ExecutionError(TaxisError):
    """A unit executor failed.

    Attributes:
        unit_id: Unit that failed (None when raised outside a unit)
    """

    def __init__(self, message: str, unit_id: str | None = None):
        self.unit_id = unit_id
        super().__init__(message)


class UnitTimeoutError(ExecutionError, TimeoutError):
    """A unit did not finish within its timeout.

    Attributes:
        timeout_ms: Timeout that elapsed
    """

    def __init__(self, unit_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Unit execution timeout: {unit_id} ({timeout_ms}ms)", unit_id)


class RetryExhaustedError(ExecutionError):
    """Every retry attempt for a unit failed.

    Attributes:
        attempts: Number of attempts made
        last_error: Error message of the final attempt
    """

    def __init__(self, unit_id: str, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Unit {unit_id} failed after {attempts} attempt(s): {last_error}", unit_id
        )


class WorkflowStateError(TaxisError):
    """Illegal workflow status transition or unknown workflow."""


class StorageError(TaxisError):
    """Storage operation failed."""
