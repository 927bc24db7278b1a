"""
Error taxonomy for plan execution.

Every error that can reach a trace carries a machine-readable ``kind`` and a
human-readable message. ``to_entry()`` produces the ``{kind, message}`` pair
recorded on TraceSteps and ExecutionTraces.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Kinds surfaced to callers in ``{kind, message}`` pairs."""
    VALIDATION = "validation"
    REFERENCE = "reference"
    EXECUTOR = "executor"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


INTERNAL_ERROR_MESSAGE = "internal error"


def error_entry(kind: ErrorKind, message: str, step: Optional[int] = None) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"kind": kind.value, "message": message}
    if step is not None:
        entry["step"] = step
    return entry


class PlaygroundError(Exception):
    """Base class for all engine errors."""
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_entry(self, step: Optional[int] = None) -> Dict[str, Any]:
        return error_entry(self.kind, self.message, step)


class PlanValidationError(PlaygroundError):
    """Raised when a plan fails validation. Carries the full error list."""
    kind = ErrorKind.VALIDATION

    def __init__(self, errors: List[Dict[str, Any]], warnings: Optional[List[str]] = None):
        self.errors = errors
        self.warnings = list(warnings or [])
        summary = "; ".join(e["message"] for e in errors) or "invalid plan"
        super().__init__(summary)


class StepReferenceError(PlaygroundError):
    """A ``step_<N>.<path>`` reference that cannot be resolved."""
    kind = ErrorKind.REFERENCE


class ExecutorError(PlaygroundError):
    """Failure reported by an action executor."""
    kind = ErrorKind.EXECUTOR


class InvalidAddressError(ExecutorError):
    pass


class InvalidAmountError(ExecutorError):
    pass


class InsufficientBalanceError(ExecutorError):
    pass


class UnknownContractError(ExecutorError):
    pass


class ConditionSyntaxError(ExecutorError):
    pass


class LedgerError(ExecutorError):
    """The ledger collaborator rejected or failed an operation."""


class ProviderError(ExecutorError):
    """The reasoning provider failed to answer."""


class MalformedResponseError(ExecutorError):
    """The reasoning provider answered with something we cannot parse."""


class StepTimeoutError(ExecutorError):
    """A bounded external call did not finish in time."""
    kind = ErrorKind.TIMEOUT


class RunCancelledError(PlaygroundError):
    kind = ErrorKind.CANCELLED
