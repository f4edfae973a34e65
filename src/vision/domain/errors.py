from __future__ import annotations

"""Failure taxonomy shared by the gateway, ledger, storage and pipelines."""


class VisionError(Exception):
    """Base class for failures the API layer knows how to report."""


class ProviderError(VisionError):
    """The AI provider call failed.

    ``cost_incurred`` is only non-zero when the provider's own accounting
    reported usage before the failure; ambiguous failures are treated as free.
    """

    KINDS = ("network", "provider", "malformed", "unavailable")

    def __init__(self, message: str, *, kind: str = "provider", cost_incurred: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind if kind in self.KINDS else "provider"
        self.cost_incurred = max(0, int(cost_incurred or 0))


class FileNotReadyError(VisionError, TimeoutError):
    def __init__(self, file_name: str, attempts: int, waited_seconds: float) -> None:
        super().__init__(
            f"File {file_name} was not ready after {attempts} checks ({waited_seconds:.0f}s)"
        )
        self.file_name = file_name
        self.attempts = attempts
        self.waited_seconds = waited_seconds


class PersistenceError(VisionError):
    """The artifact store or ledger could not be written."""


class BillingError(PersistenceError):
    """A completed operation could not be charged; needs out-of-band reconciliation."""

    def __init__(self, message: str, *, user_id: str, feature: str, amount: int) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.feature = feature
        self.amount = amount


class UserNotFoundError(VisionError, KeyError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id

    def __str__(self) -> str:
        return f"User {self.user_id} not found"


class DuplicateUserError(VisionError, ValueError):
    pass


class PipelineStepError(VisionError):
    """Step ``step`` of a multi-step operation failed; earlier steps stand."""

    def __init__(self, step: str, cause: Exception, *, charged: int = 0) -> None:
        super().__init__(f"{step} step failed: {cause}")
        self.step = step
        self.cause = cause
        self.charged = charged

    @property
    def message(self) -> str:
        return str(getattr(self.cause, "message", None) or self.cause)
