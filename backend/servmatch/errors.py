from typing import Optional, Sequence


class EngineError(ValueError):
    """Base class for user-visible matching and lifecycle errors."""


class EngineValidationError(EngineError):
    pass


class NotFoundError(EngineError):
    pass


class PermissionDenied(EngineError):
    pass


class ConflictError(EngineError):
    pass


class PreconditionFailed(EngineError):
    """A lifecycle precondition was not met. Nothing was written."""


class InvalidTransition(PreconditionFailed):
    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"Invalid {kind} transition: {current} -> {target}")
        self.kind = kind
        self.current = current
        self.target = target


class TransportError(EngineError):
    """The record store could not be reached or rejected the call."""


class PartialWorkflowFailure(EngineError):
    """A non-critical acceptance step failed after the critical writes landed."""

    def __init__(self, step: str, message: str, subject_id: Optional[str] = None):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.subject_id = subject_id


class WorkflowInterrupted(EngineError):
    """The acceptance workflow stopped after at least one persistent write.

    Blindly re-running the workflow would double-transition the accepted
    proposal; use reconciliation instead.
    """

    def __init__(self, message: str, completed_steps: Sequence[str], cause: Optional[BaseException] = None):
        super().__init__(message)
        self.completed_steps = list(completed_steps)
        self.cause = cause

    @property
    def safe_to_retry(self) -> bool:
        return not self.completed_steps
