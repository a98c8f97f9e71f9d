"""Exception types shared by the workflow steps."""

from typing import Optional


class QanunError(Exception):
    """Base class for workflow errors."""


class RecoverableCapabilityError(QanunError):
    """
    An external capability (recognition, entity extraction) failed.

    The step that raised it is not completed and may be retried as-is.
    """

    def __init__(self, message: str, capability: str = "recognition", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.capability = capability
        self.cause = cause


class IllegalTransitionError(QanunError):
    """An action is not allowed from the current status or step."""

    def __init__(self, message: str, current: Optional[str] = None, action: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.current = current
        self.action = action


class PersistenceError(RecoverableCapabilityError):
    """The audit or document repository could not complete a write or read."""

    def __init__(self, message: str, operation: str, cause: Optional[BaseException] = None):
        super().__init__(message, capability="persistence", cause=cause)
        self.operation = operation
