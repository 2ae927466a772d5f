"""Domain errors raised by the session core.

Every error aborts the write that raised it; the store rolls back any
partial change before the exception reaches the caller.
"""


class DevsuiteError(Exception):
    """Base class for all domain errors."""


class InvalidTransition(DevsuiteError):
    """A state-machine move that the session's current status forbids."""


class OrderingViolation(DevsuiteError):
    """An event timestamp that does not advance the session's log."""


class ActiveSessionExists(DevsuiteError):
    """A session start while the actor already has an open session."""


class NotFound(DevsuiteError):
    """A referenced session, task, or project is missing from the tenant."""


class AccessDenied(DevsuiteError):
    """A referenced session belongs to another actor."""


class ValidationError(DevsuiteError):
    """Malformed arguments, such as an unsupported cancel mode."""
