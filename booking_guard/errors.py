class InvalidSubjectError(ValueError):
    """Raised when a subject identifier is empty or of an unsupported type."""


class StoreUnavailableError(RuntimeError):
    """The backing attempt store could not be reached."""
