class UnitPayError(Exception):
    """Base class for errors raised by the settlement flow."""


class NetworkError(UnitPayError):
    """A fetch or RPC call failed at the transport level."""


class ValidationError(UnitPayError):
    """Input or state failed validation; the operation is abandoned."""


class InvalidTransition(ValidationError):
    def __init__(self, kind, old, new):
        self.kind = kind
        self.old = old
        self.new = new
        super().__init__(f"Illegal {kind} transition: {old} -> {new}")


class PersistenceError(UnitPayError):
    """The backing store could not be read or written."""


class NotFoundError(UnitPayError):
    pass


class TaskTimeoutError(UnitPayError, TimeoutError):
    """A task ran past its processing window."""
