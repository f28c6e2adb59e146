"""Exception taxonomy for badge communication."""


class BadgeError(RuntimeError):
    """Base class for all badge SDK errors."""
    pass


class PortUnavailable(BadgeError):
    """Raised when a serial port cannot be opened (missing or access denied)."""
    pass


class LinkError(BadgeError):
    """Raised when the serial link fails mid-session."""
    pass


class ProtocolViolation(LinkError):
    """Raised when the device answers in an unexpected shape.

    Treated with link-error severity: the channel is considered desynchronized.
    """
    pass


class CommandTimeout(BadgeError):
    """Raised when a single command does not complete before its deadline."""
    pass


class CommandRejected(BadgeError):
    """Raised when the device answers a command with ERROR."""
    def __init__(self, message, reason=None):
        super().__init__(message)
        self.reason = reason


class NotConnected(BadgeError):
    """Raised when an operation needs a connected session."""
    pass


class SessionBusy(BadgeError):
    """Raised when an operation is attempted while a transfer is running."""
    pass


class TransferError(BadgeError):
    """Base class for file transfer failures."""
    pass


class TransferAborted(TransferError):
    """Raised when a transfer is cancelled by the caller."""
    pass


class TransferRejected(TransferError):
    """Raised when the device refuses a transfer (e.g. insufficient storage)."""
    pass
