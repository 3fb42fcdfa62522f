"""Exception types for the relay hub and client."""


class RelayError(Exception):
    """Base class for relayhub errors."""


class NotConnectedError(RelayError):
    """Raised by the client when sending while the connection is not open."""


class FrameError(RelayError):
    """Describes why an inbound frame was rejected.

    The frame parser returns these as values; sessions log and discard them.
    """

    def __init__(self, reason: str, raw: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.raw = raw
