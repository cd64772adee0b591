"""Error taxonomy shared by every service.

Services raise these; the API layer maps them to HTTP responses and the
relay logs them per envelope.
"""


class LanLinkError(Exception):
    """Base class for expected, recoverable failures."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class Unauthorized(LanLinkError):
    status_code = 401


class NotFound(LanLinkError):
    status_code = 404


class InvalidInput(LanLinkError):
    status_code = 400


class VerificationFailed(LanLinkError):
    status_code = 403


class Offline(LanLinkError):
    """Target peer is offline; the request is refused, not queued."""

    status_code = 403


class NotAccepted(LanLinkError):
    """A file transfer was attempted without an accepted handshake."""

    status_code = 409


class InstallFailed(LanLinkError):
    status_code = 500


class TransportError(LanLinkError):
    status_code = 502


class TransferCancelled(LanLinkError):
    """The initiating side cancelled a transfer before it completed."""

    status_code = 409
