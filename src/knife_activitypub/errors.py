"""Error taxonomy for the knife federation engine.

Every failure the engine reports derives from KnifeError, so callers that
must never fail (the inbox, background deliveries) can catch one type.
"""


class KnifeError(Exception):
    """Base class for federation engine errors."""
    pass


class ParseError(KnifeError):
    """Malformed inbound JSON or a document that is not what was expected."""
    pass


class SecurityError(KnifeError):
    """Outbound fetch target rejected by the SSRF guard."""
    pass


class FetchError(KnifeError):
    """Remote resource unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class ProtocolError(KnifeError):
    """Remote document is missing a field the protocol requires."""
    pass


class StorageError(KnifeError):
    """Collaborator store failure."""
    pass


class CryptoError(KnifeError):
    """Key generation, decoding or signing failure."""
    pass
