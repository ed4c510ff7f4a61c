"""Base exceptions for screenshare."""


class ShareError(Exception):
    """Base exception for all screenshare errors."""

    pass


class MalformedDescriptionError(ShareError):
    """SDP record does not have the minimal expected structure."""

    pass


class MediaAcquisitionError(ShareError):
    """Capture source denied or unavailable."""

    pass


class RelayUnreachableError(ShareError):
    """No relay candidate was admitted before gathering completed."""

    pass


class ConfigurationError(ShareError):
    """Required startup configuration is missing or invalid."""

    pass


class NegotiationError(ShareError):
    """Offer/answer exchange failed."""

    pass


class SessionStateError(ShareError):
    """Operation not allowed in the current session state."""

    pass
