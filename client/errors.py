class PollFailure(Exception):
    """Transient failure while pulling the authoritative order status."""


class PushConnectionError(Exception):
    """The push connection could not be opened or was lost."""
