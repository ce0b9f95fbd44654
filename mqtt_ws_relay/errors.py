class RelayError(Exception):
    pass


class ProtocolError(RelayError):
    """Client sent a frame that is not a JSON object."""


class PublishError(RelayError):
    """Broker rejected a publish or the transport failed before it was sent."""
