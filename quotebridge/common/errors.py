class QuoteBridgeError(Exception):
    pass


class ConnectError(QuoteBridgeError):
    """Feed or endpoint unreachable at startup."""


class MalformedRecordError(QuoteBridgeError):
    """A tick or row is missing tokens or has an unparsable timestamp/decimal."""


class TransportError(QuoteBridgeError):
    """login / logout / publish-request / send failed on the endpoint session."""
