class HandshakeError(Exception):
    """The handshake cannot advance; the message is meant for the user."""


class TokenExpiredError(HandshakeError):
    pass


class TransferError(Exception):
    pass
