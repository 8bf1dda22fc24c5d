"""
ZK Protocol Errors

Error taxonomy for the ZK attendance-log puller.
Transport and protocol errors abort a transfer, decode errors only skip a
single record, capacity errors mean the device announced an unusable table.
"""


class ZKError(Exception):
    """Base class for every error raised by the puller"""


class TransportError(ZKError):
    """Connect/read/write failure or timeout"""


class ProtocolError(ZKError):
    """Device sent something the protocol does not allow"""


class BadMagic(ProtocolError):
    """Outer packet does not start with the ZK magic bytes"""

    def __init__(self, magic):
        self.magic = bytes(magic)
        super().__init__(f"Invalid TCP header: {self.magic.hex(' ')}")


class Truncated(ProtocolError):
    """Byte source ended before the announced length was read"""

    def __init__(self, expected, received):
        self.expected = expected
        self.received = received
        super().__init__(f"Truncated packet: expected {expected} bytes, got {received}")


class DecodeError(ZKError):
    """A single attendance record could not be decoded"""

    def __init__(self, index, reason):
        self.index = index
        self.reason = reason
        super().__init__(f"Record {index}: {reason}")


class CapacityError(ZKError):
    """Table size or capacity table reported by the device is unusable"""
