"""
ZK TCP Framing Layer

Outer packet:  50 50 82 7d | payload length (u32 LE) | payload
Payload:       command | checksum | session id | reply id | data   (all u16 LE)

The checksum is computed over command, session id, reply id and data with
the checksum field left out. Outbound packets always carry a correct
checksum; on the receive path a mismatch is only logged because real
terminals occasionally emit packets that fail a strict recomputation.
"""
import io
import struct
from dataclasses import dataclass

from zk_errors import BadMagic, ProtocolError, Truncated
from zk_utils import log_msg

MAGIC = bytes.fromhex("5050827d")
HEADER_SIZE = 8          # magic + payload length
INNER_HEADER_SIZE = 8    # command + checksum + session id + reply id
MAX_PAYLOAD = 1000000
USHRT_MAX = 0xFFFF

# Command codes
CMD_CONNECT = 1000
CMD_EXIT = 1001
CMD_DISABLEDEVICE = 1003
CMD_ENABLEDEVICE = 1004
CMD_AUTH = 1102
CMD_GET_FREE_SIZES = 50
CMD_CLEAR_ATTLOG = 15

# Buffered data transfer
CMD_ACK_DATA = 1500
CMD_DATA = 1501
CMD_FREE_DATA = 1502
CMD_DATA_WRRQ = 1503
CMD_READ_CHUNK = 1504

# Replies
CMD_ACK_OK = 2000
CMD_ACK_UNAUTH = 2005

# DATA_WRRQ selector for the attendance-log table
TABLE_ATTLOG = bytes([0x01, 0x0d, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])

COMMAND_NAMES = {
    CMD_CONNECT: "CONNECT",
    CMD_EXIT: "EXIT",
    CMD_DISABLEDEVICE: "DISABLEDEVICE",
    CMD_ENABLEDEVICE: "ENABLEDEVICE",
    CMD_AUTH: "AUTH",
    CMD_GET_FREE_SIZES: "GET_FREE_SIZES",
    CMD_CLEAR_ATTLOG: "CLEAR_ATTLOG",
    CMD_ACK_DATA: "ACK_DATA",
    CMD_DATA: "DATA",
    CMD_FREE_DATA: "FREE_DATA",
    CMD_DATA_WRRQ: "DATA_WRRQ",
    CMD_READ_CHUNK: "READ_CHUNK",
    CMD_ACK_OK: "ACK_OK",
    CMD_ACK_UNAUTH: "ACK_UNAUTH",
}


def command_name(command):
    return COMMAND_NAMES.get(command, str(command))


@dataclass(frozen=True)
class InnerMessage:
    """Decoded inner message of one ZK packet"""
    command: int
    checksum: int
    session_id: int
    reply_id: int
    data: bytes = b""

    @property
    def expected_checksum(self):
        return calc_checksum(_checksum_input(self.command, self.session_id, self.reply_id, self.data))

    @property
    def checksum_valid(self):
        return self.checksum == self.expected_checksum


def calc_checksum(data):
    """One's complement of the folded sum of little-endian 16-bit words"""
    total = 0
    length = len(data)
    for i in range(0, length - 1, 2):
        total += data[i] | (data[i + 1] << 8)
    if length % 2:
        total += data[-1]
    while total > USHRT_MAX:
        total = (total & USHRT_MAX) + (total >> 16)
    return ~total & USHRT_MAX


def _checksum_input(command, session_id, reply_id, data):
    return struct.pack('<HHH', command, session_id, reply_id) + bytes(data)


def encode(command, session_id, reply_id, data=b""):
    """Build a complete outer packet ready for the socket"""
    data = bytes(data)
    checksum = calc_checksum(_checksum_input(command, session_id, reply_id, data))
    inner = struct.pack('<HHHH', command, checksum, session_id, reply_id) + data
    return MAGIC + struct.pack('<I', len(inner)) + inner


def _read_exact(read, size):
    buf = bytearray()
    while len(buf) < size:
        part = read(size - len(buf))
        if not part:
            break
        buf.extend(part)
    return bytes(buf)


def decode(source):
    """
    Read one packet from source and return its InnerMessage.

    source is a bytes-like object or anything with read(n). Raises BadMagic,
    Truncated, or ProtocolError for an absurd payload length.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(source))
    read = source.read

    header = _read_exact(read, HEADER_SIZE)
    if len(header) < HEADER_SIZE:
        raise Truncated(HEADER_SIZE, len(header))
    if header[:4] != MAGIC:
        raise BadMagic(header[:4])

    payload_len = struct.unpack('<I', header[4:8])[0]
    if payload_len > MAX_PAYLOAD:
        raise ProtocolError(f"Payload too large: {payload_len} bytes")

    payload = _read_exact(read, payload_len)
    if len(payload) < payload_len:
        raise Truncated(payload_len, len(payload))
    if payload_len < INNER_HEADER_SIZE:
        raise Truncated(INNER_HEADER_SIZE, payload_len)

    command, checksum, session_id, reply_id = struct.unpack('<HHHH', payload[:INNER_HEADER_SIZE])
    message = InnerMessage(command, checksum, session_id, reply_id, payload[INNER_HEADER_SIZE:])
    if not message.checksum_valid:
        log_msg(
            f"Checksum mismatch on {command_name(command)} reply {reply_id}: "
            f"got 0x{checksum:04x}, expected 0x{message.expected_checksum:04x}",
            "WARNING",
        )
    return message
