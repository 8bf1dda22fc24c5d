"""
ZK Session Manager

Owns one TCP connection to a terminal (default port 4370), performs the
CONNECT / EXIT handshakes and keeps the reply-id counter. A Session is passed
explicitly through the call chain and is never shared between transfers.
"""
import socket
import struct
from contextlib import contextmanager
from dataclasses import dataclass

import zk_framing as framing
from zk_errors import ProtocolError, TransportError
from zk_utils import hex_dump, log_msg

DEFAULT_PORT = 4370


@dataclass(frozen=True)
class Timeouts:
    """Per-operation socket timeouts in seconds"""
    connect: float = 10.0
    read: float = 30.0
    write: float = 10.0


class Session:
    """One connected device session"""

    def __init__(self, sock, address, timeouts, session_id=0):
        self.sock = sock
        self.address = address
        self.timeouts = timeouts
        self.session_id = session_id
        self.reply_counter = 0

    @property
    def closed(self):
        return self.sock is None

    def next_reply_id(self):
        self.reply_counter = (self.reply_counter + 1) & framing.USHRT_MAX
        return self.reply_counter

    def __repr__(self):
        return f"<Session {self.address[0]}:{self.address[1]} id=0x{self.session_id:04x} reply={self.reply_counter}>"


class _SocketReader:
    """Adapts a socket to the read(n) interface framing.decode expects"""

    def __init__(self, sock):
        self.sock = sock

    def read(self, size):
        return self.sock.recv(size)


def make_commkey(key, session_id, ticks=50):
    """Scramble the numeric comm key with the session id for CMD_AUTH"""
    key = int(key)
    k = 0
    for i in range(32):
        if key & (1 << i):
            k = (k << 1) | 1
        else:
            k = k << 1
    k = (k + int(session_id)) & 0xFFFFFFFF
    b = struct.pack('<I', k)
    b = bytes([b[0] ^ ord('Z'), b[1] ^ ord('K'), b[2] ^ ord('S'), b[3] ^ ord('O')])
    b = b[2:4] + b[0:2]
    t = ticks & 0xFF
    return bytes([b[0] ^ t, b[1] ^ t, t, b[3] ^ t])


def _write(session, packet):
    hex_dump(packet, "Sending")
    try:
        session.sock.settimeout(session.timeouts.write)
        session.sock.sendall(packet)
    except OSError as e:
        raise TransportError(f"Write failed: {e}") from e


def _read(session):
    try:
        session.sock.settimeout(session.timeouts.read)
        response = framing.decode(_SocketReader(session.sock))
    except OSError as e:
        raise TransportError(f"Read failed: {e}") from e
    log_msg(
        f"RX {framing.command_name(response.command)} reply={response.reply_id} "
        f"data={len(response.data)} bytes",
        "DEBUG",
    )
    return response


def connect(address, timeouts=None, comm_key=0):
    """Open a TCP connection and perform the CONNECT handshake"""
    timeouts = timeouts or Timeouts()
    log_msg(f"Connecting to {address[0]}:{address[1]}")
    try:
        sock = socket.create_connection(address, timeout=timeouts.connect)
    except OSError as e:
        raise TransportError(f"Failed to connect to {address[0]}:{address[1]}: {e}") from e

    session = Session(sock, address, timeouts)
    try:
        _write(session, framing.encode(framing.CMD_CONNECT, 0, 0))
        response = _read(session)
        session.session_id = response.session_id
        session.reply_counter = 0

        if response.command == framing.CMD_ACK_UNAUTH:
            log_msg("Device requires comm key authentication")
            response = send(session, framing.CMD_AUTH, make_commkey(comm_key, session.session_id))
            if response.command == framing.CMD_ACK_UNAUTH:
                raise ProtocolError("Device rejected the comm key")

        if response.command != framing.CMD_ACK_OK:
            raise ProtocolError(
                f"Unexpected reply to CONNECT: {framing.command_name(response.command)}"
            )
    except Exception:
        _close_socket(session)
        raise

    log_msg(f"Connected to {address[0]}:{address[1]}, session_id=0x{session.session_id:04x}")
    return session


def send(session, command, data=b""):
    """Send one request and return exactly one decoded response"""
    if session.closed:
        raise TransportError("Session is closed")
    reply_id = session.next_reply_id()
    log_msg(f"TX {framing.command_name(command)} reply={reply_id} data={len(data)} bytes", "DEBUG")
    _write(session, framing.encode(command, session.session_id, reply_id, data))
    return _read(session)


def read_response(session):
    """Read one more packet on the session without sending anything"""
    if session.closed:
        raise TransportError("Session is closed")
    return _read(session)


def _close_socket(session):
    if session.sock is None:
        return
    try:
        session.sock.close()
    except OSError as e:
        log_msg(f"Socket close failed: {e}", "DEBUG")
    session.sock = None


def disconnect(session):
    """Send EXIT best-effort and close; safe to call more than once"""
    if session.closed:
        return
    try:
        send(session, framing.CMD_EXIT)
    except (TransportError, ProtocolError) as e:
        log_msg(f"EXIT not acknowledged: {e}", "DEBUG")
    finally:
        _close_socket(session)
    log_msg(f"Disconnected from {session.address[0]}:{session.address[1]}")


@contextmanager
def open_session(address, timeouts=None, comm_key=0):
    """Connect, yield the session, and always disconnect"""
    session = connect(address, timeouts, comm_key)
    try:
        yield session
    finally:
        disconnect(session)
