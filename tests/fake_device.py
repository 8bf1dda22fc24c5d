"""
Scripted in-memory ZK terminal.

FakeDevice stands in for the socket returned by socket.create_connection:
every packet written with sendall is decoded, answered by a handler, and the
reply bytes are queued for recv. When nothing is queued recv raises
socket.timeout, which is what a silent terminal looks like to the session.
"""
import socket
import struct

import zk_framing as framing
import zk_records
from zk_session import make_commkey

SESSION_ID = 0x1234


def build_record(user_id, when, verify_type=1, status=0):
    block = bytearray(zk_records.RECORD_SIZE)
    uid = str(user_id).encode('ascii')
    block[zk_records.USER_ID_OFFSET:zk_records.USER_ID_OFFSET + len(uid)] = uid
    block[zk_records.VERIFY_OFFSET] = verify_type
    ts = zk_records.TIMESTAMP_OFFSET
    block[ts:ts + 4] = struct.pack('<I', zk_records.encode_timestamp(when))
    block[zk_records.STATUS_OFFSET] = status
    return bytes(block)


def build_table(blocks):
    body = b''.join(blocks)
    return struct.pack('<I', len(body)) + body


class FakeDevice:
    def __init__(self, table=b'', shape='B', require_auth=False, comm_key=0,
                 fail_after_chunks=None, silent_lock=False, late_lock_ack=False,
                 inline_table=False, chunk_command=None, record_count=None,
                 record_capacity=100000, session_id=SESSION_ID, empty_after_chunks=None,
                 max_chunk_bytes=None, follow_up_command=framing.CMD_DATA):
        self.table = bytes(table)
        self.shape = shape
        self.require_auth = require_auth
        self.comm_key = comm_key
        self.fail_after_chunks = fail_after_chunks
        self.silent_lock = silent_lock
        self.late_lock_ack = late_lock_ack
        self.inline_table = inline_table
        self.chunk_command = chunk_command
        self.empty_after_chunks = empty_after_chunks
        self.max_chunk_bytes = max_chunk_bytes
        self.follow_up_command = follow_up_command
        self.record_count = record_count if record_count is not None else len(self.table) // zk_records.RECORD_SIZE
        self.record_capacity = record_capacity
        self.session_id = session_id

        self.requests = []
        self.timeouts = []
        self.chunks_served = 0
        self.cleared = False
        self.closed = False
        self.address = None
        self.connections = 0
        self._pending = bytearray()
        self._held = []

    # ---- socket interface ----

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendall(self, packet):
        if self.closed:
            raise OSError("socket closed")
        message = framing.decode(packet)
        self.requests.append(message)
        self._handle(message)

    def recv(self, size):
        if not self._pending:
            raise socket.timeout("timed out")
        out = bytes(self._pending[:size])
        del self._pending[:size]
        return out

    def close(self):
        self.closed = True

    # ---- helpers for tests ----

    def commands(self):
        return [m.command for m in self.requests]

    def connect(self, address, timeout=None):
        """Drop-in for socket.create_connection; each call is a new connection"""
        self.address = address
        self.connections += 1
        self.closed = False
        self._pending.clear()
        self._held = []
        return self

    # ---- replies ----

    def _reply(self, request, command, data=b''):
        self._pending.extend(framing.encode(command, self.session_id, request.reply_id, data))

    def _handle(self, request):
        command = request.command
        # a held acknowledgement goes out ahead of the next reply
        for held in self._held:
            self._reply(held, framing.CMD_ACK_OK)
        self._held = []

        if command == framing.CMD_CONNECT:
            self._reply(request, framing.CMD_ACK_UNAUTH if self.require_auth else framing.CMD_ACK_OK)
        elif command == framing.CMD_AUTH:
            accepted = request.data == make_commkey(self.comm_key, self.session_id)
            self._reply(request, framing.CMD_ACK_OK if accepted else framing.CMD_ACK_UNAUTH)
        elif command in (framing.CMD_DISABLEDEVICE, framing.CMD_ENABLEDEVICE):
            if self.late_lock_ack and command == framing.CMD_DISABLEDEVICE:
                self._held.append(request)
            elif not self.silent_lock:
                self._reply(request, framing.CMD_ACK_OK)
        elif command == framing.CMD_GET_FREE_SIZES:
            fields = [0] * 20
            fields[8] = self.record_count
            fields[16] = self.record_capacity
            fields[19] = max(self.record_capacity - self.record_count, 0)
            self._reply(request, framing.CMD_ACK_OK, struct.pack('<20I', *fields))
        elif command == framing.CMD_DATA_WRRQ:
            if self.inline_table:
                self._reply(request, framing.CMD_DATA, self.table)
            else:
                data = b'\x00' + struct.pack('<I', len(self.table)) + b'\x00' * 4
                self._reply(request, framing.CMD_ACK_OK, data)
        elif command == framing.CMD_READ_CHUNK:
            self._serve_chunk(request)
        elif command == framing.CMD_CLEAR_ATTLOG:
            self.cleared = True
            self.record_count = 0
            self._reply(request, framing.CMD_ACK_OK)
        else:
            # FREE_DATA, EXIT
            self._reply(request, framing.CMD_ACK_OK)

    def _serve_chunk(self, request):
        offset, size = struct.unpack('<II', request.data[:8])
        if self.fail_after_chunks is not None and self.chunks_served >= self.fail_after_chunks:
            return
        if self.empty_after_chunks is not None and self.chunks_served >= self.empty_after_chunks:
            size = 0
        if self.max_chunk_bytes is not None:
            size = min(size, self.max_chunk_bytes)
        self.chunks_served += 1
        chunk = self.table[offset:offset + size]

        if self.chunk_command is not None:
            self._reply(request, self.chunk_command, chunk)
            return
        shape = self.shape
        if shape == 'mixed':
            shape = 'A' if self.chunks_served % 2 else 'B'
        if shape == 'A':
            self._reply(request, framing.CMD_ACK_DATA)
            self._reply(request, self.follow_up_command, chunk)
            return
        self._reply(request, framing.CMD_DATA, chunk)
