"""
ZK Bulk Transfer - buffered ATTLOG read

    IDLE -> DEVICE_LOCKED -> TABLE_READY -> STREAMING -> BUFFER_FREED -> DEVICE_UNLOCKED -> IDLE

Lock and unlock/free are held by a scoped device window, so the free-buffer
and unlock commands go out on every exit path: success, transport or
protocol failure, cancellation, or an unexpected exception. Whatever bytes
were received before a failure are still decoded and returned together with
the error.

Chunk replies come in two shapes seen on real terminals:
    Shape A  ACK_DATA, then one more packet carrying DATA
    Shape B  DATA carrying the chunk directly
"""
import struct
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

import zk_control
import zk_framing as framing
import zk_records
import zk_session
from zk_errors import CapacityError, ProtocolError, TransportError
from zk_utils import log_msg

MAX_CHUNK = 65472
MIN_PLAUSIBLE_CHUNK = 1024
MAX_TABLE_SIZE = 64 * 1024 * 1024
STALE_REPLY_LIMIT = 2

ABORT_ERRORS = (TransportError, ProtocolError, CapacityError)


class TransferPhase(Enum):
    IDLE = "idle"
    DEVICE_LOCKED = "device_locked"
    TABLE_READY = "table_ready"
    STREAMING = "streaming"
    BUFFER_FREED = "buffer_freed"
    DEVICE_UNLOCKED = "device_unlocked"


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    bytes_received: int
    total_size: int


@dataclass(frozen=True)
class DataReady:
    """Shape A: the reply only announces the chunk, data follows in the next packet"""


@dataclass(frozen=True)
class DataInline:
    """Shape B: the reply carries the chunk"""
    data: bytes


def classify_chunk_reply(message):
    """Turn a READ_CHUNK reply into DataReady or DataInline"""
    if message.command == framing.CMD_ACK_DATA:
        return DataReady()
    if message.command == framing.CMD_DATA:
        return DataInline(message.data)
    raise ProtocolError(
        f"Expected DATA or ACK_DATA for chunk, got {framing.command_name(message.command)}"
    )


def resolve_chunk(session, reply):
    """Return the chunk bytes for a classified reply"""
    if isinstance(reply, DataInline):
        return reply.data
    follow_up = zk_session.read_response(session)
    if follow_up.command != framing.CMD_DATA:
        raise ProtocolError(
            f"Expected DATA after ACK_DATA, got {framing.command_name(follow_up.command)}"
        )
    return follow_up.data


class TransferState:
    """Byte accounting for one bulk read"""

    def __init__(self, total_size):
        self.total_size = total_size
        self.offset = 0
        self.buffer = bytearray()

    @property
    def remaining(self):
        return self.total_size - self.offset

    @property
    def done(self):
        return self.offset >= self.total_size

    def advance(self, chunk):
        """Append a received chunk; returns the number of bytes accepted"""
        if len(chunk) > self.remaining:
            log_msg(
                f"Device sent {len(chunk)} bytes with only {self.remaining} outstanding, "
                "dropping the excess",
                "WARNING",
            )
            chunk = chunk[:self.remaining]
        self.buffer.extend(chunk)
        self.offset += len(chunk)
        return len(chunk)


@dataclass
class TransferResult:
    records: list = field(default_factory=list)
    bytes_received: int = 0
    total_expected: int = 0
    elapsed: float = 0.0
    decode_errors: int = 0
    chunk_requests: int = 0
    error: Exception = None
    cancelled: bool = False
    capacity: zk_control.CapacityStats = None

    @property
    def short(self):
        """The device stopped sending before the announced size was reached"""
        return self.bytes_received < self.total_expected

    @property
    def ok(self):
        return self.error is None and not self.cancelled and not self.short

    def raise_for_error(self):
        if self.error is not None:
            raise self.error

    def summary(self):
        text = (
            f"{len(self.records)} records, {self.bytes_received}/{self.total_expected} bytes "
            f"in {self.elapsed:.1f}s"
        )
        if self.decode_errors:
            text += f", {self.decode_errors} undecodable"
        if self.short and self.error is None and not self.cancelled:
            text += " (short)"
        if self.cancelled:
            text += " (cancelled)"
        if self.error is not None:
            text += f" (aborted: {self.error})"
        return text


class BulkTransfer:
    """Runs one ATTLOG read on a connected session"""

    def __init__(self, session, progress=None, cancel=None):
        self.session = session
        self.progress = progress
        self.cancel = cancel if cancel is not None else threading.Event()
        self.phase = TransferPhase.IDLE
        self.state = None
        self.error = None
        self.cancelled = False
        self.capacity = None
        self.chunk_requests = 0

    def _emit(self, phase):
        if self.progress is None:
            return
        received = self.state.offset if self.state else 0
        total = self.state.total_size if self.state else 0
        self.progress.put(ProgressEvent(phase.value, received, total))

    def _request(self, command, data=b""):
        response = zk_session.send(self.session, command, data)
        expected = self.session.reply_counter
        for _ in range(STALE_REPLY_LIMIT):
            if response.reply_id == expected or response.command != framing.CMD_ACK_OK or response.data:
                break
            # late acknowledgement of an earlier best-effort command
            log_msg(f"Discarding stale ACK_OK (reply {response.reply_id}, expected {expected})", "DEBUG")
            response = zk_session.read_response(self.session)
        return response

    # ---- state handlers ----

    def _lock(self):
        zk_control.disable_device(self.session)
        try:
            response = self._request(framing.CMD_GET_FREE_SIZES)
            self.capacity = zk_control.parse_capacity(response.data)
        except ABORT_ERRORS as e:
            log_msg(f"Capacity check failed: {e}", "WARNING")
        self._emit(TransferPhase.DEVICE_LOCKED)
        return TransferPhase.DEVICE_LOCKED

    def _prepare(self):
        response = self._request(framing.CMD_DATA_WRRQ, framing.TABLE_ATTLOG)

        if response.command == framing.CMD_DATA:
            log_msg(f"Table returned inline ({len(response.data)} bytes)")
            self.state = TransferState(len(response.data))
            self.state.advance(response.data)
            self._emit(TransferPhase.TABLE_READY)
            return TransferPhase.TABLE_READY

        if response.command != framing.CMD_ACK_OK:
            raise ProtocolError(
                f"Expected ACK_OK after DATA_WRRQ, got {framing.command_name(response.command)}"
            )
        if len(response.data) < 5:
            raise CapacityError(f"DATA_WRRQ reply too short for a table size: {len(response.data)} bytes")

        total_size = struct.unpack('<I', response.data[1:5])[0]
        if total_size > MAX_TABLE_SIZE:
            raise CapacityError(f"Device announced an implausible table size: {total_size} bytes")

        log_msg(f"Total attendance data size: {total_size} bytes")
        self.state = TransferState(total_size)
        self._emit(TransferPhase.TABLE_READY)
        return TransferPhase.TABLE_READY

    def _stream(self):
        state = self.state
        max_iterations = state.total_size // MIN_PLAUSIBLE_CHUNK + 2
        iterations = 0

        while not state.done:
            if self.cancel.is_set():
                log_msg(f"Transfer cancelled at {state.offset}/{state.total_size} bytes", "WARNING")
                self.cancelled = True
                break
            if iterations >= max_iterations:
                raise ProtocolError(f"Chunk loop did not finish within {max_iterations} requests")
            iterations += 1

            request_size = min(state.remaining, MAX_CHUNK)
            response = self._request(framing.CMD_READ_CHUNK, struct.pack('<II', state.offset, request_size))
            self.chunk_requests += 1
            chunk = resolve_chunk(self.session, classify_chunk_reply(response))

            if not chunk:
                log_msg(
                    f"Empty chunk at offset {state.offset}, stream ended "
                    f"{state.remaining} bytes short of {state.total_size}",
                    "WARNING",
                )
                break

            received = state.advance(chunk)
            log_msg(f"Read chunk: offset={state.offset - received}, requested={request_size}, received={received}", "DEBUG")
            self._emit(TransferPhase.STREAMING)

        return TransferPhase.STREAMING

    def _free_buffer(self):
        try:
            zk_session.send(self.session, framing.CMD_FREE_DATA)
        except (TransportError, ProtocolError) as e:
            log_msg(f"FREE_DATA failed: {e}", "WARNING")
        self._emit(TransferPhase.BUFFER_FREED)
        return TransferPhase.BUFFER_FREED

    def _unlock(self):
        zk_control.enable_device(self.session)
        self._emit(TransferPhase.DEVICE_UNLOCKED)
        return TransferPhase.DEVICE_UNLOCKED

    WINDOW_STEPS = {
        TransferPhase.DEVICE_LOCKED: _prepare,
        TransferPhase.TABLE_READY: _stream,
    }

    @contextmanager
    def _device_window(self):
        self.phase = self._lock()
        try:
            yield
        finally:
            self.phase = self._free_buffer()
            self.phase = self._unlock()
            self.phase = TransferPhase.IDLE

    def run(self):
        started = time.monotonic()
        log_msg("Fetching attendance records from device")

        with self._device_window():
            try:
                while self.phase in self.WINDOW_STEPS:
                    self.phase = self.WINDOW_STEPS[self.phase](self)
            except ABORT_ERRORS as e:
                log_msg(f"Transfer aborted after {self.phase.value}: {e}", "ERROR")
                self.error = e

        buffer = bytes(self.state.buffer) if self.state else b""
        total = self.state.total_size if self.state else 0
        records, errors = zk_records.parse_attendance(buffer, expected_size=total)

        result = TransferResult(
            records=records,
            bytes_received=len(buffer),
            total_expected=total,
            elapsed=time.monotonic() - started,
            decode_errors=len(errors),
            chunk_requests=self.chunk_requests,
            error=self.error,
            cancelled=self.cancelled,
            capacity=self.capacity,
        )
        log_msg(f"Downloaded {result.summary()}")
        return result


def download_attendance(address, timeouts=None, comm_key=0, progress=None, cancel=None):
    """Connect, read the whole attendance log, and always disconnect"""
    session = zk_session.connect(address, timeouts, comm_key)
    try:
        return BulkTransfer(session, progress, cancel).run()
    finally:
        zk_session.disconnect(session)
