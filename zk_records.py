"""
Attendance record decoding.

Binary ATTLOG layout, 40 bytes per record:
    0-1    internal uid (unused)
    2-25   user id, ASCII digits, NUL/space padded
    26     verify type
    27-30  packed timestamp (u32 LE)
    31     status (punch state)
    32-39  reserved

The packed timestamp is not Unix time:
    ((((year-2000)*12 + month-1)*31 + day-1)*24 + hour)*60 + minute)*60 + second
"""
import struct
from dataclasses import dataclass
from datetime import datetime

from zk_errors import DecodeError
from zk_utils import log_msg

RECORD_SIZE = 40
SIZE_PREFIX = 4

USER_ID_OFFSET = 2
USER_ID_LENGTH = 24
VERIFY_OFFSET = 26
TIMESTAMP_OFFSET = 27
STATUS_OFFSET = 31

TEXT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class AttendanceRecord:
    user_id: int
    timestamp: datetime
    verify_type: int
    status: int

    def to_dict(self):
        return {
            'user_id': str(self.user_id),
            'check_time': self.timestamp.strftime(TEXT_TIME_FORMAT),
            'verify_type': str(self.verify_type),
            'status': str(self.status),
        }


def decode_timestamp(value):
    """Unpack a device timestamp; raises ValueError for impossible dates"""
    second = value % 60
    value //= 60
    minute = value % 60
    value //= 60
    hour = value % 24
    value //= 24
    day = (value % 31) + 1
    value //= 31
    month = (value % 12) + 1
    value //= 12
    year = value + 2000
    return datetime(year, month, day, hour, minute, second)


def encode_timestamp(dt):
    return (
        ((((dt.year - 2000) * 12 + dt.month - 1) * 31 + dt.day - 1) * 24 + dt.hour) * 60
        + dt.minute
    ) * 60 + dt.second


def _parse_user_id(field):
    end = len(field)
    for i, b in enumerate(field):
        if b in (0x00, 0x20):
            end = i
            break
    text = field[:end].decode('ascii')
    if not text.isdigit():
        raise ValueError(f"non-numeric user id {text!r}")
    user_id = int(text)
    if user_id > 0xFFFFFFFF:
        raise ValueError(f"user id {user_id} out of range")
    return user_id


def _strip_size_prefix(buffer, expected_size):
    if expected_size is None:
        expected_size = len(buffer)
    if len(buffer) >= SIZE_PREFIX:
        announced = struct.unpack('<I', buffer[:SIZE_PREFIX])[0]
        if announced == expected_size - SIZE_PREFIX:
            return buffer[SIZE_PREFIX:]
    return buffer


def decode_record(block, index=0):
    """Decode one 40-byte block into an AttendanceRecord or raise DecodeError"""
    try:
        user_id = _parse_user_id(block[USER_ID_OFFSET:USER_ID_OFFSET + USER_ID_LENGTH])
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(index, f"bad user id ({e})") from e

    packed = struct.unpack('<I', block[TIMESTAMP_OFFSET:TIMESTAMP_OFFSET + 4])[0]
    try:
        timestamp = decode_timestamp(packed)
    except ValueError as e:
        raise DecodeError(index, f"invalid timestamp 0x{packed:08x} ({e})") from e

    return AttendanceRecord(
        user_id=user_id,
        timestamp=timestamp,
        verify_type=block[VERIFY_OFFSET],
        status=block[STATUS_OFFSET],
    )


def decode_records(buffer, expected_size=None):
    """
    Decode a raw ATTLOG buffer.

    expected_size is the table size the device announced; when the buffer
    starts with a matching size prefix it is skipped. Returns
    (records, errors) where errors holds the DecodeError of every skipped
    record. A trailing partial record is ignored.
    """
    return _decode_binary(_strip_size_prefix(bytes(buffer), expected_size))


def _decode_binary(data):
    records = []
    errors = []

    count = len(data) // RECORD_SIZE
    for index in range(count):
        block = data[index * RECORD_SIZE:(index + 1) * RECORD_SIZE]
        if index == 0 and block[TIMESTAMP_OFFSET:TIMESTAMP_OFFSET + 4] == b"\x00\x00\x00\x00":
            log_msg("Skipping placeholder record at start of table", "DEBUG")
            continue
        try:
            records.append(decode_record(block, index))
        except DecodeError as e:
            log_msg(f"Skipping record: {e}", "WARNING")
            errors.append(e)

    if len(data) % RECORD_SIZE:
        log_msg(f"Ignoring {len(data) % RECORD_SIZE} trailing bytes (partial record)", "DEBUG")
    return records, errors


def decode_text_records(data):
    """Decode the tab-separated ATTLOG dump some firmware returns"""
    records = []
    errors = []
    text = bytes(data).decode('utf-8', errors='replace')
    for index, line in enumerate(text.splitlines()):
        line = line.strip()
        if not line:
            continue
        # uid \t [empty] \t timestamp \t verify_type \t status
        parts = line.split('\t')
        if len(parts) < 5:
            continue
        try:
            user_id = int(parts[0].strip())
            timestamp = datetime.strptime(parts[2].strip(), TEXT_TIME_FORMAT)
        except ValueError as e:
            err = DecodeError(index, f"bad line {line!r} ({e})")
            log_msg(f"Skipping record: {err}", "WARNING")
            errors.append(err)
            continue
        verify_type = int(parts[3]) if parts[3].strip().isdigit() else 0
        status = int(parts[4]) if parts[4].strip().isdigit() else 0
        records.append(AttendanceRecord(user_id, timestamp, verify_type, status))
    return records, errors


def is_text_table(data):
    # binary records are NUL padded, so an all-printable sample with
    # separators can only be the text dump
    sample = bytes(data[:100])
    if sum(1 for b in sample if b in (0x09, 0x0a, 0x0d)) <= 2:
        return False
    return all(b in (0x09, 0x0a, 0x0d) or 0x20 <= b < 0x7f for b in sample)


def parse_attendance(buffer, expected_size=None):
    """Auto-detect text or binary table and decode it"""
    if not buffer:
        return [], []
    data = _strip_size_prefix(bytes(buffer), expected_size)
    if is_text_table(data):
        return decode_text_records(data)
    return _decode_binary(data)
