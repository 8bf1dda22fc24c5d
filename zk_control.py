"""
Device lock and threshold clear.

disable_device / enable_device bracket a transfer best-effort; they only
reduce the chance of the terminal writing new punches while the table is
read. Clearing the attendance log is a separate, explicit step that needs a
confirmed persist of the downloaded batch first.
"""
import struct
from dataclasses import dataclass

import zk_framing as framing
import zk_session
from zk_errors import CapacityError, ProtocolError, TransportError
from zk_utils import log_msg

FREE_SIZES_FIELDS = 20
FREE_SIZES_LENGTH = FREE_SIZES_FIELDS * 4

# u32 indexes in the GET_FREE_SIZES table
IDX_RECORDS = 8
IDX_RECORDS_CAP = 16
IDX_RECORDS_AV = 19


@dataclass(frozen=True)
class CapacityStats:
    record_count: int
    record_capacity: int
    record_available: int

    @property
    def usage(self):
        if not self.record_capacity:
            return 0.0
        return self.record_count / self.record_capacity


def _best_effort(session, command):
    name = framing.command_name(command)
    try:
        response = zk_session.send(session, command)
    except (TransportError, ProtocolError) as e:
        log_msg(f"{name} not acknowledged: {e}", "WARNING")
        return False
    if response.command != framing.CMD_ACK_OK:
        log_msg(f"{name} answered with {framing.command_name(response.command)}", "WARNING")
        return False
    return True


def disable_device(session):
    """Lock the terminal's keypad/sensor for the transfer window"""
    return _best_effort(session, framing.CMD_DISABLEDEVICE)


def enable_device(session):
    return _best_effort(session, framing.CMD_ENABLEDEVICE)


def parse_capacity(data):
    if len(data) < FREE_SIZES_LENGTH:
        raise CapacityError(f"Expected {FREE_SIZES_LENGTH} bytes for capacity info, got {len(data)}")
    fields = struct.unpack(f'<{FREE_SIZES_FIELDS}I', bytes(data[:FREE_SIZES_LENGTH]))
    return CapacityStats(
        record_count=fields[IDX_RECORDS],
        record_capacity=fields[IDX_RECORDS_CAP],
        record_available=fields[IDX_RECORDS_AV],
    )


def read_capacity(session):
    response = zk_session.send(session, framing.CMD_GET_FREE_SIZES)
    capacity = parse_capacity(response.data)
    log_msg(
        f"Device capacity: {capacity.record_count} / {capacity.record_capacity} records "
        f"({capacity.record_available} available)"
    )
    return capacity


class ThresholdClear:
    """
    Confirm-then-clear gate for the on-device attendance log.

    The caller first confirms that a complete downloaded batch is durably
    stored, then asks for the clear. The clear is only sent when the device
    reports more records than the threshold and no more records than the
    confirmed batch held. One confirmation allows one attempt.

    Undecodable records block the clear unless allow_decode_loss is set.
    """

    def __init__(self, threshold, allow_decode_loss=False):
        self.threshold = int(threshold)
        self.allow_decode_loss = allow_decode_loss
        self.confirmed = False
        self.batch_size = 0

    def confirm_persisted(self, result, stored_count):
        """Accept the batch in result as stored; returns True when confirmed"""
        self.confirmed = False
        self.batch_size = 0
        if result.error is not None or result.cancelled:
            log_msg("Transfer was not complete, device will not be cleared", "WARNING")
            return False
        if result.short:
            log_msg(
                f"Only {result.bytes_received} of {result.total_expected} bytes downloaded, "
                "device will not be cleared",
                "WARNING",
            )
            return False
        if stored_count < len(result.records):
            log_msg(
                f"Only {stored_count} of {len(result.records)} records stored, "
                "device will not be cleared",
                "WARNING",
            )
            return False
        if result.decode_errors:
            if not self.allow_decode_loss:
                log_msg(
                    f"{result.decode_errors} records could not be decoded, device will not be cleared",
                    "WARNING",
                )
                return False
            log_msg(f"{result.decode_errors} undecodable records will be lost on clear", "WARNING")

        # device count seen while the table was locked covers placeholder blocks too
        if result.capacity is not None:
            self.batch_size = result.capacity.record_count
        else:
            self.batch_size = len(result.records) + result.decode_errors
        self.confirmed = True
        return True

    def clear_if_due(self, session):
        """Clear the attendance log when confirmed and over threshold"""
        if not self.confirmed:
            log_msg("Clear refused: no confirmed persist for the downloaded batch", "WARNING")
            return False
        self.confirmed = False

        capacity = read_capacity(session)
        if capacity.record_count > self.batch_size:
            log_msg(
                f"Clear refused: device holds {capacity.record_count} records but only "
                f"{self.batch_size} were downloaded and stored",
                "WARNING",
            )
            return False
        if capacity.record_count <= self.threshold:
            log_msg(f"Records {capacity.record_count} <= threshold {self.threshold}, not clearing")
            return False

        log_msg(f"Records {capacity.record_count} > threshold {self.threshold}, clearing device")
        response = zk_session.send(session, framing.CMD_CLEAR_ATTLOG)
        if response.command != framing.CMD_ACK_OK:
            raise ProtocolError(
                f"Expected ACK_OK after clear, got {framing.command_name(response.command)}"
            )
        log_msg("Attendance records cleared successfully")
        return True
