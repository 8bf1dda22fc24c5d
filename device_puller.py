"""
ZK Attendance Puller - TCP Direct Connection

Connects directly to ZKTeco-family terminals over the binary TCP protocol
(port 4370), reads the complete attendance log from flash storage, stores it
in the cloud database, and optionally clears the device once the batch is
safely stored and the record count is over the configured threshold.

Usage:
    python device_puller.py test <ip> [port]
    python device_puller.py once
    python device_puller.py scheduled
    python device_puller.py capacity
    python device_puller.py clear
"""
import sys
import time

import attendance_store
import zk_control
import zk_session
import zk_transfer
from puller_config import (
    CONFIG_FILE,
    ENCRYPTED_CREDENTIALS_FILE,
    device_comm_key,
    load_config,
    load_encrypted_credentials,
    timeouts_from_config,
)
from zk_errors import ZKError
from zk_utils import log_msg, set_debug_mode


def _device_address(device_config):
    return device_config.get('ip', ''), int(device_config.get('port', zk_session.DEFAULT_PORT))


def clear_after_persist(device_config, config, credentials, result, stored_count):
    """Confirm the stored batch, then clear the device if it is over threshold"""
    name = device_config.get('name', 'Unknown')
    gate = zk_control.ThresholdClear(config.get('CLEAR_THRESHOLD', 0),
                                     allow_decode_loss=config.get('CLEAR_ALLOW_DECODE_ERRORS', False))
    if not gate.confirm_persisted(result, stored_count):
        return False

    address = _device_address(device_config)
    try:
        with zk_session.open_session(address, timeouts_from_config(config),
                                     device_comm_key(credentials, name)) as session:
            return gate.clear_if_due(session)
    except ZKError as e:
        log_msg(f"Error clearing {name}: {e}", "ERROR")
        return False


def pull_from_device(device_config, config, credentials, progress=None, cancel=None, force_clear=False):
    """Pull attendance data from a single device"""
    name = device_config.get('name', 'Unknown')
    address = _device_address(device_config)
    summary = {
        'name': name,
        'records': 0,
        'stored': 0,
        'cleared': False,
        'complete': False,
        'error': None,
    }

    log_msg(f"Pulling from device: {name} ({address[0]}:{address[1]})")
    try:
        result = zk_transfer.download_attendance(
            address,
            timeouts_from_config(config),
            device_comm_key(credentials, name),
            progress=progress,
            cancel=cancel,
        )
    except ZKError as e:
        log_msg(f"Error pulling from {name}: {e}", "ERROR")
        summary['error'] = str(e)
        return summary

    summary['records'] = len(result.records)
    summary['complete'] = result.ok
    if result.error is not None:
        summary['error'] = str(result.error)
        log_msg(f"Partial pull from {name}: {result.summary()}", "WARNING")

    stored_count = 0
    if result.records and config.get('SYNC_TO_CLOUD'):
        stored = attendance_store.store_records(
            f"{name}_{address[0]}", result.records, credentials.get('DB_CONFIG', {})
        )
        stored_count = stored.stored
        summary['stored'] = stored_count
        log_msg(f"Synced {stored_count} records to cloud")
    elif not result.records:
        log_msg(f"No new records from {name}")

    if force_clear or config.get('CLEAR_ENABLED'):
        summary['cleared'] = clear_after_persist(device_config, config, credentials, result, stored_count)

    return summary


def pull_all_devices(config_file=CONFIG_FILE, cred_file=ENCRYPTED_CREDENTIALS_FILE, force_clear=False):
    """Pull attendance data from all configured devices"""
    config = load_config(config_file)
    set_debug_mode(config.get('DEBUG_MODE', False))
    credentials = load_encrypted_credentials(cred_file)

    summaries = []
    for device_config in config.get('DEVICES', []):
        if not device_config.get('enabled', True):
            continue
        summaries.append(pull_from_device(device_config, config, credentials, force_clear=force_clear))

    total = sum(s['records'] for s in summaries)
    log_msg(f"Pulled {total} records from {len(summaries)} device(s)")
    return summaries


def run_scheduled(config_file=CONFIG_FILE):
    """Run in scheduled mode"""
    config = load_config(config_file)
    interval = config.get('PULL_INTERVAL_MINUTES', 15)

    log_msg(f"Starting scheduled pull (every {interval} min)")
    while True:
        try:
            pull_all_devices(config_file)
            time.sleep(interval * 60)
        except KeyboardInterrupt:
            log_msg("Scheduled pull stopped")
            break
        except OSError as e:
            log_msg(f"Scheduled pull failed: {e}", "ERROR")
            time.sleep(60)


def test_connection(ip, port=zk_session.DEFAULT_PORT, config_file=CONFIG_FILE):
    """Open and close a session to check the device answers the handshake"""
    config = load_config(config_file)
    try:
        with zk_session.open_session((ip, port), timeouts_from_config(config)) as session:
            log_msg(f"Connection successful! session_id=0x{session.session_id:04x}")
        return True
    except ZKError as e:
        log_msg(f"Connection failed: {e}", "ERROR")
        return False


def show_capacity(config_file=CONFIG_FILE, cred_file=ENCRYPTED_CREDENTIALS_FILE):
    """Print the attendance-log usage of every enabled device"""
    config = load_config(config_file)
    credentials = load_encrypted_credentials(cred_file)
    results = {}
    for device_config in config.get('DEVICES', []):
        if not device_config.get('enabled', True):
            continue
        name = device_config.get('name', 'Unknown')
        try:
            with zk_session.open_session(_device_address(device_config), timeouts_from_config(config),
                                         device_comm_key(credentials, name)) as session:
                capacity = zk_control.read_capacity(session)
        except ZKError as e:
            log_msg(f"Error reading capacity of {name}: {e}", "ERROR")
            continue
        log_msg(f"{name}: {capacity.record_count}/{capacity.record_capacity} records ({capacity.usage:.0%} used)")
        results[name] = capacity
    return results


def main():
    log_msg("=" * 60)
    log_msg("ZK Attendance Puller (TCP binary protocol)")
    log_msg("=" * 60)

    cmd = sys.argv[1].lower() if len(sys.argv) > 1 else 'once'
    if cmd == 'test':
        if len(sys.argv) < 3:
            print("Usage: python device_puller.py test <ip> [port]")
            return 2
        port = int(sys.argv[3]) if len(sys.argv) > 3 else zk_session.DEFAULT_PORT
        return 0 if test_connection(sys.argv[2], port) else 1
    if cmd == 'once':
        pull_all_devices()
    elif cmd == 'scheduled':
        run_scheduled()
    elif cmd == 'capacity':
        show_capacity()
    elif cmd == 'clear':
        pull_all_devices(force_clear=True)
    else:
        print("Usage: python device_puller.py [test <ip>|once|scheduled|capacity|clear]")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
