"""
Logging helpers shared by the puller modules.

Lines go to stdout as "[timestamp] [LEVEL] message" unless a callback
(e.g. the Qt worker's log signal) has been installed.
"""
import sys
from datetime import datetime

DEBUG_MODE = False

_log_callback = None


def set_debug_mode(enabled):
    """Enable or disable DEBUG lines and hex dumps"""
    global DEBUG_MODE
    DEBUG_MODE = bool(enabled)


def set_log_callback(callback):
    """Redirect log lines to callback(line); None restores stdout"""
    global _log_callback
    _log_callback = callback


def log_msg(message, level="INFO"):
    """Log messages with timestamp"""
    if level == "DEBUG" and not DEBUG_MODE:
        return
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    line = f"[{timestamp}] [{level}] {message}"
    if _log_callback is not None:
        _log_callback(line)
        return
    print(line)
    sys.stdout.flush()


def hex_dump(data, label=""):
    if not DEBUG_MODE or not data:
        return
    hex_str = ' '.join(f'{b:02x}' for b in data[:32])
    if len(data) > 32:
        hex_str += f" ... ({len(data) - 32} more bytes)"
    log_msg(f"{label}: {hex_str}", "DEBUG")
