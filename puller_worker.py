"""
Qt worker for running a pull without blocking the tray/GUI thread.

Progress events from the transfer are re-emitted as progress_signal, log
lines as log_signal, and the per-device summaries as finished_signal when
the run ends. stop() cancels a transfer in progress at the next chunk
boundary; the device is still unlocked and the session closed.
"""
import threading
from datetime import datetime

from PyQt5.QtCore import QThread, pyqtSignal

import device_puller
from puller_config import (
    CONFIG_FILE,
    ENCRYPTED_CREDENTIALS_FILE,
    load_config,
    load_encrypted_credentials,
)
from zk_utils import set_debug_mode, set_log_callback


class _SignalChannel:
    """put(event) sink that forwards transfer progress to a Qt signal"""

    def __init__(self, signal):
        self.signal = signal

    def put(self, event):
        self.signal.emit(event.phase, event.bytes_received, event.total_size)


class PullWorker(QThread):
    """Worker thread that pulls every enabled device once"""
    progress_signal = pyqtSignal(str, int, int)
    log_signal = pyqtSignal(str)
    finished_signal = pyqtSignal(dict)

    def __init__(self, config_file=CONFIG_FILE, cred_file=ENCRYPTED_CREDENTIALS_FILE, force_clear=False):
        super().__init__()
        self.config_file = config_file
        self.cred_file = cred_file
        self.force_clear = force_clear
        self.cancel = threading.Event()

    def _log_wrapper(self, line):
        self.log_signal.emit(line)

    def run(self):
        set_log_callback(self._log_wrapper)
        summaries = {}
        try:
            config = load_config(self.config_file)
            set_debug_mode(config.get('DEBUG_MODE', False))
            credentials = load_encrypted_credentials(self.cred_file)
            channel = _SignalChannel(self.progress_signal)

            self.log_signal.emit(f"[{datetime.now().strftime('%H:%M:%S')}] Pull started")
            for device_config in config.get('DEVICES', []):
                if self.cancel.is_set():
                    break
                if not device_config.get('enabled', True):
                    continue
                summary = device_puller.pull_from_device(
                    device_config, config, credentials,
                    progress=channel, cancel=self.cancel, force_clear=self.force_clear,
                )
                summaries[summary['name']] = summary
        finally:
            set_log_callback(None)
            self.finished_signal.emit(summaries)

    def stop(self):
        self.cancel.set()
