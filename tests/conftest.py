from datetime import datetime, timedelta

import pytest

import zk_session
import zk_utils
from fake_device import FakeDevice, build_record, build_table


@pytest.fixture
def fake_device(monkeypatch):
    """Factory that installs a FakeDevice as the next socket.create_connection result"""
    def install(**kwargs):
        device = FakeDevice(**kwargs)
        monkeypatch.setattr(zk_session.socket, "create_connection", device.connect)
        return device
    return install


@pytest.fixture
def make_table():
    def build(count, start=datetime(2025, 11, 10, 8, 0, 0)):
        blocks = [
            build_record(1000 + i, start + timedelta(minutes=i), verify_type=1, status=i % 2)
            for i in range(count)
        ]
        return build_table(blocks)
    return build


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    zk_utils.set_log_callback(None)
    zk_utils.set_debug_mode(False)
