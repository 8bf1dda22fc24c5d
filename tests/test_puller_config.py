import json

import pytest
from cryptography.fernet import Fernet

import puller_config
from encrypt_credentials import encrypt_credentials
from zk_session import Timeouts


def test_missing_config_is_created_with_defaults(tmp_path):
    path = tmp_path / "device_puller_config.json"
    config = puller_config.load_config(str(path))
    assert config == puller_config.DEFAULT_CONFIG
    assert json.loads(path.read_text(encoding='utf-8')) == puller_config.DEFAULT_CONFIG


def test_missing_keys_are_filled(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"CLEAR_THRESHOLD": 10, "DEVICES": []}), encoding='utf-8')
    config = puller_config.load_config(str(path))
    assert config["CLEAR_THRESHOLD"] == 10
    assert config["DEVICES"] == []
    assert config["READ_TIMEOUT"] == 30


def test_broken_config_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding='utf-8')
    assert puller_config.load_config(str(path)) == puller_config.DEFAULT_CONFIG


def test_defaults_are_not_shared(tmp_path):
    config = puller_config.load_config(str(tmp_path / "a.json"))
    config["DEVICES"].append({"name": "extra"})
    assert len(puller_config.DEFAULT_CONFIG["DEVICES"]) == 1


def test_timeouts_from_config():
    timeouts = puller_config.timeouts_from_config({"CONNECT_TIMEOUT": 2, "READ_TIMEOUT": 5})
    assert timeouts == Timeouts(connect=2.0, read=5.0, write=10.0)


def test_encrypted_credentials_round_trip(tmp_path):
    src = tmp_path / "credentials.json"
    dst = tmp_path / "encrypted_credentials.bin"
    credentials = {
        "DB_CONFIG": {"host": "db.example", "user": "puller", "password": "pw", "database": "hr"},
        "DEVICE_KEYS": {"Gate": 1234},
    }
    src.write_text(json.dumps(credentials), encoding='utf-8')

    encrypt_credentials(str(src), str(dst))

    assert b"puller" not in dst.read_bytes()
    loaded = puller_config.load_encrypted_credentials(str(dst))
    assert loaded == credentials
    assert puller_config.device_comm_key(loaded, "Gate") == 1234
    assert puller_config.device_comm_key(loaded, "Other") == 0


def test_credentials_missing_or_wrong_key(tmp_path):
    assert puller_config.load_encrypted_credentials(str(tmp_path / "nope.bin")) == {}

    path = tmp_path / "other.bin"
    path.write_bytes(Fernet(Fernet.generate_key()).encrypt(b'{"DB_CONFIG": {}}'))
    assert puller_config.load_encrypted_credentials(str(path)) == {}


def test_non_numeric_comm_key():
    assert puller_config.device_comm_key({"DEVICE_KEYS": {"Gate": "abc"}}, "Gate") == 0


def test_encrypt_requires_db_config(tmp_path):
    src = tmp_path / "credentials.json"
    dst = tmp_path / "encrypted_credentials.bin"
    src.write_text(json.dumps({"DEVICE_KEYS": {"Gate": 1}}), encoding='utf-8')

    with pytest.raises(ValueError):
        encrypt_credentials(str(src), str(dst))
    assert not dst.exists()
