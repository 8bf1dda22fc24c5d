"""
Configuration for the ZK attendance puller.

Public settings live in a JSON file that is created with defaults on first
run; database credentials and device comm keys live in a Fernet-encrypted
file produced by encrypt_credentials.py.
"""
import json

from cryptography.fernet import Fernet, InvalidToken

from zk_session import DEFAULT_PORT, Timeouts
from zk_utils import log_msg

CONFIG_FILE = "device_puller_config.json"
ENCRYPTED_CREDENTIALS_FILE = "encrypted_credentials.bin"

# Shared fixed encryption key (must match encrypt_credentials.py)
ENCRYPTION_KEY = b'XZgpn7Se8pQeHY8RMyeYf6e5Twq9PdOBVo9JPsqHZA4='

DEFAULT_CONFIG = {
    "DEVICES": [
        {
            "name": "ZK Terminal Main",
            "ip": "192.168.1.201",
            "port": DEFAULT_PORT,
            "enabled": True
        }
    ],
    "CONNECT_TIMEOUT": 10,
    "READ_TIMEOUT": 30,
    "WRITE_TIMEOUT": 10,
    "SYNC_TO_CLOUD": True,
    "PULL_INTERVAL_MINUTES": 15,
    "CLEAR_ENABLED": False,
    "CLEAR_THRESHOLD": 50000,
    "CLEAR_ALLOW_DECODE_ERRORS": False,
    "DEBUG_MODE": False
}


def _defaults():
    return json.loads(json.dumps(DEFAULT_CONFIG))


def load_config(config_file=CONFIG_FILE):
    """Load configuration from JSON file, filling in missing keys"""
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config = json.load(f)
        for key, value in _defaults().items():
            if key not in config:
                config[key] = value
        return config
    except FileNotFoundError:
        log_msg(f"Config file not found, creating default: {config_file}")
        config = _defaults()
        save_config(config, config_file)
        return config
    except (OSError, ValueError) as e:
        log_msg(f"Error loading config: {e}", "ERROR")
        return _defaults()


def save_config(config, config_file=CONFIG_FILE):
    """Save configuration to JSON file"""
    try:
        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(config, f, indent=4, ensure_ascii=False)
        return True
    except OSError as e:
        log_msg(f"Error saving config: {e}", "ERROR")
        return False


def load_encrypted_credentials(cred_file=ENCRYPTED_CREDENTIALS_FILE, key=ENCRYPTION_KEY):
    """Load and decrypt the credentials file; {} when missing or unreadable"""
    try:
        with open(cred_file, 'rb') as f:
            encrypted_data = f.read()
        fernet = Fernet(key)
        decrypted_data = fernet.decrypt(encrypted_data)
        return json.loads(decrypted_data.decode())
    except FileNotFoundError:
        log_msg(f"Credentials file not found: {cred_file}", "ERROR")
        return {}
    except InvalidToken:
        log_msg(f"Error decrypting credentials: {cred_file} was not encrypted with this key", "ERROR")
        return {}
    except (OSError, ValueError) as e:
        log_msg(f"Error decrypting credentials: {e}", "ERROR")
        return {}


def timeouts_from_config(config):
    return Timeouts(
        connect=float(config.get("CONNECT_TIMEOUT", DEFAULT_CONFIG["CONNECT_TIMEOUT"])),
        read=float(config.get("READ_TIMEOUT", DEFAULT_CONFIG["READ_TIMEOUT"])),
        write=float(config.get("WRITE_TIMEOUT", DEFAULT_CONFIG["WRITE_TIMEOUT"])),
    )


def device_comm_key(credentials, device_name):
    """Comm key for a device from DEVICE_KEYS, 0 when none is set"""
    keys = credentials.get("DEVICE_KEYS", {})
    try:
        return int(keys.get(device_name, 0))
    except (TypeError, ValueError):
        log_msg(f"Ignoring non-numeric comm key for {device_name}", "WARNING")
        return 0
