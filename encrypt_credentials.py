"""
Credential Encryption Script
For internal use only - encrypts credentials for distribution
"""
import json
import sys

from cryptography.fernet import Fernet

from puller_config import ENCRYPTED_CREDENTIALS_FILE, ENCRYPTION_KEY

EXAMPLE = """{
  "DB_CONFIG": {
    "user": "your_username",
    "password": "your_password",
    "host": "your_host",
    "database": "your_database",
    "port": 3306
  },
  "DEVICE_KEYS": {
    "ZK Terminal Main": 0
  }
}"""


def encrypt_credentials(src='credentials.json', dst=ENCRYPTED_CREDENTIALS_FILE, key=ENCRYPTION_KEY):
    """Encrypt src into dst with the application's fixed key"""
    with open(src, 'r', encoding='utf-8') as f:
        credentials = json.load(f)

    if 'DB_CONFIG' not in credentials:
        raise ValueError(f"{src} has no DB_CONFIG section")

    fernet = Fernet(key)
    encrypted_data = fernet.encrypt(json.dumps(credentials, indent=2).encode())
    with open(dst, 'wb') as f:
        f.write(encrypted_data)
    return dst


def main():
    print("ZK Puller - Credential Encryption Tool")
    print("=====================================")
    print(f"Using fixed encryption key: {ENCRYPTION_KEY.decode()[:20]}...")

    src = sys.argv[1] if len(sys.argv) > 1 else 'credentials.json'
    try:
        dst = encrypt_credentials(src)
    except FileNotFoundError:
        print(f"Error: {src} not found in current directory")
        print("Create it with your database credentials first.")
        print("Example format:")
        print(EXAMPLE)
        return 1
    except ValueError as e:
        print(f"Error reading {src}: {e}")
        return 1

    print("Encryption completed!")
    print(f"- Encrypted credentials saved to: {dst}")
    print(f"- DO NOT distribute {src} with the application")
    return 0


if __name__ == "__main__":
    sys.exit(main())
