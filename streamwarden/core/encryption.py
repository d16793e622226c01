import json
from base64 import urlsafe_b64encode

from cryptography.fernet import Fernet

from .config import settings


class CredentialEncryption:
    def __init__(self, secret_key: str = None):
        # Derive a Fernet key from the secret key
        key = (secret_key or settings.secret_key).encode()[:32].ljust(32, b'0')
        self.fernet = Fernet(urlsafe_b64encode(key))

    def encrypt_credentials(self, credentials: dict) -> bytes:
        """Encrypt credential dictionary to bytes"""
        json_str = json.dumps(credentials)
        return self.fernet.encrypt(json_str.encode())

    def decrypt_credentials(self, encrypted_data: bytes) -> dict:
        """Decrypt bytes back to credential dictionary"""
        decrypted_str = self.fernet.decrypt(encrypted_data).decode()
        return json.loads(decrypted_str)


credential_encryption = CredentialEncryption()
