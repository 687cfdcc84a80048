import base64
import binascii
import json
import time
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad


class TunnelTokenError(Exception):
    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


class EncryptionHandler:
    def __init__(self, secret_key: str):
        self.secret_key = secret_key.encode("utf-8").ljust(32)[:32]

    def encrypt_data(self, data: dict, expiration: int = None, ip: str = None) -> str:
        data = dict(data)
        if expiration:
            data["exp"] = int(time.time()) + expiration
        if ip:
            data["ip"] = ip
        json_data = json.dumps(data).encode("utf-8")
        iv = get_random_bytes(16)
        cipher = AES.new(self.secret_key, AES.MODE_CBC, iv)
        encrypted_data = cipher.encrypt(pad(json_data, AES.block_size))
        return base64.urlsafe_b64encode(iv + encrypted_data).decode("utf-8").rstrip("=")

    def decrypt_data(self, token: str, client_ip: Optional[str]) -> dict:
        try:
            padding_needed = (4 - len(token) % 4) % 4
            encrypted_data = base64.urlsafe_b64decode((token + "=" * padding_needed).encode("utf-8"))
            iv = encrypted_data[:16]
            cipher = AES.new(self.secret_key, AES.MODE_CBC, iv)
            data = json.loads(unpad(cipher.decrypt(encrypted_data[16:]), AES.block_size))
        except (ValueError, KeyError, binascii.Error):
            raise TunnelTokenError(401, "Invalid or expired token")

        if not isinstance(data, dict):
            raise TunnelTokenError(401, "Invalid or expired token")

        if "exp" in data:
            if data["exp"] < time.time():
                raise TunnelTokenError(401, "Token has expired")
            del data["exp"]

        if "ip" in data:
            if data["ip"] != client_ip:
                raise TunnelTokenError(403, "IP address mismatch")
            del data["ip"]

        return data
