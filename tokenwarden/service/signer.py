from __future__ import annotations

import base64
import hashlib
import hmac

# Characters of the base64url HMAC kept in the token string. 32 characters carry
# 192 bits; verification truncates identically, so this only trims the margin.
SIGNATURE_LENGTH = 32


class Signer:
    """HMAC-SHA256 signatures and SHA-256 storage hashes for bearer tokens."""

    def __init__(self, signing_key: str) -> None:
        if not signing_key:
            raise ValueError("signing key must not be empty")
        self._key = signing_key.encode()

    def sign(self, payload: bytes) -> str:
        digest = hmac.new(self._key, payload, hashlib.sha256).digest()
        encoded = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
        return encoded[:SIGNATURE_LENGTH]

    @staticmethod
    def hash_token(token: str) -> str:
        """One-way digest used as the storage key; plaintext is never stored."""
        return hashlib.sha256(token.encode()).hexdigest()
