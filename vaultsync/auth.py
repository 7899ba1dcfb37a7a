# vaultsync/auth.py — request authentication
#
# Strategy:
#   - Devices present a bearer token naming (user_id, device_id)
#   - Tokens are HMAC-SHA256 signed with the server secret
#   - Format: base64url( json{sub, dev, exp} ) + "." + base64url( sig[32] )
#   - The secret comes from SECRET_KEY, or a 32-byte key file generated on first run
#
# These are not JWTs. Clients holding JWTs ({user_id, device_id} claims) from the
# earlier Node server cannot reuse them here; reissue with `vaultsync issue-token`.

import base64
import binascii
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from vaultsync.errors import AuthenticationError, ConfigError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Identity:
    user_id: str
    device_id: str


class Authenticator(Protocol):
    def authenticate(self, token: str) -> Identity:
        """Return the verified identity behind ``token`` or raise AuthenticationError."""


# ── Key persistence ────────────────────────────────────────────────────────────

def load_or_create_key(path: str) -> bytes:
    """Load the signing key from ``path``, or generate and save it on first run."""
    if os.path.exists(path):
        with open(path, "rb") as f:
            key = f.read()
        if len(key) != KEY_BYTES:
            raise ConfigError(
                f"{path} exists but contains {len(key)} bytes (expected {KEY_BYTES}). File may be corrupt."
            )
        return key

    key = os.urandom(KEY_BYTES)
    with open(path, "wb") as f:
        f.write(key)
    os.chmod(path, 0o600)

    logger.warning(
        "New token signing key generated at %s; existing device tokens are no longer valid",
        os.path.abspath(path),
    )
    return key


def resolve_secret(secret_key: Optional[str], key_file: str) -> bytes:
    if secret_key:
        return secret_key.encode("utf-8")
    return load_or_create_key(key_file)


# ── Tokens ─────────────────────────────────────────────────────────────────────

def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class TokenAuthenticator:
    def __init__(self, key: bytes, ttl_days: int = 30):
        if not key:
            raise ConfigError("Token signing key must not be empty")
        self._key = key
        self.ttl_seconds = ttl_days * SECONDS_PER_DAY

    def _sign(self, payload: bytes) -> bytes:
        mac = hmac.HMAC(self._key, hashes.SHA256())
        mac.update(payload)
        return mac.finalize()

    def issue_token(self, user_id: str, device_id: str, now: Optional[float] = None) -> str:
        issued = time.time() if now is None else now
        claims = {"sub": user_id, "dev": device_id, "exp": int(issued + self.ttl_seconds)}
        payload = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return f"{_b64encode(payload)}.{_b64encode(self._sign(payload))}"

    def authenticate(self, token: str, now: Optional[float] = None) -> Identity:
        try:
            payload_b64, sig_b64 = token.split(".")
            payload = _b64decode(payload_b64)
            signature = _b64decode(sig_b64)
        except (ValueError, binascii.Error):
            raise AuthenticationError("Malformed token") from None

        mac = hmac.HMAC(self._key, hashes.SHA256())
        mac.update(payload)
        try:
            mac.verify(signature)
        except InvalidSignature:
            raise AuthenticationError("Invalid token") from None

        try:
            claims = json.loads(payload)
            user_id, device_id, expires = claims["sub"], claims["dev"], claims["exp"]
        except (ValueError, KeyError, TypeError):
            raise AuthenticationError("Malformed token") from None

        if (time.time() if now is None else now) >= expires:
            raise AuthenticationError("Token expired")
        return Identity(user_id=str(user_id), device_id=str(device_id))
