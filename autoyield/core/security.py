"""
Secrets handling.

- Session private keys are sealed with AES-256-GCM before they reach the
  database and opened only inside the executor.
- API callers authenticate with a JWT whose ``sub`` is their wallet.
- The scheduler authenticates with ``CRON_SECRET``.
"""

import base64
import binascii
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import get_settings


class TokenData(BaseModel):
    sub: str  # lowercase wallet address
    exp: datetime
    iat: datetime
    type: str = "access"
    jti: Optional[str] = None


def _derive_key(raw: str) -> bytes:
    """
    A 32-byte AES key from DATA_ENCRYPTION_KEY.

    The setting is normally urlsafe base64 of 32 random bytes; any other
    string is padded or truncated to 32 bytes so development setups work.
    """
    try:
        decoded = base64.urlsafe_b64decode(raw + "==")[:32]
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return decoded
    return raw.encode()[:32].ljust(32, b"\0")


class CryptoService:
    """
    Seals and opens session signing material.

    Output is ``base64(nonce || ciphertext || tag)`` with a fresh 12-byte
    nonce per call. Any blob that does not authenticate raises ValueError.
    """

    NONCE_SIZE = 12

    def __init__(self, encryption_key: Optional[str] = None):
        self._aesgcm = AESGCM(
            _derive_key(encryption_key or get_settings().data_encryption_key)
        )

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Refusing to encrypt empty plaintext")
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        if not encrypted:
            raise ValueError("Decryption failed: empty ciphertext")
        try:
            blob = base64.b64decode(encrypted, validate=True)
            nonce, sealed = blob[: self.NONCE_SIZE], blob[self.NONCE_SIZE :]
            return self._aesgcm.decrypt(nonce, sealed, None).decode("utf-8")
        except (binascii.Error, InvalidTag, ValueError, UnicodeDecodeError) as e:
            raise ValueError(f"Decryption failed: {type(e).__name__}") from e


def create_access_token(wallet_address: str, expires_delta: Optional[timedelta] = None) -> str:
    """Signed access token for ``wallet_address`` (stored lowercase in ``sub``)."""
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    issued = datetime.now(timezone.utc)

    claims = {
        "sub": wallet_address.lower(),
        "iat": issued,
        "exp": issued + lifetime,
        "type": "access",
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, token_type: str = "access") -> TokenData:
    """
    Decode and check a token.

    Every failure (bad signature, expiry, wrong type, missing claims)
    surfaces as JWTError so the auth dependency has one thing to catch.
    """
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise JWTError("Token has expired")
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}")

    if claims.get("type") != token_type:
        raise JWTError(f"Invalid token type: expected {token_type}")

    try:
        return TokenData(
            sub=str(claims["sub"]).lower(),
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            type=claims["type"],
            jti=claims.get("jti"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise JWTError(f"Token verification failed: {e}")


def verify_cron_secret(authorization: Optional[str]) -> bool:
    """Constant-time check of ``Authorization: Bearer <CRON_SECRET>``."""
    expected = get_settings().cron_secret
    if not expected or not authorization:
        return False
    scheme, _, supplied = authorization.partition(" ")
    if scheme.lower() != "bearer" or not supplied:
        return False
    return secrets.compare_digest(supplied.encode(), expected.encode())


_crypto_service: Optional[CryptoService] = None


def get_crypto_service() -> CryptoService:
    global _crypto_service
    if _crypto_service is None:
        _crypto_service = CryptoService()
    return _crypto_service
