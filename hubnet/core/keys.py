# hubnet/core/keys.py
"""
Key material for hubs and spokes

- X25519 keypairs in WireGuard's base64 format
- Fernet secret box for private keys at rest
"""

import base64
import logging
from dataclasses import dataclass, field

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from ..exceptions import KeyMaterialError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Keypair:
    public_key: str
    private_key: str = field(repr=False)


def _raw(key) -> bytes:
    if isinstance(key, X25519PrivateKey):
        return key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def generate_keypair() -> Keypair:
    """
    Generate a WireGuard (Curve25519) keypair

    Returns:
        Keypair with base64 encoded public and private key
    """
    try:
        private = X25519PrivateKey.generate()
        public = private.public_key()
    except Exception as e:
        raise KeyMaterialError(f"X25519 key generation unavailable: {e}") from e

    return Keypair(
        public_key=base64.b64encode(_raw(public)).decode("ascii"),
        private_key=base64.b64encode(_raw(private)).decode("ascii"),
    )


def public_key_from_private(private_key: str) -> str:
    """Derive the public key, same as `wg pubkey`"""
    try:
        raw = base64.b64decode(private_key, validate=True)
        private = X25519PrivateKey.from_private_bytes(raw)
    except Exception as e:
        raise KeyMaterialError(f"Invalid WireGuard private key: {e}") from e
    return base64.b64encode(_raw(private.public_key())).decode("ascii")


def validate_public_key(public_key: str) -> str:
    """Check an externally supplied public key is 32 raw bytes in base64"""
    try:
        raw = base64.b64decode(public_key, validate=True)
    except (ValueError, TypeError) as e:
        raise KeyMaterialError(f"Public key is not valid base64: {e}") from e
    if len(raw) != 32:
        raise KeyMaterialError(f"Public key must be 32 bytes, got {len(raw)}")
    return public_key


class SecretBox:
    """
    Encrypts and decrypts private keys at rest

    Every decryption is logged with its purpose (never the key) so that
    plaintext access stays auditable.
    """

    def __init__(self, key: str):
        if not key:
            raise KeyMaterialError("ENCRYPTION_KEY is not configured")
        try:
            self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
        except Exception as e:
            raise KeyMaterialError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode("ascii")

    def decrypt(self, token: str, purpose: str = "unspecified") -> str:
        if not token:
            raise KeyMaterialError(f"No encrypted key material for {purpose}")
        logger.debug(f"Decrypting private key for {purpose}")
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise KeyMaterialError(f"Cannot decrypt key material for {purpose}") from e


def get_secret_box() -> SecretBox:
    """Secret box built from application settings"""
    from ..config import settings
    return SecretBox(settings.ENCRYPTION_KEY)
