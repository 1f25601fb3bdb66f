"""Cryptographic utilities for sigchat.

Includes:
- base64url helpers used for identity keys and signatures on the wire
- Ed25519 keypairs (the identity key is the 32-byte verify key)
- Challenge construction and detached signature verification
"""

import base64
import binascii
import secrets
from dataclasses import dataclass

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import InvalidIdentity

# Ed25519 public keys and seeds are both 32 bytes
KEY_SIZE = 32
SIGNATURE_SIZE = 64

CHALLENGE_TITLE = "sigchat Authentication"


def bytes_to_base64url(data: bytes) -> str:
    """Encode bytes to base64url (URL-safe, no padding)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_to_bytes(s: str) -> bytes:
    """Decode base64 or base64url string to bytes (handles missing padding)."""
    # Add padding if needed
    padding = 4 - (len(s) % 4)
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)


# =============================================================================
# Identity keys (Ed25519)
# =============================================================================


@dataclass
class KeyPair:
    """An Ed25519 signing keypair."""

    private_key: bytes  # 32 bytes - seed
    public_key: bytes  # 32 bytes - verify key

    @property
    def private_key_base64(self) -> str:
        """Base64url-encoded seed for local storage."""
        return bytes_to_base64url(self.private_key)

    @property
    def identity_key(self) -> str:
        """Base64url-encoded public key, as sent to the server."""
        return bytes_to_base64url(self.public_key)

    @classmethod
    def from_private_key_base64(cls, private_key_base64: str) -> "KeyPair":
        """Reconstruct keypair from stored seed."""
        return cls.from_seed(base64url_to_bytes(private_key_base64))

    @classmethod
    def from_seed(cls, seed: bytes) -> "KeyPair":
        """Create keypair from a 32-byte seed."""
        signing_key = SigningKey(seed)
        return cls(private_key=seed, public_key=bytes(signing_key.verify_key))

    def sign(self, message: str) -> str:
        """Sign a message, returning the base64url detached signature."""
        return bytes_to_base64url(sign_message(message, self.private_key))


def generate_keypair() -> KeyPair:
    """Generate a new Ed25519 keypair from a random seed."""
    return KeyPair.from_seed(secrets.token_bytes(KEY_SIZE))


def parse_identity_key(identity_key: str | None) -> bytes:
    """Decode and validate an identity key.

    Returns:
        The raw 32-byte Ed25519 public key.

    Raises:
        InvalidIdentity: If the key is missing, not base64url, or the wrong size.
    """
    if not identity_key or not isinstance(identity_key, str):
        raise InvalidIdentity("Identity key required")

    try:
        raw = base64url_to_bytes(identity_key.strip())
    except (binascii.Error, ValueError):
        raise InvalidIdentity("Identity key is not valid base64url")

    if len(raw) != KEY_SIZE:
        raise InvalidIdentity(f"Identity key must encode {KEY_SIZE} bytes")

    try:
        VerifyKey(raw)
    except (ValueError, TypeError):
        raise InvalidIdentity()

    return raw


def canonical_identity_key(identity_key: str | None) -> str:
    """Validate an identity key and return its canonical spelling.

    Decoding is lenient (padding, the standard alphabet and whitespace are
    all accepted), so one key can be written several ways. Users, challenges
    and lookups are keyed by the unpadded base64url form returned here.

    Raises:
        InvalidIdentity: If the key is not a well-formed Ed25519 public key.
    """
    return bytes_to_base64url(parse_identity_key(identity_key))


def default_display_name(identity_key: str) -> str:
    """Deterministic display name for a first-seen identity."""
    return f"User_{identity_key[:6]}"


# =============================================================================
# Challenges
# =============================================================================


def generate_nonce() -> str:
    """Generate a random challenge nonce (128-bit hex string)."""
    return secrets.token_hex(16)


def build_challenge_message(nonce: str, identity_key: str) -> str:
    """Human-readable text the client signs to prove key possession."""
    return (
        f"{CHALLENGE_TITLE}\n\n"
        "Sign this message to prove you own this key.\n\n"
        f"Nonce: {nonce}\n"
        f"Identity: {identity_key}"
    )


def sign_message(message: str, private_key: bytes) -> bytes:
    """
    Sign a message using Ed25519.

    Args:
        message: Message to sign (will be encoded as UTF-8)
        private_key: 32-byte private key (seed)

    Returns:
        64-byte signature
    """
    signing_key = SigningKey(private_key)
    signed = signing_key.sign(message.encode("utf-8"))
    return bytes(signed.signature)


def verify_signature(message: str, signature: bytes, public_key: bytes) -> bool:
    """
    Verify an Ed25519 detached signature.

    Args:
        message: Original message (will be encoded as UTF-8)
        signature: 64-byte signature
        public_key: 32-byte Ed25519 public key

    Returns:
        True if signature is valid, False otherwise
    """
    if len(signature) != SIGNATURE_SIZE:
        return False
    try:
        verify_key = VerifyKey(public_key)
        verify_key.verify(message.encode("utf-8"), signature)
        return True
    except BadSignatureError:
        return False


def decode_signature(signature: str | None) -> bytes | None:
    """Decode a base64/base64url signature. Returns None if malformed."""
    if not signature or not isinstance(signature, str):
        return None
    try:
        return base64url_to_bytes(signature.strip())
    except (binascii.Error, ValueError):
        return None
