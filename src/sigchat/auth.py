"""Challenge/response authentication for sigchat.

A client proves it holds the private half of an Ed25519 identity key:

    1. issue_challenge(identity_key) stores a fresh nonce and returns a
       human-readable message embedding it.
    2. The client signs the exact message bytes with its private key.
    3. verify_response(identity_key, signature) checks the signature against
       the stored message and, on success, consumes the challenge and
       returns the (possibly newly created) user.

Challenges live in a ChallengeStore. The in-memory store is process-local;
a multi-instance deployment needs a shared implementation of the same
interface.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from . import db
from .cache import TTLCache
from .crypto import (
    build_challenge_message,
    bytes_to_base64url,
    canonical_identity_key,
    decode_signature,
    default_display_name,
    generate_nonce,
    parse_identity_key,
    verify_signature,
)
from .errors import ChallengeExpired, ChallengeNotFound, InvalidRequest, InvalidSignature

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL = 300.0
MAX_USERNAME_LENGTH = 64


@dataclass(frozen=True)
class Challenge:
    """A challenge issued to one identity key."""

    identity_key: str
    nonce: str
    message: str
    issued_at: float

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.issued_at > ttl


class ChallengeStore(ABC):
    """Storage for outstanding challenges, one per identity key.

    Each operation must be atomic with respect to the others so that a
    challenge is consumed at most once.
    """

    @abstractmethod
    def put(self, challenge: Challenge) -> None:
        """Store a challenge, replacing any earlier one for the same key."""

    @abstractmethod
    def get(self, identity_key: str) -> Challenge | None:
        """Return the outstanding challenge for a key without consuming it."""

    @abstractmethod
    def get_and_consume(self, identity_key: str, nonce: str) -> Challenge | None:
        """Remove and return the challenge for a key if its nonce matches.

        Returns None if there is no challenge, or if it has been replaced by
        one with a different nonce.
        """


class InMemoryChallengeStore(ChallengeStore):
    """Challenge store backed by a lock-protected TTL cache.

    Entries are retained for twice the challenge TTL so that a late
    verification can still be reported as expired rather than missing;
    after that they are dropped. The cache is bounded by ``max_size``.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_CHALLENGE_TTL,
        max_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = TTLCache(
            name="challenges",
            default_ttl=ttl * 2,
            max_size=max_size,
            clock=clock,
        )

    def put(self, challenge: Challenge) -> None:
        self._cache.set(challenge.identity_key, challenge)

    def get(self, identity_key: str) -> Challenge | None:
        hit, challenge = self._cache.get(identity_key)
        return challenge if hit else None

    def get_and_consume(self, identity_key: str, nonce: str) -> Challenge | None:
        hit, challenge = self._cache.pop(identity_key, predicate=lambda c: c.nonce == nonce)
        return challenge if hit else None

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> dict:
        return self._cache.stats()


def _clean_username(username: str | None) -> str | None:
    if username is None:
        return None
    if not isinstance(username, str):
        raise InvalidRequest("Username must be a string")
    username = username.strip()
    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidRequest(f"Username exceeds {MAX_USERNAME_LENGTH} characters")
    return username or None


class AuthService:
    """Issues and verifies identity challenges.

    Args:
        store: Where outstanding challenges are kept
        ttl: Seconds a challenge stays valid after issue
        consume_on_failure: If True, a failed signature check discards the
            challenge and the client must request a new one. If False, the
            client may retry against the same challenge until it expires.
        clock: Time source in seconds; injectable for tests
    """

    def __init__(
        self,
        store: ChallengeStore | None = None,
        ttl: float = DEFAULT_CHALLENGE_TTL,
        consume_on_failure: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.consume_on_failure = consume_on_failure
        self.clock = clock
        self.store = store or InMemoryChallengeStore(ttl=ttl, clock=clock)

    def issue_challenge(self, identity_key: str) -> Challenge:
        """Create and store a challenge for an identity key.

        Raises:
            InvalidIdentity: If the key is not a well-formed Ed25519 public key.
        """
        identity_key = canonical_identity_key(identity_key)

        nonce = generate_nonce()
        challenge = Challenge(
            identity_key=identity_key,
            nonce=nonce,
            message=build_challenge_message(nonce, identity_key),
            issued_at=self.clock(),
        )
        self.store.put(challenge)
        return challenge

    def verify_response(
        self,
        identity_key: str,
        signature: str,
        username: str | None = None,
    ) -> dict:
        """Check a signed challenge and return the authenticated user.

        A first-seen identity is provisioned with ``username`` as its display
        name, or a default derived from the key.

        Raises:
            InvalidIdentity: Malformed identity key
            ChallengeNotFound: No outstanding challenge (never issued, or consumed)
            ChallengeExpired: The challenge is older than the TTL
            InvalidSignature: The signature does not verify
        """
        public_key = parse_identity_key(identity_key)
        identity_key = bytes_to_base64url(public_key)
        username = _clean_username(username)

        challenge = self.store.get(identity_key)
        if challenge is None:
            raise ChallengeNotFound()

        if challenge.is_expired(self.clock(), self.ttl):
            self.store.get_and_consume(identity_key, challenge.nonce)
            raise ChallengeExpired()

        raw_signature = decode_signature(signature)
        if raw_signature is None or not verify_signature(
            challenge.message, raw_signature, public_key
        ):
            if self.consume_on_failure:
                self.store.get_and_consume(identity_key, challenge.nonce)
            logger.info(f"Signature verification failed for {identity_key[:12]}")
            raise InvalidSignature()

        # Only one concurrent verifier can take the challenge
        if self.store.get_and_consume(identity_key, challenge.nonce) is None:
            raise ChallengeNotFound()

        user, created = db.get_or_create_user(
            identity_key, username or default_display_name(identity_key)
        )
        if created:
            logger.info(f"Provisioned user {user['id']} for {identity_key[:12]}")
        return user


# --- Global singleton ---

_auth_service: AuthService | None = None


def get_auth_service() -> AuthService:
    """Get the global auth service, creating one with default settings."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def set_auth_service(service: AuthService) -> None:
    global _auth_service
    _auth_service = service


def reset_auth_service() -> None:
    """Reset the global auth service (for testing)."""
    global _auth_service
    _auth_service = None
