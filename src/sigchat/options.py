"""Server configuration for sigchat.

Provides ServerOptions, resolved from (lowest to highest priority):
built-in defaults, an optional YAML file named by SIGCHAT_CONFIG, and
SIGCHAT_* environment variables.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL_SECONDS = 300
DEFAULT_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_SEND_TIMEOUT_SECONDS = 5.0
MAX_HISTORY_LIMIT = 1000

# field name -> environment variable
ENV_VARS = {
    "db_path": "SIGCHAT_DB",
    "session_secret": "SIGCHAT_SESSION_SECRET",
    "challenge_ttl_seconds": "SIGCHAT_CHALLENGE_TTL",
    "consume_challenge_on_failure": "SIGCHAT_CONSUME_ON_FAILURE",
    "sweep_interval_seconds": "SIGCHAT_SWEEP_INTERVAL",
    "history_limit": "SIGCHAT_HISTORY_LIMIT",
    "send_timeout_seconds": "SIGCHAT_SEND_TIMEOUT",
    "admin_token": "SIGCHAT_ADMIN_TOKEN",
    "https_only_cookies": "SIGCHAT_HTTPS_ONLY",
}


class SigchatConfigError(Exception):
    """Raised when ServerOptions configuration is invalid."""

    pass


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerOptions:
    """Configuration options for the sigchat server.

    Environment Variables:
        SIGCHAT_CONFIG: Optional YAML file with any of the fields below
        SIGCHAT_DB: SQLite path, or ":memory:" (default)
        SIGCHAT_SESSION_SECRET: Cookie signing key (random per process if unset)
        SIGCHAT_CHALLENGE_TTL: Seconds a challenge stays valid (default 300)
        SIGCHAT_CONSUME_ON_FAILURE: Discard a challenge on a failed verification
        SIGCHAT_SWEEP_INTERVAL: Seconds between expiry sweeps, <= 0 disables
        SIGCHAT_HISTORY_LIMIT: Messages returned when joining a room (default 50)
        SIGCHAT_SEND_TIMEOUT: Seconds one event delivery may take (default 5)
        SIGCHAT_ADMIN_TOKEN: Enables GET /metrics behind X-Admin-Token
        SIGCHAT_HTTPS_ONLY: Mark the session cookie Secure
    """

    db_path: str = ":memory:"
    session_secret: str | None = None
    challenge_ttl_seconds: float = DEFAULT_CHALLENGE_TTL_SECONDS
    consume_challenge_on_failure: bool = False
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    history_limit: int = DEFAULT_HISTORY_LIMIT
    send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS
    admin_token: str | None = None
    https_only_cookies: bool = False

    def __post_init__(self) -> None:
        self._coerce()
        self._validate()

    def _coerce(self) -> None:
        """Normalize values that may arrive as strings from env or YAML."""
        try:
            self.challenge_ttl_seconds = float(self.challenge_ttl_seconds)
            self.sweep_interval_seconds = float(self.sweep_interval_seconds)
            self.history_limit = int(self.history_limit)
            self.send_timeout_seconds = float(self.send_timeout_seconds)
        except (TypeError, ValueError) as e:
            raise SigchatConfigError(f"Invalid numeric option: {e}") from e
        self.consume_challenge_on_failure = _parse_bool(self.consume_challenge_on_failure)
        self.https_only_cookies = _parse_bool(self.https_only_cookies)
        self.db_path = str(self.db_path)

    def _validate(self) -> None:
        if self.challenge_ttl_seconds <= 0:
            raise SigchatConfigError("challenge_ttl_seconds must be greater than zero")
        if not 1 <= self.history_limit <= MAX_HISTORY_LIMIT:
            raise SigchatConfigError(f"history_limit must be between 1 and {MAX_HISTORY_LIMIT}")
        if self.send_timeout_seconds <= 0:
            raise SigchatConfigError("send_timeout_seconds must be greater than zero")

    @property
    def sweep_enabled(self) -> bool:
        return self.sweep_interval_seconds > 0

    def resolved_session_secret(self) -> str:
        """The configured session secret, or a fresh random one.

        A random secret invalidates all sessions on restart, so it is logged.
        """
        if self.session_secret:
            return self.session_secret
        logger.warning("SIGCHAT_SESSION_SECRET not set; using a random per-process secret")
        self.session_secret = secrets.token_hex(32)
        return self.session_secret

    @classmethod
    def from_file(cls, path: str | Path) -> dict[str, Any]:
        """Load option values from a YAML file. Unknown keys are rejected."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise SigchatConfigError(f"Config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise SigchatConfigError(f"Unknown option(s) in {path}: {', '.join(sorted(unknown))}")
        return data

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ServerOptions":
        """Build options from SIGCHAT_CONFIG (if set) and SIGCHAT_* variables."""
        env = os.environ if environ is None else environ

        values: dict[str, Any] = {}
        config_path = env.get("SIGCHAT_CONFIG")
        if config_path:
            values.update(cls.from_file(config_path))

        for name, var in ENV_VARS.items():
            if env.get(var) not in (None, ""):
                values[name] = env[var]

        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging). Secrets are masked."""
        return {
            "db_path": self.db_path,
            "has_session_secret": self.session_secret is not None,
            "challenge_ttl_seconds": self.challenge_ttl_seconds,
            "consume_challenge_on_failure": self.consume_challenge_on_failure,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "history_limit": self.history_limit,
            "send_timeout_seconds": self.send_timeout_seconds,
            "has_admin_token": self.admin_token is not None,
            "https_only_cookies": self.https_only_cookies,
        }
