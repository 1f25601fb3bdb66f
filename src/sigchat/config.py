"""Configuration management for the sigchat CLI.

Manages configuration files in ~/.config/sigchat/:
- config.yaml: Global config (server URL)
- identity.yaml: Local Ed25519 identity (seed) used to log in
"""

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .crypto import KeyPair, generate_keypair


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "sigchat"


def get_global_config_path() -> Path:
    return get_config_dir() / "config.yaml"


def get_identity_path() -> Path:
    return get_config_dir() / "identity.yaml"


def ensure_config_dir() -> Path:
    """Ensure config directory exists and return its path."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


DEFAULT_SERVER_URL = "http://localhost:8000"


@dataclass
class GlobalConfig:
    """Global CLI configuration."""

    url: str = DEFAULT_SERVER_URL

    def save(self) -> None:
        """Save config to file."""
        ensure_config_dir()
        with open(get_global_config_path(), "w") as f:
            yaml.safe_dump({"url": self.url}, f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load(cls) -> "GlobalConfig":
        """Load config from file, or return defaults."""
        path = get_global_config_path()

        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(url=data.get("url", DEFAULT_SERVER_URL))

    @classmethod
    def exists(cls) -> bool:
        return get_global_config_path().exists()


@dataclass
class IdentityConfig:
    """A locally stored identity keypair."""

    private_key: str  # base64url seed
    display_name: str | None = None
    created_at: str | None = None

    @property
    def keypair(self) -> KeyPair:
        return KeyPair.from_private_key_base64(self.private_key)

    @property
    def identity_key(self) -> str:
        return self.keypair.identity_key

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"private_key": self.private_key}
        if self.display_name:
            data["display_name"] = self.display_name
        if self.created_at:
            data["created_at"] = self.created_at
        return data

    def save(self) -> Path:
        """Save the identity, readable by the owner only."""
        ensure_config_dir()
        path = get_identity_path()
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        path.chmod(0o600)
        return path

    @classmethod
    def load(cls) -> "IdentityConfig | None":
        path = get_identity_path()
        if not path.exists():
            return None

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(
            private_key=data["private_key"],
            display_name=data.get("display_name"),
            created_at=data.get("created_at"),
        )

    @classmethod
    def generate(cls, display_name: str | None = None) -> "IdentityConfig":
        """Create a new identity with a fresh keypair (not yet saved)."""
        return cls(
            private_key=generate_keypair().private_key_base64,
            display_name=display_name,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
