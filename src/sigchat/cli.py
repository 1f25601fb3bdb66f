"""CLI for sigchat.

Manages configuration in ~/.config/sigchat/:
- config.yaml: Global config (server URL)
- identity.yaml: Local Ed25519 identity used to sign in

Runs the server and the expiry sweep, and can sign in against a running
server to check that an identity works.
"""

from __future__ import annotations

import os
import sys

import cyclopts
import httpx

from .client import SigchatAPIError, SigchatClient
from .config import GlobalConfig, IdentityConfig, get_config_dir

app = cyclopts.App(
    name="sigchat",
    help="Real-time chat with Ed25519 identity sign-in",
)

config_app = cyclopts.App(name="config", help="Client configuration")
app.command(config_app)


def load_identity() -> IdentityConfig:
    """Load the local identity or exit with an error."""
    identity = IdentityConfig.load()
    if identity is None:
        print("Error: No identity found.", file=sys.stderr)
        print("Run 'sigchat keygen' to create one.", file=sys.stderr)
        raise SystemExit(1)
    return identity


def signed_in_client(url: str | None) -> tuple[SigchatClient, dict]:
    """Sign in with the local identity. Returns (client, user)."""
    identity = load_identity()
    client = SigchatClient(url or GlobalConfig.load().url)
    try:
        user = client.login(identity.keypair, identity.display_name)
    except SigchatAPIError as e:
        client.close()
        print(f"Error: {e.message}", file=sys.stderr)
        raise SystemExit(1)
    except httpx.HTTPError as e:
        client.close()
        print(f"Error: Could not reach {client.url}: {e}", file=sys.stderr)
        raise SystemExit(1)
    return client, user


# --- Config Commands ---


@config_app.command(name="show")
def config_show():
    """Show current configuration."""
    cfg = GlobalConfig.load()
    identity = IdentityConfig.load()
    print(f"Config directory: {get_config_dir()}")
    print(f"Server URL: {cfg.url}")
    print(f"Identity: {identity.identity_key if identity else '(none)'}")


@config_app.command(name="set-url")
def config_set_url(url: str):
    """Set the server URL used by login and rooms.

    Args:
        url: Base URL, e.g. https://chat.example.com
    """
    cfg = GlobalConfig.load()
    cfg.url = url.rstrip("/")
    cfg.save()
    print(f"Server URL set to {cfg.url}")


# --- Identity Commands ---


@app.command
def keygen(*, name: str | None = None, force: bool = False):
    """Create a new local identity keypair.

    Args:
        name: Display name to use when the identity is first seen by a server
        force: Replace an existing identity
    """
    existing = IdentityConfig.load()
    if existing is not None and not force:
        print(f"Identity already exists: {existing.identity_key}", file=sys.stderr)
        print("Use --force to replace it.", file=sys.stderr)
        raise SystemExit(1)

    identity = IdentityConfig.generate(display_name=name)
    path = identity.save()
    print(f"Identity key: {identity.identity_key}")
    print(f"Saved to {path}")


@app.command
def whoami():
    """Show the local identity."""
    identity = load_identity()
    print(f"Identity key: {identity.identity_key}")
    if identity.display_name:
        print(f"Display name: {identity.display_name}")
    if identity.created_at:
        print(f"Created: {identity.created_at}")


@app.command
def login(*, url: str | None = None):
    """Sign in to a server with the local identity.

    Performs the full challenge round-trip and prints the resulting user.

    Args:
        url: Server URL (defaults to the configured one)
    """
    client, user = signed_in_client(url)
    client.close()
    print(f"Signed in as {user['username']} (id {user['id']})")


@app.command
def rooms(*, url: str | None = None):
    """List the rooms of the local identity.

    Args:
        url: Server URL (defaults to the configured one)
    """
    client, _ = signed_in_client(url)
    with client:
        room_list = client.rooms()

    if not room_list:
        print("No rooms.")
        return

    for room in room_list:
        kind = "public" if room["isPublic"] else "group" if room["isGroup"] else "direct"
        print(f"{room['id']:>5}  {kind:<7} {room['name']} ({len(room.get('members', []))} members)")


# --- Server Commands ---


@app.command
def sweep(*, db_path: str | None = None):
    """Delete expired messages once.

    Runs the expiry sweep directly against the database. Connected clients
    are not notified; the server's own sweeper announces deletions.

    Args:
        db_path: SQLite database (defaults to SIGCHAT_DB)
    """
    from . import db, jobs

    if db_path:
        db.configure(db_path)
    try:
        db.init_db()
        deleted = jobs.sweep_expired()
        print(f"Deleted {len(deleted)} expired messages")
    finally:
        db.close_db()


@app.command
def serve(
    *,
    host: str = "0.0.0.0",
    port: int = 8000,
    reload: bool = False,
    db_path: str | None = None,
    log_level: str = "info",
):
    """Run the sigchat server.

    Server settings come from SIGCHAT_* environment variables (see
    ServerOptions); set SIGCHAT_SESSION_SECRET so sessions survive restarts.

    Args:
        host: Interface to bind
        port: Port to bind
        reload: Reload on code changes (development)
        db_path: SQLite database (overrides SIGCHAT_DB)
        log_level: uvicorn log level
    """
    import uvicorn

    if db_path:
        os.environ["SIGCHAT_DB"] = db_path

    if not os.environ.get("SIGCHAT_SESSION_SECRET"):
        print("WARNING: SIGCHAT_SESSION_SECRET not set. Sessions end when the server restarts.")

    uvicorn.run(
        "sigchat.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
