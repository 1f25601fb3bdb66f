"""sigchat - Real-time chat with Ed25519 identity sign-in.

Usage:
    from sigchat import KeyPair, SigchatClient, generate_keypair

    keypair = generate_keypair()
    with SigchatClient("http://localhost:8000") as client:
        user = client.login(keypair, username="alice")
        rooms = client.rooms()

Run the server with ``sigchat serve``; clients then open ``/ws`` with the
session cookie and send ``{"event": "auth", "data": {}}`` to bind.
"""

from sigchat._version import __version__
from sigchat.client import SigchatAPIError, SigchatClient
from sigchat.crypto import KeyPair, generate_keypair
from sigchat.errors import SigchatError
from sigchat.options import ServerOptions, SigchatConfigError

__all__ = [
    "__version__",
    "KeyPair",
    "ServerOptions",
    "SigchatAPIError",
    "SigchatClient",
    "SigchatConfigError",
    "SigchatError",
    "generate_keypair",
]
