"""HTTP client for a sigchat server.

Handles the sign-in round-trip and the session-scoped REST endpoints:

    client = SigchatClient("http://localhost:8000")
    user = client.login(KeyPair.from_private_key_base64(seed))
    for room in client.rooms():
        print(room["name"])

The session cookie lives in the underlying httpx client, so one
SigchatClient is one signed-in session.
"""

from __future__ import annotations

from typing import Any

import httpx

from .crypto import KeyPair


class SigchatAPIError(RuntimeError):
    """A request was rejected by the server."""

    def __init__(self, status_code: int, code: str | None, message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"API error {status_code}: {message}")


class SigchatClient:
    """Client for the sigchat HTTP API.

    Args:
        url: Base URL of the server
        http: Optional preconfigured httpx client (e.g. a test client)
        timeout: Request timeout in seconds when creating our own client
    """

    def __init__(
        self,
        url: str = "http://localhost:8000",
        http: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self._url = url.rstrip("/")
        self._owns_client = http is None
        self._client = http if http is not None else httpx.Client(timeout=timeout)

    @property
    def url(self) -> str:
        return self._url

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def close(self) -> None:
        """Close HTTP client (only if we created it)."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SigchatClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request."""
        response = self._client.request(method, f"{self._url}{path}", json=json, params=params)

        if response.status_code >= 400:
            code = None
            message = response.text
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                code = body.get("error")
                message = body.get("message") or body.get("detail") or message
            raise SigchatAPIError(response.status_code, code, str(message))

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    # --- Auth ---

    def request_challenge(self, identity_key: str) -> dict[str, str]:
        """Ask for a challenge. Returns ``{"message", "nonce"}``."""
        return self._request("POST", "/api/auth/nonce", json={"identityKey": identity_key})

    def verify(self, identity_key: str, signature: str, username: str | None = None) -> dict:
        """Submit a signed challenge. Returns the user and keeps the session cookie."""
        payload: dict[str, Any] = {"identityKey": identity_key, "signature": signature}
        if username:
            payload["username"] = username
        return self._request("POST", "/api/auth/verify", json=payload)["user"]

    def login(self, keypair: KeyPair, username: str | None = None) -> dict:
        """Sign in with a keypair: request a challenge, sign it, verify."""
        challenge = self.request_challenge(keypair.identity_key)
        return self.verify(keypair.identity_key, keypair.sign(challenge["message"]), username)

    def logout(self) -> None:
        self._request("POST", "/api/auth/logout")

    def me(self) -> dict:
        return self._request("GET", "/api/auth/me")["user"]

    # --- Rooms ---

    def rooms(self) -> list[dict]:
        """Rooms of the signed-in user."""
        return self._request("GET", "/api/rooms")["rooms"]

    def messages(self, room_id: int, limit: int | None = None) -> dict[str, list[dict]]:
        """Recent messages of a room. Returns ``{"messages", "reactions"}``."""
        params = {"limit": limit} if limit is not None else None
        return self._request("GET", f"/api/rooms/{room_id}/messages", params=params)

    def health(self) -> dict:
        return self._request("GET", "/health")
