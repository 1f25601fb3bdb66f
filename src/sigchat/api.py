"""FastAPI application for sigchat."""

import json
import logging
import secrets
import sqlite3
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from uuid_extensions import uuid7 as make_uuid7

from . import db
from ._version import __version__
from .auth import AuthService, InMemoryChallengeStore, get_auth_service, set_auth_service
from .errors import (
    InvalidRequest,
    NotAMember,
    NotAuthenticated,
    RoomNotFound,
    SigchatError,
    StoreUnavailable,
)
from .events import InMemoryBroadcastHub, set_broadcast_hub
from .jobs import schedule_sweeper, stop_sweeper
from .metrics import metrics
from .options import ServerOptions
from .relay import (
    Relay,
    get_relay,
    message_payload,
    reaction_payload,
    rooms_with_members,
    set_relay,
    user_summary,
)

logger = logging.getLogger(__name__)

SESSION_COOKIE = "sigchat_session"
SESSION_MAX_AGE = 14 * 24 * 60 * 60

options = ServerOptions.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the store, configure services, and run the expiry sweeper."""
    db.configure(options.db_path)
    db.init_db()

    set_auth_service(
        AuthService(
            ttl=options.challenge_ttl_seconds,
            consume_on_failure=options.consume_challenge_on_failure,
        )
    )
    hub = InMemoryBroadcastHub(send_timeout=options.send_timeout_seconds)
    set_broadcast_hub(hub)
    relay = Relay(hub=hub, history_limit=options.history_limit)
    set_relay(relay)
    if options.sweep_enabled:
        schedule_sweeper(relay, options.sweep_interval_seconds)
    else:
        logger.info("Expiry sweep disabled")
    logger.info(f"sigchat {__version__} started with {options.to_dict()}")

    yield

    await stop_sweeper()
    db.shutdown_executor()
    db.close_db()


app = FastAPI(
    title="sigchat",
    description="Real-time chat with Ed25519 identity sign-in",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    SessionMiddleware,
    secret_key=options.resolved_session_secret(),
    session_cookie=SESSION_COOKIE,
    max_age=SESSION_MAX_AGE,
    same_site="lax",
    https_only=options.https_only_cookies,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Normalize paths so room ids don't fragment the stats
    path = request.url.path
    if path.startswith("/api/auth/"):
        endpoint = f"auth/{path.rsplit('/', 1)[-1]}"
    elif path == "/api/rooms":
        endpoint = "rooms"
    elif path.startswith("/api/rooms/"):
        endpoint = "rooms/messages"
    elif path in ("/health", "/metrics"):
        endpoint = path[1:]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)

    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handlers ---


@app.exception_handler(SigchatError)
async def sigchat_error_handler(request: Request, exc: SigchatError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status)


@app.exception_handler(sqlite3.Error)
async def store_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error(f"Store error on {request.url.path}", exc_info=exc)
    error = StoreUnavailable()
    return JSONResponse(error.to_dict(), status_code=error.status)


# --- Request/Response Models ---


class NonceRequest(BaseModel):
    identity_key: str | None = Field(default=None, alias="identityKey")


class NonceResponse(BaseModel):
    message: str
    nonce: str


class VerifyRequest(BaseModel):
    identity_key: str | None = Field(default=None, alias="identityKey")
    signature: str | None = None
    username: str | None = None


# --- Session Helpers ---


def require_session_user(request: Request) -> dict:
    """Return the user bound to the request's session cookie."""
    user_id = request.session.get("user_id")
    if user_id is None:
        raise NotAuthenticated()

    user = db.get_user(user_id)
    if user is None:
        request.session.clear()
        raise NotAuthenticated()
    return user


def require_admin(x_admin_token: str | None) -> None:
    if not options.admin_token:
        raise HTTPException(404, "Not found")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, options.admin_token):
        raise HTTPException(403, "Invalid admin token")


# --- Auth Endpoints ---


@app.post("/api/auth/nonce", response_model=NonceResponse)
def request_nonce(body: NonceRequest):
    """Issue a challenge for an identity key.

    The client signs ``message`` with the matching private key and submits
    the signature to /api/auth/verify.
    """
    challenge = get_auth_service().issue_challenge(body.identity_key)  # type: ignore[arg-type]
    return NonceResponse(message=challenge.message, nonce=challenge.nonce)


@app.post("/api/auth/verify")
def verify(body: VerifyRequest, request: Request):
    """Verify a signed challenge and start a session.

    A first-seen identity key is provisioned as a new user.
    """
    if not body.identity_key or not body.signature:
        raise InvalidRequest("Identity key and signature required")

    user = get_auth_service().verify_response(body.identity_key, body.signature, body.username)

    request.session.clear()
    request.session["user_id"] = user["id"]
    logger.info(f"User {user['id']} signed in")
    return {"user": user_summary(user)}


@app.post("/api/auth/logout")
def logout(request: Request):
    """End the session."""
    request.session.clear()
    return {"success": True}


@app.get("/api/auth/me")
def me(request: Request):
    """The signed-in user."""
    return {"user": user_summary(require_session_user(request))}


# --- Room Endpoints ---


@app.get("/api/rooms")
def list_rooms(request: Request):
    """Rooms the signed-in user belongs to, with their members."""
    user = require_session_user(request)
    return {"rooms": rooms_with_members(user["id"])}


@app.get("/api/rooms/{room_id}/messages")
def list_room_messages(
    room_id: int,
    request: Request,
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
):
    """Recent messages of a room, oldest first, with their reactions.

    Requires membership, except for the public room.
    """
    user = require_session_user(request)

    room = db.get_room(room_id)
    if room is None:
        raise RoomNotFound()
    if not room["is_public"] and not db.is_room_member(room_id, user["id"]):
        raise NotAMember()

    messages = db.list_messages(room_id, limit or options.history_limit)
    reactions = db.list_reactions([m["id"] for m in messages])
    return {
        "messages": [message_payload(m) for m in messages],
        "reactions": [reaction_payload(r) for r in reactions],
    }


# --- Real-time Relay ---


class WebSocketConnection:
    """A relay connection over a WebSocket.

    Frames are JSON objects: ``{"event": name, "data": {...}}``.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.id = str(make_uuid7())
        self.websocket = websocket

    async def send_event(self, event: str, data: dict) -> None:
        await self.websocket.send_json({"event": event, "data": data})


@app.websocket("/ws")
async def relay_socket(websocket: WebSocket):
    """Real-time channel.

    The connection is bound to the session user once the client sends an
    ``auth`` event; the session cookie is read at the handshake.
    """
    await websocket.accept()

    relay = get_relay()
    conn = WebSocketConnection(websocket)
    relay.connect(conn, websocket.session.get("user_id"))

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                frame = None

            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await conn.send_event("error", {"message": "Malformed frame"})
                continue

            await relay.dispatch(conn.id, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(conn.id)


# --- Health Check ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics(x_admin_token: Annotated[str | None, Header()] = None):
    """Get application metrics. Requires X-Admin-Token."""
    require_admin(x_admin_token)

    store = get_auth_service().store
    relay = get_relay()
    return {
        **metrics.to_dict(),
        "challenges": store.stats() if isinstance(store, InMemoryChallengeStore) else {},
        "bound_connections": len(relay.registry),
        "version": __version__,
    }
