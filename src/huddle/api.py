"""FastAPI application for huddle.

REST endpoints cover accounts, history, search, edits, read receipts and
uploads. Real-time traffic goes over the ``/chat`` WebSocket, where every
frame is ``{"event": <name>, "data": {...}}``.

One PresenceRegistry, RoomRouter and MessagePipeline are created per app in
the lifespan handler and kept on ``app.state``.
"""

import asyncio
import functools
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from uuid_extensions import uuid7 as make_uuid7

from . import db
from .auth_provider import (
    AuthResult,
    extract_bearer_token,
    get_auth_method_name,
    login_user,
    register_user,
    verify_bearer_token,
)
from .config import get_settings
from .errors import AuthError, ChatError, ValidationError
from .events import MESSAGE_ERROR, MessageInfo, parse_inbound
from .metrics import metrics
from .pipeline import MessagePipeline
from .presence import PresenceRegistry
from .router import RoomRouter, WebSocketConnection
from .uploads import LocalBlobStore

logger = logging.getLogger(__name__)

# Close code sent on the /chat socket when the token is missing or invalid
WS_UNAUTHORIZED = 4401


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the per-app chat core."""
    settings = get_settings()
    db.configure(settings.db_path)
    db.init_db()

    registry = PresenceRegistry()
    router = RoomRouter(registry, send_timeout=settings.send_timeout)
    app.state.settings = settings
    app.state.registry = registry
    app.state.router = router
    app.state.pipeline = MessagePipeline(registry, router, settings)
    app.state.blobs = LocalBlobStore(
        settings.upload_dir, settings.max_upload_bytes, public_url=settings.public_url
    )

    logger.info(
        "huddle started (db=%s, auth=%s)",
        settings.db_path,
        "disabled" if settings.no_auth else get_auth_method_name(),
    )

    yield

    db.close_db()


app = FastAPI(
    title="huddle",
    description="Room-based real-time chat",
    version="0.1.0",
    lifespan=lifespan,
)


def configure_cors(app: FastAPI, origins: list[str]) -> None:
    """Allow browser clients from ``origins``. Must run before startup."""
    if not origins:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# --- Request Timing Middleware ---


def _endpoint_name(path: str) -> str:
    """Collapse a request path into a metrics bucket."""
    if path.startswith("/api/messages/") and path != "/api/messages/read":
        return "messages/item"
    if path.startswith("/api/rooms/"):
        return "rooms/users"
    if path.startswith("/uploads/"):
        return "uploads"
    if path.startswith("/api/"):
        return path[len("/api/") :]
    if path in ("/health", "/metrics"):
        return path[1:]
    return "other"


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    metrics.record_request(_endpoint_name(request.url.path), duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handlers ---


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=ValidationError.status_code,
        content={"error": f"{location}: {message}" if location else message, "code": ValidationError.code},
    )


# --- Request/Response Models ---


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str
    avatar: str | None = None
    name: str | None = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    email: str
    password: str


class UserInfo(BaseModel):
    id: str
    email: str
    name: str
    avatar: str | None = None

    @classmethod
    def from_db(cls, data: dict) -> "UserInfo":
        return cls(id=data["id"], email=data["email"], name=data["name"], avatar=data.get("avatar"))


class AuthResponse(BaseModel):
    success: bool = True
    user: UserInfo
    token: str


class MarkReadRequest(BaseModel):
    room: str = Field(min_length=1)
    reader: str | None = None
    """Only used when auth is disabled; otherwise the caller's name."""


class EditMessageRequest(BaseModel):
    message: str
    username: str | None = None
    """Only used when auth is disabled; otherwise the caller's name."""


# --- Async helpers ---


async def _run_sync(fn, *args, **kwargs):
    """Run a synchronous db/auth call off the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


async def _require_user(request: Request, authorization: str | None) -> AuthResult:
    """Resolve the caller from the Authorization header.

    In no-auth mode every request passes with an anonymous result.
    """
    if request.app.state.settings.no_auth:
        return AuthResult(valid=True)

    token = extract_bearer_token(authorization)
    if not token:
        raise AuthError("Authorization: Bearer <token> header required")

    result = await _run_sync(verify_bearer_token, token)
    if not result.valid:
        raise AuthError(result.error or "Invalid token")
    return result


def _actor(caller: AuthResult, claimed: str | None) -> str:
    """Name acting on a message: the authenticated user, else the claimed one."""
    name = caller.name or (claimed or "").strip()
    if not name:
        raise ValidationError("username is required")
    return name


def _page_limit(request: Request, limit: int | None) -> int:
    settings = request.app.state.settings
    if limit is None:
        return settings.history_page_size
    return min(limit, settings.max_page_size)


# --- Accounts ---


@app.post("/api/register", response_model=AuthResponse)
async def register(request: Request, body: RegisterRequest):
    """Create an account and return a session token."""
    settings = request.app.state.settings
    user, token = await _run_sync(
        register_user,
        body.email,
        body.password,
        avatar=body.avatar,
        name=body.name,
        ttl_hours=settings.session_ttl_hours,
    )
    logger.info("Registered %s", user["email"])
    return AuthResponse(user=UserInfo.from_db(user), token=token)


@app.post("/api/login", response_model=AuthResponse)
async def login(request: Request, body: LoginRequest):
    """Exchange credentials for a session token."""
    settings = request.app.state.settings
    user, token = await _run_sync(
        login_user, body.email, body.password, ttl_hours=settings.session_ttl_hours
    )
    return AuthResponse(user=UserInfo.from_db(user), token=token)


# --- History and Search ---


@app.get("/api/messages")
async def get_messages(
    request: Request,
    room: Annotated[str, Query(min_length=1)],
    before: Annotated[str | None, Query()] = None,
    limit: Annotated[int | None, Query(ge=1)] = None,
    authorization: Annotated[str | None, Header()] = None,
):
    """Most recent public messages in a room, oldest first.

    Query parameters:
    - before: Only messages strictly older than this timestamp (paging back)
    - limit: Page size (default history_page_size, capped at max_page_size)
    """
    await _require_user(request, authorization)

    try:
        messages, has_more = await _run_sync(
            db.list_room_messages, room, before=before, limit=_page_limit(request, limit)
        )
    except ValueError as e:
        raise ValidationError(f"Invalid 'before' timestamp: {before!r}") from e

    return {
        "messages": [MessageInfo.from_db(m).model_dump() for m in messages],
        "count": len(messages),
        "hasMore": has_more,
    }


@app.get("/api/search")
async def search(
    request: Request,
    room: Annotated[str, Query(min_length=1)],
    q: Annotated[str, Query(min_length=1)],
    limit: Annotated[int | None, Query(ge=1)] = None,
    authorization: Annotated[str | None, Header()] = None,
):
    """Case-insensitive substring search over a room's public messages."""
    await _require_user(request, authorization)
    settings = request.app.state.settings

    results = await _run_sync(
        db.search_messages, room, q.strip(), limit=min(limit or settings.search_limit, settings.search_limit)
    )
    return {
        "results": [MessageInfo.from_db(m).model_dump() for m in results],
        "count": len(results),
    }


# --- Message Updates ---


@app.post("/api/messages/read")
async def mark_read(
    request: Request,
    body: MarkReadRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Mark every public message in a room as read by the caller."""
    caller = await _require_user(request, authorization)
    reader = _actor(caller, body.reader)
    updated = await request.app.state.pipeline.mark_read(body.room.strip(), reader)
    return {"success": True, "updated": updated}


@app.put("/api/messages/{message_id}")
async def edit_message(
    request: Request,
    message_id: str,
    body: EditMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Replace the text of one of the caller's messages."""
    caller = await _require_user(request, authorization)
    actor = _actor(caller, body.username)
    updated = await request.app.state.pipeline.edit_message(message_id, body.message, actor)
    return {"success": True, "message": MessageInfo.from_db(updated).model_dump()}


@app.delete("/api/messages/{message_id}")
async def delete_message(
    request: Request,
    message_id: str,
    username: Annotated[str | None, Query()] = None,
    authorization: Annotated[str | None, Header()] = None,
):
    """Delete one of the caller's messages."""
    caller = await _require_user(request, authorization)
    actor = _actor(caller, username)
    await request.app.state.pipeline.delete_message(message_id, actor)
    return {"success": True}


# --- Uploads ---


@app.post("/api/upload")
async def upload(
    request: Request,
    x_filename: Annotated[str | None, Header()] = None,
    content_type: Annotated[str | None, Header()] = None,
    authorization: Annotated[str | None, Header()] = None,
):
    """Store the raw request body as an attachment.

    Headers:
    - X-Filename: original file name (used for display and extension)
    - Content-Type: MIME type of the file
    """
    await _require_user(request, authorization)
    blobs: LocalBlobStore = request.app.state.blobs

    content = await request.body()
    return await _run_sync(blobs.save, x_filename or "upload", content, content_type)


@app.get("/uploads/{name}")
async def get_upload(request: Request, name: str):
    """Serve a stored attachment."""
    blobs: LocalBlobStore = request.app.state.blobs
    path = blobs.path_for(name)
    return FileResponse(path)


# --- Presence ---


@app.get("/api/rooms/{room}/users")
async def room_users(
    request: Request,
    room: str,
    authorization: Annotated[str | None, Header()] = None,
):
    """Names currently connected to a room."""
    await _require_user(request, authorization)
    members = request.app.state.registry.members_of(room)
    return {"room": room, "users": [m.to_dict() for m in members], "count": len(members)}


# --- Real-time ---


@app.websocket("/chat")
async def chat_socket(websocket: WebSocket, token: str | None = None):
    """Bidirectional event stream for one client connection.

    Frames are processed strictly in arrival order. Malformed frames are
    answered with ``message_error`` and the connection stays open.
    """
    state = websocket.app.state
    identity: str | None = None

    if not state.settings.no_auth:
        result = await _run_sync(verify_bearer_token, token or "")
        if not result.valid:
            logger.info("Rejected /chat connection: %s", result.error)
            await websocket.close(code=WS_UNAUTHORIZED)
            return
        identity = result.name

    await websocket.accept()
    connection_id = str(make_uuid7())
    router: RoomRouter = state.router
    pipeline: MessagePipeline = state.pipeline

    router.attach(WebSocketConnection(websocket, connection_id))
    metrics.connection_opened()
    logger.debug("Connection %s opened (identity=%s)", connection_id, identity)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                event = parse_inbound(json.loads(text))
            except json.JSONDecodeError:
                await router.send_to_connection(
                    connection_id, MESSAGE_ERROR, ValidationError("Frame is not valid JSON").to_dict()
                )
                continue
            except ValidationError as e:
                metrics.record_rejection(e.code)
                await router.send_to_connection(connection_id, MESSAGE_ERROR, e.to_dict())
                continue

            await pipeline.dispatch(connection_id, event, identity=identity)
    except WebSocketDisconnect:
        logger.debug("Connection %s disconnected", connection_id)
    finally:
        await pipeline.leave(connection_id)
        router.detach(connection_id)
        metrics.connection_closed()


# --- Health Check ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
async def get_metrics(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
):
    """Get application metrics."""
    await _require_user(request, authorization)
    registry: PresenceRegistry = request.app.state.registry
    return {
        **metrics.to_dict(),
        "presence": {
            "connections": len(registry),
            "rooms": registry.rooms(),
        },
    }
