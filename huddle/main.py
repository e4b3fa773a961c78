from __future__ import annotations

import os
import re
import json
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import psycopg
from psycopg.rows import dict_row

import cloudinary

from fastapi import (
    FastAPI,
    WebSocket,
    WebSocketDisconnect,
    HTTPException,
    Request,
    Header,
    Depends,
    UploadFile,
    File,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from huddle.broker import ChatBroker
from huddle.errors import ChatError, Forbidden, NotFound, RateLimitExceeded, Unauthorized
from huddle.ratelimit import RateLimiter
from huddle.rooms import Connection, RoomRegistry
from huddle.sessions import (
    SessionClaims,
    extract_bearer,
    hash_password,
    sign_token,
    verify_password,
    verify_token,
)
from huddle.store import ChatDirectory, MessageStore, UserStore, init_db, now_ts
from huddle.uploads import MediaHostError, UploadGateway

LOGGER = logging.getLogger("huddle.api")


# =========================
# Config
# =========================
JWT_SECRET = (os.environ.get("JWT_SECRET") or "").strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET env is required")
if len(JWT_SECRET) < 16:
    raise RuntimeError("JWT_SECRET must be at least 16 characters")
JWT_TTL_SECONDS = int(os.environ.get("JWT_TTL_SECONDS", str(60 * 60)))  # 1 hour

DATABASE_URL = (os.environ.get("DATABASE_URL") or "").strip()
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL env is required")

# Normalize for psycopg
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = "postgresql://" + DATABASE_URL[len("postgres://"):]

MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "50"))
WS_OUTBOX_LIMIT = int(os.environ.get("WS_OUTBOX_LIMIT", "256"))

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
RATE_LIMIT_WINDOW_SECONDS = int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_MAX_AUTH = int(os.environ.get("RATE_LIMIT_MAX_AUTH", "20"))
RATE_LIMIT_MAX_SEND = int(os.environ.get("RATE_LIMIT_MAX_SEND", "100"))

LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
logging.getLogger("huddle").setLevel(LOG_LEVEL)


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


CORS_ORIGINS = parse_cors_origins(os.environ.get("CORS_ORIGINS"))

# =========================
# Cloudinary config
# =========================
CLOUDINARY_CLOUD_NAME = (os.environ.get("CLOUDINARY_CLOUD_NAME") or "").strip()
CLOUDINARY_API_KEY = (os.environ.get("CLOUDINARY_API_KEY") or "").strip()
CLOUDINARY_API_SECRET = (os.environ.get("CLOUDINARY_API_SECRET") or "").strip()

if not (CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET):
    raise RuntimeError(
        "Cloudinary env vars required: CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY, CLOUDINARY_API_SECRET"
    )

cloudinary.config(
    cloud_name=CLOUDINARY_CLOUD_NAME,
    api_key=CLOUDINARY_API_KEY,
    api_secret=CLOUDINARY_API_SECRET,
    secure=True,
)


# =========================
# Wiring
# =========================
def db():
    # new connection per action (simple + safe)
    return psycopg.connect(DATABASE_URL, row_factory=dict_row)


users = UserStore(db)
directory = ChatDirectory(db)
messages = MessageStore(db)
gateway = UploadGateway(max_upload_mb=MAX_UPLOAD_MB)
rate_limiter = RateLimiter(window_seconds=RATE_LIMIT_WINDOW_SECONDS)
registry = RoomRegistry()
broker = ChatBroker(
    directory,
    messages,
    registry,
    outbox_limit=WS_OUTBOX_LIMIT,
    rate_limiter=rate_limiter,
    max_sends_per_window=RATE_LIMIT_MAX_SEND,
)


def check_auth_rate_limit(request: Request, action: str) -> None:
    host = request.client.host if request.client else "na"
    rate_limiter.check(
        f"auth:{action}:{host}",
        RATE_LIMIT_MAX_AUTH,
        error="auth_rate_limited",
        message="Too many authentication attempts. Try again later.",
    )


def get_token(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = extract_bearer(authorization)
    if token:
        return token
    token_q = (request.query_params.get("token") or "").strip()
    if token_q:
        return token_q
    raise Unauthorized("Missing token")


def get_current_claims(token: str = Depends(get_token)) -> SessionClaims:
    return verify_token(token, JWT_SECRET)


def extract_user_id_from_request(request: Request) -> Optional[str]:
    token = extract_bearer(request.headers.get("authorization"))
    if not token:
        token = (request.query_params.get("token") or "").strip()
    if not token:
        return None
    try:
        return verify_token(token, JWT_SECRET).user_id
    except Unauthorized:
        return None


def get_build_meta() -> Dict[str, str]:
    version = (os.environ.get("APP_VERSION") or os.environ.get("VERSION") or "unknown").strip() or "unknown"
    commit = (os.environ.get("APP_COMMIT") or os.environ.get("COMMIT_SHA") or "unknown").strip() or "unknown"
    return {"version": version, "commit": commit}


# =========================
# App
# =========================
@asynccontextmanager
async def _lifespan(app: FastAPI):
    init_db(db)
    yield


app = FastAPI(lifespan=_lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(_request: Request, exc: ChatError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.error},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(_request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        headers={"Retry-After": str(exc.retry_after_seconds)},
        content={
            "detail": exc.message,
            "error": exc.error,
            "retry_after_seconds": exc.retry_after_seconds,
        },
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    user_id = extract_user_id_from_request(request)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                    "user_id": user_id,
                },
                ensure_ascii=False,
            )
        )


@app.get("/api/health")
def healthcheck():
    return {"ok": True, "ts": now_ts(), **registry.stats(), **get_build_meta()}


@app.get("/health")
def healthcheck_root():
    return {"ok": True, **get_build_meta()}


# =========================
# Schemas
# =========================
class RegisterIn(BaseModel):
    username: str = ""
    email: str = ""
    password: str = ""


class LoginIn(BaseModel):
    email: str = ""
    password: str = ""


class ChatCreateIn(BaseModel):
    name: str
    participants: List[str] = Field(default_factory=list)


# =========================
# Auth API
# =========================
@app.post("/api/register", status_code=201)
def register(data: RegisterIn, request: Request):
    check_auth_rate_limit(request, "register")
    username = data.username.strip()
    email = data.email.strip().lower()
    password = data.password

    if not username or not email or not password:
        raise HTTPException(status_code=400, detail="Username, email, and password are required")
    if not USERNAME_RE.match(username):
        raise HTTPException(status_code=400, detail="Username: 3-20 characters, letters/digits/_ only.")
    if len(password) < 6:
        raise HTTPException(status_code=400, detail="Password: at least 6 characters.")

    if users.find_by_email(email):
        raise HTTPException(status_code=400, detail="Email already exists")
    if users.find_by_username(username):
        raise HTTPException(status_code=400, detail="Username already exists")

    try:
        user = users.create_user(username, email, hash_password(password))
    except psycopg.errors.UniqueViolation:
        raise HTTPException(status_code=400, detail="Username or email already exists")

    LOGGER.info("registered user=%s", user["id"])
    return {"message": "User registered successfully", "userId": user["id"]}


@app.post("/api/login")
def login(data: LoginIn, request: Request):
    check_auth_rate_limit(request, "login")
    email = data.email.strip().lower()

    if not email or not data.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    row = users.find_by_email(email)
    if not row or not verify_password(data.password, row["pass_hash"]):
        raise HTTPException(status_code=400, detail="Invalid credentials")

    claims = SessionClaims(user_id=row["id"], username=row["username"])
    token = sign_token(claims, JWT_SECRET, ttl_seconds=JWT_TTL_SECONDS)
    return {"token": token, "userId": claims.user_id, "username": claims.username}


@app.get("/api/me")
def me(claims: SessionClaims = Depends(get_current_claims)):
    row = users.get(claims.user_id)
    if not row:
        raise NotFound("User not found")
    return {"id": row["id"], "username": row["username"], "email": row["email"]}


# =========================
# Chats API
# =========================
@app.post("/api/chats", status_code=201)
def create_chat(data: ChatCreateIn, claims: SessionClaims = Depends(get_current_claims)):
    name = data.name.strip()
    if not name or len(name) > 80:
        raise HTTPException(status_code=400, detail="Chat name: 1-80 characters.")

    usernames = {u.strip() for u in data.participants if u and u.strip()}
    ids_by_name = users.ids_for_usernames(usernames)
    missing = sorted(usernames - set(ids_by_name))
    if missing:
        raise NotFound(f"User not found: {', '.join(missing)}")

    participant_ids = set(ids_by_name.values()) | {claims.user_id}
    if len(participant_ids) < 2:
        raise HTTPException(status_code=400, detail="A chat needs at least 2 distinct participants")

    chat = directory.create_chat(name, claims.user_id, participant_ids)
    LOGGER.info("chat %s created by user=%s participants=%s", chat.id, claims.user_id, len(chat.participants))
    return {"chat": chat.to_dict()}


@app.get("/api/chats")
def list_chats(claims: SessionClaims = Depends(get_current_claims)):
    return {"chats": [chat.to_dict() for chat in directory.list_chats_for(claims.user_id)]}


@app.get("/api/chats/{chat_id}/messages")
def chat_history(chat_id: str, claims: SessionClaims = Depends(get_current_claims)):
    participants = directory.get_participants(chat_id)
    if not participants or claims.user_id not in participants:
        raise Forbidden("Not a participant")
    return {"chatId": chat_id, "messages": [m.to_wire() for m in messages.list_by_chat(chat_id)]}


# =========================
# Upload media (image/video)
# =========================
@app.post("/api/upload")
async def upload_media(
    file: UploadFile = File(...),
    claims: SessionClaims = Depends(get_current_claims),
):
    content_type = (file.content_type or "").lower().strip()
    gateway.classify(content_type)

    data = await file.read()
    try:
        ref = await asyncio.to_thread(gateway.store, data, content_type, file.filename)
    except MediaHostError as e:
        raise HTTPException(status_code=502, detail=str(e))

    LOGGER.info("upload by user=%s kind=%s", claims.user_id, ref.kind)
    return ref.to_dict()


# =========================
# WebSocket: chat channel
# =========================
async def pump_outbox(ws: WebSocket, connection: Connection) -> None:
    while True:
        payload = await connection.outbox.get()
        if payload is None:
            break
        try:
            await ws.send_text(json.dumps(payload))
        except Exception:
            LOGGER.debug("send failed on connection #%s; waiting for disconnect", connection.handle)
            return

    if not connection.overflowed:
        # Normal disconnect: the peer is already gone.
        return
    try:
        await ws.close(code=1013, reason="outbox overflow")
    except Exception:
        LOGGER.debug("connection #%s already closed", connection.handle)


@app.websocket("/ws")
async def ws_channel(ws: WebSocket):
    """
    Client connects with ?token=... (optionally &userId=<own id>).
    Sends: join_chat, send_message, leave_chat
    Receives: load_messages, receive_message, error
    """
    token = (ws.query_params.get("token") or "").strip()
    if not token:
        token = extract_bearer(ws.headers.get("authorization")) or ""
    if not token:
        await ws.close(code=4401)
        return

    try:
        claims = verify_token(token, JWT_SECRET)
    except Unauthorized:
        await ws.close(code=4401)
        return

    claimed_user_id = (ws.query_params.get("userId") or "").strip()
    if claimed_user_id and claimed_user_id != claims.user_id:
        await ws.close(code=4403)
        return

    await ws.accept()
    connection = broker.connect(claims)
    writer = asyncio.create_task(pump_outbox(ws, connection))

    try:
        while True:
            raw = await ws.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                LOGGER.warning("dropped non-JSON frame from user=%s", claims.user_id)
                continue
            await broker.dispatch(connection, frame)
    except WebSocketDisconnect:
        pass
    finally:
        broker.disconnect(connection)
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
