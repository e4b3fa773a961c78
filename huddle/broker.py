"""
Chat broker: the per-connection state machine behind the /ws channel.

Frames are ``{"event": <name>, "data": <payload>}``. Inbound events:
  - join_chat     data: chat id (or {"chatId": ...}); replies load_messages
  - send_message  data: {chatId, senderId, type, text?, url?, originalFilename?}
  - leave_chat    data: chat id (or {"chatId": ...})
Outbound events:
  - load_messages   {chatId, messages}    caller only
  - receive_message {id, chatId, senderId, type, text, url, originalFilename, timestamp}
  - error           {event, error, detail} caller only, join failures

join_chat is request-style and reports failures to the caller. send_message and
leave_chat are fire-and-forget: failures are logged and dropped, so a client
cannot tell a dropped send from one nobody was listening to.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from huddle.errors import ChatError, Forbidden, InvalidMessage, RateLimitExceeded
from huddle.ratelimit import RateLimiter
from huddle.rooms import DEFAULT_OUTBOX_LIMIT, Connection, RoomRegistry
from huddle.sessions import SessionClaims
from huddle.store import MESSAGE_KINDS, Message

LOGGER = logging.getLogger("huddle.broker")

MAX_TEXT_LENGTH = 2000


class ParticipantSource(Protocol):
    def get_participants(self, chat_id: str) -> Optional[Set[str]]: ...


class MessageLog(Protocol):
    def append(self, message: Message) -> Message: ...

    def list_by_chat(self, chat_id: str) -> List[Message]: ...


def _chat_id_from(data: Any) -> str:
    if isinstance(data, dict):
        data = data.get("chatId")
    if isinstance(data, (str, int)) and not isinstance(data, bool):
        return str(data).strip()
    return ""


def parse_message(data: Any) -> Message:
    """Validate a send_message payload; raises InvalidMessage."""
    if not isinstance(data, dict):
        raise InvalidMessage("send_message payload must be an object")

    chat_id = str(data.get("chatId") or "").strip()
    sender_id = str(data.get("senderId") or "").strip()
    kind = str(data.get("type") or "").strip().lower()

    if not chat_id or not sender_id:
        raise InvalidMessage("chatId and senderId required")
    if kind not in MESSAGE_KINDS:
        raise InvalidMessage(f"type must be one of {'|'.join(MESSAGE_KINDS)}")

    if kind == "text":
        text = data.get("text")
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            raise InvalidMessage("text required")
        if len(text) > MAX_TEXT_LENGTH:
            raise InvalidMessage(f"text too long (max {MAX_TEXT_LENGTH})")
        return Message(chat_id=chat_id, sender_id=sender_id, kind=kind, text=text)

    url = data.get("url")
    url = url.strip() if isinstance(url, str) else ""
    if not url:
        raise InvalidMessage(f"url required for {kind}")
    filename = data.get("originalFilename")
    filename = filename.strip()[:120] if isinstance(filename, str) else ""
    return Message(
        chat_id=chat_id,
        sender_id=sender_id,
        kind=kind,
        url=url,
        original_filename=filename or None,
    )


def error_event(event: str, exc: ChatError) -> Dict[str, Any]:
    return {"event": "error", "data": {"event": event, "error": exc.error, "detail": exc.detail}}


class ChatBroker:
    def __init__(
        self,
        directory: ParticipantSource,
        store: MessageLog,
        registry: Optional[RoomRegistry] = None,
        *,
        outbox_limit: int = DEFAULT_OUTBOX_LIMIT,
        rate_limiter: Optional[RateLimiter] = None,
        max_sends_per_window: int = 100,
    ):
        self.directory = directory
        self.store = store
        self.registry = registry if registry is not None else RoomRegistry()
        self.outbox_limit = outbox_limit
        self.rate_limiter = rate_limiter
        self.max_sends_per_window = max_sends_per_window
        self._handlers: Dict[str, Callable[[Connection, Any], Awaitable[Optional[dict]]]] = {
            "join_chat": self._on_join,
            "send_message": self._on_send,
            "leave_chat": self._on_leave,
        }

    # ---- lifecycle ----
    def connect(self, claims: SessionClaims) -> Connection:
        connection = Connection(claims.user_id, claims.username, outbox_limit=self.outbox_limit)
        LOGGER.info("connect #%s user=%s", connection.handle, connection.user_id)
        return connection

    def disconnect(self, connection: Connection) -> None:
        rooms = sorted(connection.rooms)
        self.registry.drop_connection(connection)
        connection.close()
        LOGGER.info("disconnect #%s user=%s rooms=%s", connection.handle, connection.user_id, ",".join(rooms) or "-")

    async def dispatch(self, connection: Connection, frame: Any) -> Optional[dict]:
        if connection.closed:
            LOGGER.debug("ignoring frame on closed connection #%s", connection.handle)
            return None
        if not isinstance(frame, dict):
            LOGGER.warning("dropped malformed frame from user=%s", connection.user_id)
            return None

        event = frame.get("event")
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            LOGGER.warning("dropped unknown event %r from user=%s", event, connection.user_id)
            return None
        return await handler(connection, frame.get("data"))

    # ---- operations ----
    async def _authorize(self, user_id: str, chat_id: str) -> None:
        participants = await asyncio.to_thread(self.directory.get_participants, chat_id)
        if not participants or user_id not in participants:
            raise Forbidden("Not a participant")

    async def join_chat(self, connection: Connection, chat_id: str) -> Optional[dict]:
        chat_id = _chat_id_from(chat_id)
        if not chat_id:
            raise InvalidMessage("chatId required")
        await self._authorize(connection.user_id, chat_id)

        async with self.registry.lock(chat_id):
            if connection.closed:
                return None
            # No send on this chat can interleave here, so the history and the
            # live stream that follows neither overlap nor leave a gap.
            history = await asyncio.to_thread(self.store.list_by_chat, chat_id)
            self.registry.join(chat_id, connection)
            reply = {
                "event": "load_messages",
                "data": {"chatId": chat_id, "messages": [m.to_wire() for m in history]},
            }
            if not connection.deliver(reply):
                # Subscribed but history undeliverable: same policy as a broadcast.
                self.registry.evict(connection, chat_id)
                return None

        LOGGER.debug("join #%s user=%s chat=%s history=%s", connection.handle, connection.user_id, chat_id, len(history))
        return reply

    async def send_message(self, connection: Connection, data: Any) -> Message:
        message = parse_message(data)
        if message.sender_id != connection.user_id:
            raise Forbidden("senderId does not match session")
        if self.rate_limiter is not None:
            self.rate_limiter.check(f"send:{connection.user_id}", self.max_sends_per_window)
        await self._authorize(message.sender_id, message.chat_id)

        async with self.registry.lock(message.chat_id):
            committed = await asyncio.to_thread(self.store.append, message)
            delivered = self.registry.broadcast(
                committed.chat_id,
                {"event": "receive_message", "data": committed.to_wire()},
            )

        LOGGER.debug("message %s chat=%s delivered=%s", committed.id, committed.chat_id, delivered)
        return committed

    def leave_chat(self, connection: Connection, chat_id: str) -> None:
        chat_id = _chat_id_from(chat_id)
        if not chat_id:
            raise InvalidMessage("chatId required")
        self.registry.leave(chat_id, connection)
        LOGGER.debug("leave #%s user=%s chat=%s", connection.handle, connection.user_id, chat_id)

    # ---- event handlers ----
    async def _on_join(self, connection: Connection, data: Any) -> Optional[dict]:
        try:
            return await self.join_chat(connection, data)
        except ChatError as exc:
            LOGGER.info("join_chat rejected user=%s: %s", connection.user_id, exc.detail)
            reply = error_event("join_chat", exc)
            if not connection.deliver(reply) and not connection.closed:
                self.registry.evict(connection, _chat_id_from(data) or "-")
                return None
            return reply

    async def _on_send(self, connection: Connection, data: Any) -> Optional[dict]:
        try:
            await self.send_message(connection, data)
        except ChatError as exc:
            LOGGER.warning("dropped send_message from user=%s: %s", connection.user_id, exc.detail)
        except RateLimitExceeded as exc:
            LOGGER.warning("dropped send_message from user=%s: %s", connection.user_id, exc.error)
        return None

    async def _on_leave(self, connection: Connection, data: Any) -> Optional[dict]:
        try:
            self.leave_chat(connection, data)
        except ChatError as exc:
            LOGGER.warning("dropped leave_chat from user=%s: %s", connection.user_id, exc.detail)
        return None
