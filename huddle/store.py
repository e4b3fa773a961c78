from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

MESSAGE_KINDS = ("text", "image", "video")

Connect = Callable[[], Any]


def now_ts() -> int:
    return int(time.time())


def make_id(prefix: str = "") -> str:
    return prefix + secrets.token_urlsafe(10)


# =========================
# Records
# =========================
@dataclass(frozen=True)
class Message:
    chat_id: str
    sender_id: str
    kind: str
    text: Optional[str] = None
    url: Optional[str] = None
    original_filename: Optional[str] = None
    id: Optional[int] = None
    timestamp: Optional[int] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "senderId": self.sender_id,
            "type": self.kind,
            "text": self.text,
            "url": self.url,
            "originalFilename": self.original_filename,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls(
            id=int(row["id"]),
            chat_id=row["chat_id"],
            sender_id=row["sender_id"],
            kind=row["kind"],
            text=row.get("text"),
            url=row.get("media_url"),
            original_filename=row.get("original_filename"),
            timestamp=int(row["created_at"]),
        )


@dataclass(frozen=True)
class Chat:
    id: str
    name: str
    created_by: str
    created_at: int
    participants: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "participants": sorted(self.participants),
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }


# =========================
# Schema
# =========================
def init_db(db: Connect) -> None:
    """CREATE ... IF NOT EXISTS for every table; safe to run on each start."""
    with db() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    email TEXT UNIQUE NOT NULL,
                    pass_hash TEXT NOT NULL,
                    created_at BIGINT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    created_at BIGINT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_members (
                    chat_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    PRIMARY KEY(chat_id, user_id)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGSERIAL PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    sender_id TEXT NOT NULL,
                    kind TEXT NOT NULL,         -- 'text' | 'image' | 'video'
                    text TEXT,
                    media_url TEXT,
                    original_filename TEXT,
                    created_at BIGINT NOT NULL
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id, id);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_chat_members_user ON chat_members(user_id);")
        conn.commit()


# =========================
# Messages
# =========================
class MessageStore:
    """Append-only message log, read back per chat in insertion order."""

    def __init__(self, db: Connect):
        self._db = db

    def append(self, message: Message) -> Message:
        created_at = message.timestamp if message.timestamp is not None else now_ts()
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO messages(chat_id, sender_id, kind, text, media_url, original_filename, created_at)
                    VALUES (%s,%s,%s,%s,%s,%s,%s)
                    RETURNING id
                    """,
                    (
                        message.chat_id,
                        message.sender_id,
                        message.kind,
                        message.text,
                        message.url,
                        message.original_filename,
                        created_at,
                    ),
                )
                msg_id = int(cur.fetchone()["id"])
            conn.commit()
        return replace(message, id=msg_id, timestamp=created_at)

    def list_by_chat(self, chat_id: str) -> List[Message]:
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, chat_id, sender_id, kind, text, media_url, original_filename, created_at
                    FROM messages
                    WHERE chat_id=%s
                    ORDER BY id ASC
                    """,
                    (chat_id,),
                )
                rows = cur.fetchall()
        return [Message.from_row(row) for row in rows]


# =========================
# Chats
# =========================
class ChatDirectory:
    def __init__(self, db: Connect):
        self._db = db

    def create_chat(self, name: str, created_by: str, participant_ids: Iterable[str]) -> Chat:
        chat = Chat(
            id=make_id("c_"),
            name=name,
            created_by=created_by,
            created_at=now_ts(),
            participants=set(participant_ids) | {created_by},
        )
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO chats(id, name, created_by, created_at) VALUES (%s,%s,%s,%s)",
                    (chat.id, chat.name, chat.created_by, chat.created_at),
                )
                for user_id in sorted(chat.participants):
                    cur.execute(
                        """
                        INSERT INTO chat_members(chat_id, user_id)
                        VALUES (%s,%s)
                        ON CONFLICT (chat_id, user_id) DO NOTHING
                        """,
                        (chat.id, user_id),
                    )
            conn.commit()
        return chat

    def get_participants(self, chat_id: str) -> Optional[Set[str]]:
        """Participant ids of a chat, or None when the chat does not exist."""
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM chats WHERE id=%s", (chat_id,))
                if cur.fetchone() is None:
                    return None
                cur.execute("SELECT user_id FROM chat_members WHERE chat_id=%s", (chat_id,))
                return {r["user_id"] for r in cur.fetchall()}

    def list_chats_for(self, user_id: str) -> List[Chat]:
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.id, c.name, c.created_by, c.created_at, all_m.user_id
                    FROM chats c
                    JOIN chat_members mine ON mine.chat_id = c.id AND mine.user_id = %s
                    JOIN chat_members all_m ON all_m.chat_id = c.id
                    ORDER BY c.created_at DESC, c.id
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()

        chats: Dict[str, Chat] = {}
        for row in rows:
            chat = chats.get(row["id"])
            if chat is None:
                chat = chats[row["id"]] = Chat(
                    id=row["id"],
                    name=row["name"],
                    created_by=row["created_by"],
                    created_at=int(row["created_at"]),
                )
            chat.participants.add(row["user_id"])
        return list(chats.values())


# =========================
# Users
# =========================
class UserStore:
    def __init__(self, db: Connect):
        self._db = db

    def create_user(self, username: str, email: str, pass_hash: str) -> Dict[str, Any]:
        user = {
            "id": make_id("u_"),
            "username": username,
            "email": email,
            "created_at": now_ts(),
        }
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO users(id, username, email, pass_hash, created_at) VALUES(%s,%s,%s,%s,%s)",
                    (user["id"], username, email, pass_hash, user["created_at"]),
                )
            conn.commit()
        return user

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, username, email, pass_hash FROM users WHERE email=%s", (email,))
                return cur.fetchone()

    def find_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, username, email FROM users WHERE username=%s", (username,))
                return cur.fetchone()

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, username, email, created_at FROM users WHERE id=%s", (user_id,))
                return cur.fetchone()

    def ids_for_usernames(self, usernames: Iterable[str]) -> Dict[str, str]:
        names = sorted(set(usernames))
        if not names:
            return {}
        with self._db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, username FROM users WHERE username = ANY(%s)", (names,))
                rows = cur.fetchall()
        return {r["username"]: r["id"] for r in rows}
