"""ConversationStore: DuckDB-backed 1:1 conversations and messages.

Database Schema:
    conversations table:
        - id: Conversation identifier
        - pair_key: Normalized unordered participant pair ("a:b", sorted),
          UNIQUE so a pair can never own two conversations
        - user_a / user_b: The two participants (sorted)
        - last_message_id: Most recent message, NULL until the first one
        - created_at / updated_at: updated_at orders conversation lists
    messages table:
        - id: Message identifier
        - seq: Insertion sequence, breaks created_at ties
        - conversation_id, sender_id, receiver_id, content
        - is_read: Flipped to TRUE when the receiver fetches the conversation
        - created_at: Immutable creation time

Concurrency:
    ``find_or_create_conversation`` inserts with ``ON CONFLICT (pair_key)
    DO NOTHING`` and re-reads inside one transaction, so two users
    messaging each other for the first time converge on one row.

All methods are synchronous; the dispatcher runs them in the threadpool.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from homeserve.database import Database
from homeserve.users.schemas import ParticipantInfo, SenderInfo
from homeserve.users.service import UserDirectory

from .errors import AccessDenied, NotFound, ValidationError
from .schemas import ChatMessage, Conversation, pair_key

logger = logging.getLogger(__name__)

_CREATE_CONVERSATIONS = """
CREATE TABLE IF NOT EXISTS conversations (
    id              VARCHAR PRIMARY KEY,
    pair_key        VARCHAR NOT NULL UNIQUE,
    user_a          VARCHAR NOT NULL,
    user_b          VARCHAR NOT NULL,
    last_message_id VARCHAR,
    created_at      TIMESTAMP NOT NULL,
    updated_at      TIMESTAMP NOT NULL
)
"""

_CREATE_MESSAGES_SEQ = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id              VARCHAR PRIMARY KEY,
    seq             BIGINT NOT NULL DEFAULT nextval('messages_seq'),
    conversation_id VARCHAR NOT NULL,
    sender_id       VARCHAR NOT NULL,
    receiver_id     VARCHAR NOT NULL,
    content         VARCHAR NOT NULL,
    is_read         BOOLEAN NOT NULL DEFAULT FALSE,
    created_at      TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)"

_MESSAGE_SELECT = """
SELECT m.id, m.conversation_id, m.sender_id, u.first_name, u.last_name,
       u.profile_image, m.receiver_id, m.content, m.is_read, m.created_at
FROM messages m
LEFT JOIN users u ON u.id = m.sender_id
"""

_CONVERSATION_COLUMNS = "id, user_a, user_b, last_message_id, created_at, updated_at"


class ConversationStore:
    """Creates, finds and lists conversations; appends and reads messages."""

    def __init__(self, db: Database, users: UserDirectory) -> None:
        self._db = db
        self._users = users
        self._db.execute(_CREATE_CONVERSATIONS)
        self._db.execute(_CREATE_MESSAGES_SEQ)
        self._db.execute(_CREATE_MESSAGES)
        self._db.execute(_INDEX)
        logger.info("[Store] Initialized on %s", db.path)

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    def find_or_create_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the unique conversation for ``{user_a, user_b}``, creating it if absent."""
        if user_a == user_b:
            raise ValidationError("A conversation needs two different participants")

        key = pair_key(user_a, user_b)
        first, second = sorted((user_a, user_b))
        with self._db.transaction() as conn:
            # Stamped under the database lock so timestamps follow commit order.
            now = datetime.utcnow()
            conn.execute(
                """
                INSERT INTO conversations
                  (id, pair_key, user_a, user_b, last_message_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, ?, ?)
                ON CONFLICT (pair_key) DO NOTHING
                """,
                [uuid.uuid4().hex, key, first, second, now, now],
            )
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE pair_key = ?",
                [key],
            ).fetchone()
        return self._build_conversation(row)

    def find_conversation_between(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Lookup without creation."""
        rows = self._db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE pair_key = ?",
            [pair_key(user_a, user_b)],
        )
        return self._build_conversation(rows[0]) if rows else None

    def get_conversation(self, conversation_id: str) -> Conversation:
        rows = self._db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            [conversation_id],
        )
        if not rows:
            raise NotFound("Conversation not found")
        return self._build_conversation(rows[0])

    def list_conversations(self, user_id: str) -> List[Conversation]:
        """All conversations of ``user_id``, most recent activity first."""
        rows = self._db.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE user_a = ? OR user_b = ?
            ORDER BY updated_at DESC, created_at DESC
            """,
            [user_id, user_id],
        )
        return [self._build_conversation(r) for r in rows]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
    ) -> ChatMessage:
        """Store a message and bump the conversation's last activity."""
        if not content or not content.strip():
            raise ValidationError("Message content is required")

        message_id = uuid.uuid4().hex
        with self._db.transaction() as conn:
            now = datetime.utcnow()
            row = conn.execute(
                "SELECT user_a, user_b FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
            if row is None:
                raise NotFound("Conversation not found")
            if {sender_id, receiver_id} != {row[0], row[1]}:
                raise AccessDenied("Sender and receiver must be the conversation participants")

            conn.execute(
                """
                INSERT INTO messages
                  (id, conversation_id, sender_id, receiver_id, content, is_read, created_at)
                VALUES (?, ?, ?, ?, ?, FALSE, ?)
                """,
                [message_id, conversation_id, sender_id, receiver_id, content, now],
            )
            conn.execute(
                "UPDATE conversations SET last_message_id = ?, updated_at = ? WHERE id = ?",
                [message_id, now, conversation_id],
            )
        logger.debug("[Store] Message %s appended to %s", message_id, conversation_id)
        return self.get_message(message_id)

    def get_message(self, message_id: str) -> ChatMessage:
        rows = self._db.execute(f"{_MESSAGE_SELECT} WHERE m.id = ?", [message_id])
        if not rows:
            raise NotFound("Message not found")
        return self._row_to_message(rows[0])

    def list_messages(self, conversation_id: str, requesting_user_id: str) -> List[ChatMessage]:
        """Messages of a conversation in creation order, then mark them read.

        The returned list reflects read flags as they were before this
        call; messages addressed to the requester are flipped afterwards.

        Raises:
            NotFound: The conversation does not exist.
            AccessDenied: The requester is not a participant.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT user_a, user_b FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone()
            if row is None:
                raise NotFound("Conversation not found")
            if requesting_user_id not in (row[0], row[1]):
                raise AccessDenied("Conversation not found or access denied")

            rows = conn.execute(
                f"{_MESSAGE_SELECT} WHERE m.conversation_id = ? ORDER BY m.created_at, m.seq",
                [conversation_id],
            ).fetchall()
            messages = [self._row_to_message(r) for r in rows]
            self._mark_read(conn, conversation_id, requesting_user_id)
        return messages

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _mark_read(conn, conversation_id: str, receiver_id: str) -> int:
        updated = conn.execute(
            """
            UPDATE messages SET is_read = TRUE
            WHERE conversation_id = ? AND receiver_id = ? AND NOT is_read
            RETURNING id
            """,
            [conversation_id, receiver_id],
        ).fetchall()
        return len(updated)

    def _participant(self, user_id: str) -> ParticipantInfo:
        user = self._users.get(user_id)
        if user is None:
            return ParticipantInfo(id=user_id)
        return ParticipantInfo(
            id=user.id,
            firstName=user.firstName,
            lastName=user.lastName,
            profileImage=user.profileImage,
            userType=user.userType,
        )

    def _build_conversation(self, row: Tuple) -> Conversation:
        conv_id, user_a, user_b, last_message_id, created_at, updated_at = row
        last_message = self.get_message(last_message_id) if last_message_id else None
        return Conversation(
            id=conv_id,
            participants=[self._participant(user_a), self._participant(user_b)],
            lastMessage=last_message,
            createdAt=created_at,
            updatedAt=updated_at,
        )

    @staticmethod
    def _row_to_message(row: Tuple) -> ChatMessage:
        return ChatMessage(
            id=row[0],
            conversationId=row[1],
            sender=SenderInfo(
                id=row[2],
                firstName=row[3],
                lastName=row[4],
                profileImage=row[5],
            ),
            receiverId=row[6],
            content=row[7],
            read=bool(row[8]),
            createdAt=row[9],
        )
