"""UserDirectory: DuckDB-backed view of marketplace accounts.

Accounts are owned by the Account subsystem. The relay only reads public
display fields and writes ``is_online`` / ``last_seen``. ``create_user``
exists for seeding local databases and tests.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from homeserve.chat.errors import NotFound
from homeserve.database import Database

from .schemas import PresenceState, PublicUser, UserRecord, UserType

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id            VARCHAR PRIMARY KEY,
    first_name    VARCHAR NOT NULL,
    last_name     VARCHAR NOT NULL,
    email         VARCHAR NOT NULL UNIQUE,
    user_type     VARCHAR NOT NULL,
    profile_image VARCHAR,
    is_online     BOOLEAN NOT NULL DEFAULT FALSE,
    last_seen     TIMESTAMP
)
"""

_COLUMNS = (
    "id, first_name, last_name, email, user_type, profile_image, is_online, last_seen"
)


class UserDirectory:
    """Read access to display fields, read/write access to presence."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._db.execute(_CREATE_TABLE)

    # -----------------------------------------------------------------------
    # Accounts
    # -----------------------------------------------------------------------

    def create_user(
        self,
        first_name: str,
        last_name: str,
        email: str,
        user_type: UserType = UserType.HOMEOWNER,
        profile_image: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> UserRecord:
        user_id = user_id or uuid.uuid4().hex
        self._db.execute(
            f"INSERT INTO users ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, FALSE, NULL)",
            [
                user_id, first_name.strip(), last_name.strip(),
                email.strip().lower(), UserType(user_type).value, profile_image,
            ],
        )
        return self.require(user_id)

    def get(self, user_id: str) -> Optional[UserRecord]:
        rows = self._db.execute(f"SELECT {_COLUMNS} FROM users WHERE id = ?", [user_id])
        return self._row_to_user(rows[0]) if rows else None

    def require(self, user_id: str) -> UserRecord:
        user = self.get(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def exists(self, user_id: str) -> bool:
        return bool(self._db.execute("SELECT 1 FROM users WHERE id = ?", [user_id]))

    def list_public_except(self, user_id: str) -> List[PublicUser]:
        """All other users with their public display fields."""
        rows = self._db.execute(
            f"SELECT {_COLUMNS} FROM users WHERE id <> ? ORDER BY first_name, last_name, id",
            [user_id],
        )
        return [PublicUser(**self._row_to_user(r).model_dump()) for r in rows]

    # -----------------------------------------------------------------------
    # Presence
    # -----------------------------------------------------------------------

    def is_online(self, user_id: str) -> bool:
        rows = self._db.execute("SELECT is_online FROM users WHERE id = ?", [user_id])
        return bool(rows and rows[0][0])

    def set_presence(self, user_id: str, is_online: bool) -> PresenceState:
        """Persist ``is_online`` and stamp ``last_seen`` with the current time."""
        now = datetime.utcnow()
        rows = self._db.execute(
            "UPDATE users SET is_online = ?, last_seen = ? WHERE id = ? RETURNING id",
            [is_online, now, user_id],
        )
        if not rows:
            raise NotFound("User not found")
        return PresenceState(userId=user_id, isOnline=is_online, lastSeen=now)

    def reset_all_presence(self) -> int:
        """Mark every user offline. Returns the number of rows changed."""
        rows = self._db.execute(
            "UPDATE users SET is_online = FALSE WHERE is_online RETURNING id"
        )
        return len(rows)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row) -> UserRecord:
        return UserRecord(
            id=row[0],
            firstName=row[1],
            lastName=row[2],
            email=row[3],
            userType=row[4],
            profileImage=row[5],
            isOnline=bool(row[6]),
            lastSeen=row[7],
        )
