import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from .exceptions import NotFoundError, ValidationError
from .quota import PlanTier

logger = logging.getLogger(__name__)


@dataclass
class UserRecord:
    id: str
    email: str
    prefix: str
    plan: str
    conversions_left: int
    is_active: bool
    created_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "prefix": self.prefix,
            "plan": self.plan,
            "conversions_left": self.conversions_left,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


class UserStore:
    """
    User accounts, API keys and conversion allowances in a local SQLite database.

    This is the single authority for ``plan`` and ``conversions_left``; the
    quota gate reads it on every admission and writes it only through
    ``decrement_conversions``.
    """

    def __init__(self, db_path: str = "data/users.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    plan TEXT NOT NULL DEFAULT 'free',
                    conversions_left INTEGER NOT NULL DEFAULT 1,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            prefix=row["prefix"],
            plan=row["plan"],
            conversions_left=row["conversions_left"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def create_user(self, email: str, plan: str = "free", conversions_left: Optional[int] = None) -> Tuple[str, UserRecord]:
        """
        Provision a user with a fresh API key.

        ``conversions_left`` defaults to the plan's allotment (0 for
        unlimited plans, which the quota gate never checks).

        Returns:
            Tuple[str, UserRecord]: (raw_api_key, record)
            WARNING: raw_api_key is shown ONLY ONCE here.
        """
        tier = PlanTier.parse(plan)
        if tier is None:
            raise ValidationError(f"Unknown plan '{plan}'", details={"plan": plan})
        if conversions_left is None:
            conversions_left = tier.allotment or 0

        raw_key = f"p2p_{secrets.token_urlsafe(32)}"
        record = UserRecord(
            id=str(uuid4()),
            email=email,
            prefix=raw_key[:8],
            plan=tier.value,
            conversions_left=conversions_left,
            is_active=True,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        try:
            with self._get_conn() as conn:
                conn.execute("""
                    INSERT INTO users (id, email, key_hash, prefix, plan, conversions_left, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (record.id, email, self._hash_key(raw_key), record.prefix, record.plan, conversions_left, record.created_at))
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"User {email} already exists", code="user_exists") from exc

        logger.info(f"Created user {record.id} ({email}) on plan {record.plan}")
        return raw_key, record

    def authenticate(self, key: Optional[str]) -> Optional[UserRecord]:
        """Return the active user owning ``key``, or None."""
        if not key:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),)
            ).fetchone()
        return self._row_to_record(row) if row else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def decrement_conversions(self, user_id: str) -> int:
        """
        Atomically consume one conversion, never going below zero.

        The read-modify-write happens in a single UPDATE inside an immediate
        transaction, so concurrent settles for the same user cannot lose
        updates.

        Returns:
            The remaining allowance after the decrement

        Raises:
            NotFoundError: If the user does not exist
        """
        with self._get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                cursor.execute(
                    "UPDATE users SET conversions_left = MAX(conversions_left - 1, 0) WHERE id = ?",
                    (user_id,)
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"User {user_id} not found")
                row = cursor.execute(
                    "SELECT conversions_left FROM users WHERE id = ?", (user_id,)
                ).fetchone()
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return row["conversions_left"]

    def apply_plan(self, user_id: str, plan: str) -> UserRecord:
        """
        Switch a user to ``plan`` and reset the allowance to its allotment.

        Mirrors what a completed checkout does to an account.
        """
        tier = PlanTier.parse(plan)
        if tier is None:
            raise ValidationError(f"Unknown plan '{plan}'", details={"plan": plan})
        with self._get_conn() as conn:
            cursor = conn.execute(
                "UPDATE users SET plan = ?, conversions_left = ? WHERE id = ?",
                (tier.value, tier.allotment or 0, user_id)
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found")
        logger.info(f"User {user_id} moved to plan {tier.value}")
        return self.get_user(user_id)
