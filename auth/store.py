"""
auth/store.py -- SQLAlchemy Core persistence layer for dashboard users.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route, provisioning
and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Uniqueness:
  username      -- UNIQUE. A colliding OIDC insert surfaces as
                   UsernameTakenError so provisioning can retry with a suffix.
  oidc_subject  -- UNIQUE. SQLite treats NULLs as distinct, so any number of
                   local-only accounts (subject NULL) can coexist while each
                   IdP identity links to at most one row.
  public_id     -- UNIQUE random identifier exposed by the JSON API instead of
                   the integer primary key.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import UsernameTakenError
from auth.models import User
from core.config import Role, get_settings

logger = logging.getLogger("linkdash.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("public_id", String(36), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("display_name", String(255)),
    Column("hashed_password", Text),  # NULL for OIDC-only users
    Column("temp_password", Integer, nullable=False, server_default="0"),
    Column("role", String(30), nullable=False, server_default=Role.managed_user.value),
    Column("oidc_subject", Text, unique=True),  # IdP `sub` claim
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),  # ISO 8601 timestamp of last successful auth
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore("sqlite:///linkdash.db")
        user = store.create_oidc_user("jane", Role.admin, "sub-123", "Jane Doe")
        same = store.get_by_oidc_subject("sub-123")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Used for local accounts. Raises sqlalchemy.exc.IntegrityError if the
        username or oidc_subject is already taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    public_id=user.public_id or str(uuid.uuid4()),
                    username=user.username,
                    display_name=user.display_name,
                    hashed_password=user.hashed_password,
                    temp_password=1 if user.temp_password else 0,
                    role=Role(user.role).value,
                    oidc_subject=user.oidc_subject,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_oidc_user(
        self,
        username: str,
        role: Role,
        oidc_subject: str,
        display_name: str | None = None,
    ) -> User:
        """Insert a user linked to an IdP subject and return the stored row.

        No password is set and temp_password stays false: the local-auth
        collaborator owns those fields.

        Raises:
            UsernameTakenError: the username already belongs to another row.
            sqlalchemy.exc.IntegrityError: any other constraint failure, e.g.
                the subject was linked concurrently.
        """
        user = User(username=username, role=role, oidc_subject=oidc_subject, display_name=display_name)
        try:
            user_id = self.create_user(user)
        except IntegrityError:
            # The driver's message differs per backend, so look at the data
            # instead of parsing it.
            if self.get_by_username(username) is not None:
                raise UsernameTakenError(username) from None
            raise
        logger.info("Provisioned OIDC user %s (role=%s)", username, Role(role).value)
        created = self.get_by_id(user_id)
        if created is None:
            raise RuntimeError(f"User {user_id} vanished after insert")
        return created

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oidc_subject(self, subject: str) -> User | None:
        """Look up the user linked to an IdP subject. Returns None if unlinked."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.oidc_subject == subject)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_role(self, user_id: int, role: Role) -> bool:
        """Persist a new role. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(role=Role(role).value))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        public_id=row.public_id,
        username=row.username,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        temp_password=bool(row.temp_password),
        role=Role(row.role),
        oidc_subject=row.oidc_subject,
        created_at=row.created_at,
        last_login=row.last_login,
    )
