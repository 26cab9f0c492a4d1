"""
auth/store.py -- SQLAlchemy Core persistence layer for users.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  authenticate() always runs bcrypt, against a dummy hash when the user does
  not exist, so response time does not reveal which usernames are taken.

  Session tokens belong to TokenStore. user_by_session_token() asks it for
  the owner, which also deletes an expired session row on first detection.

Comparisons are case-sensitive and inputs are taken as given; trimming is
the web layer's job.

Layer rule: imports core/ for settings only. No imports from api/, web/, mail/, sse/.
"""

from __future__ import annotations

from sqlalchemy import desc, func, select, update
from sqlalchemy.engine import Engine

from auth.errors import IncorrectPassword, UserAlreadyConfirmed, UserNotFound, UserSessionNotFound
from auth.models import EventName, LastLogin, TokenKind, User
from auth.passwords import DUMMY_HASH, hash_password, verify_password
from auth.schema import events, from_db_time, to_db_time, users, utcnow
from auth.tokens import TokenStore

# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        username=row.username,
        full_name=row.full_name,
        email=row.email,
        is_admin=bool(row.admin),
        confirmed=bool(row.confirmed),
        created=from_db_time(row.created),
    )


_PUBLIC_COLUMNS = (
    users.c.username,
    users.c.full_name,
    users.c.email,
    users.c.admin,
    users.c.confirmed,
    users.c.created,
)

# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        engine = create_db_engine(url)
        store = UserStore(engine, TokenStore(engine))
        store.register("alice", "Alice A", "alice@example.com", "pw")
        store.authenticate("alice", "pw")
    """

    def __init__(self, engine: Engine, token_store: TokenStore) -> None:
        self.engine = engine
        self.tokens = token_store

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, username: str, full_name: str, email: str, password: str) -> None:
        """Insert a new unconfirmed user.

        Raises sqlalchemy.exc.IntegrityError on a duplicate username or email
        or a username wider than the column allows.
        """
        stmt = users.insert().values(
            username=username,
            hashed_password=hash_password(password),
            full_name=full_name,
            email=email,
            admin=False,
            confirmed=False,
            created=to_db_time(utcnow()),
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def confirm_user(self, username: str) -> None:
        """Flip confirmed to true exactly once."""
        with self.engine.connect() as conn:
            row = conn.execute(select(users.c.confirmed).where(users.c.username == username)).first()
            if row is None:
                raise UserNotFound(username)
            if row.confirmed:
                raise UserAlreadyConfirmed(username)
            result = conn.execute(
                update(users)
                .where((users.c.username == username) & (users.c.confirmed == False))  # noqa: E712
                .values(confirmed=True)
            )
            conn.commit()
        if result.rowcount != 1:
            raise UserAlreadyConfirmed(username)

    def update_password(self, username: str, password: str) -> None:
        stmt = update(users).where(users.c.username == username).values(hashed_password=hash_password(password))
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        if result.rowcount != 1:
            raise UserNotFound(username)

    def set_admin(self, username: str, is_admin: bool = True) -> None:
        """Grant or revoke the admin flag. There is no UI for this."""
        stmt = update(users).where(users.c.username == username).values(admin=is_admin)
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        if result.rowcount != 1:
            raise UserNotFound(username)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists_by_username(self, username: str) -> bool:
        stmt = select(func.count()).select_from(users).where(users.c.username == username)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one() > 0

    def exists_by_email(self, email: str) -> bool:
        stmt = select(func.count()).select_from(users).where(users.c.email == email)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one() > 0

    def authenticate(self, username: str, password: str) -> None:
        """Raise UserNotFound or IncorrectPassword unless the pair is valid."""
        with self.engine.connect() as conn:
            hashed = conn.execute(
                select(users.c.hashed_password).where(users.c.username == username)
            ).scalar_one_or_none()
        if hashed is None:
            try:
                verify_password(DUMMY_HASH, password)
            except IncorrectPassword:
                pass
            raise UserNotFound(username)
        verify_password(hashed, password)

    def user_by_name(self, username: str) -> User:
        """Return the public view of a user with last-login fields filled in."""
        with self.engine.connect() as conn:
            row = conn.execute(select(*_PUBLIC_COLUMNS).where(users.c.username == username)).first()
        if row is None:
            raise UserNotFound(username)
        user = _row_to_user(row)
        last = self.last_login(username)
        user.last_login_time = last.time
        user.last_login_result = last.result
        return user

    def user_by_session_token(self, value: str) -> User:
        """Resolve a session cookie value to its user.

        Raises UserSessionNotFound when no live row matches and
        UserSessionExpired (after deleting the row) when it has expired.
        """
        try:
            username = self.tokens.lookup_username(TokenKind.session, value)
            return self.user_by_name(username)
        except UserNotFound:
            raise UserSessionNotFound() from None

    def username_by_email(self, email: str) -> str:
        with self.engine.connect() as conn:
            username = conn.execute(select(users.c.username).where(users.c.email == email)).scalar_one_or_none()
        if username is None:
            raise UserNotFound(email)
        return username

    def last_login(self, username: str) -> LastLogin:
        """Return the previous login attempt (the latest one is the current login)."""
        stmt = (
            select(events.c.created, events.c.success)
            .where((events.c.name == EventName.login.value) & (events.c.username == username))
            .order_by(desc(events.c.created), desc(events.c.id))
            .limit(1)
            .offset(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        if row is None:
            return LastLogin()
        return LastLogin(time=from_db_time(row.created), result="success" if row.success else "failure")

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(*_PUBLIC_COLUMNS).order_by(users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]
