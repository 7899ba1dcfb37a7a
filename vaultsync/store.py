"""Persistent vault table: one row per user, locked read, unlocked read, upsert.

Pushes for the same user are serialized for the lifetime of a
:meth:`VaultStore.transaction`. On PostgreSQL and MySQL this is the database
row lock (plus an advisory lock on PostgreSQL so that two first pushes for a
user with no row yet still serialize). Other backends, SQLite in particular,
get an in-process mutex keyed by ``user_id``.
"""

import logging
import threading
from contextlib import contextmanager, nullcontext
from typing import Dict, Iterator, List, Optional

from sqlalchemy import select, text
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from vaultsync.database import build_engine, build_sessionmaker
from vaultsync.errors import LockTimeout, StoreError
from vaultsync.models import Vault, VaultRecord, base

logger = logging.getLogger(__name__)

ROW_LOCK_DIALECTS = ("postgresql", "mysql", "mariadb")

# lock_not_available / ER_LOCK_WAIT_TIMEOUT
PG_LOCK_NOT_AVAILABLE = "55P03"
MYSQL_LOCK_WAIT_TIMEOUT = 1205


class UserLocks:
    """Registry of per-user mutexes, dropped again once nobody waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, user_id: str, timeout: float) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(user_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=timeout):
                raise LockTimeout(f"Timed out after {timeout}s waiting for vault lock")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[user_id]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class VaultStore:
    def __init__(self, engine: Engine, lock_timeout: float = 5.0):
        self.engine = engine
        self.lock_timeout = lock_timeout
        self._sessionmaker = build_sessionmaker(engine)
        self._user_locks = UserLocks()

    @classmethod
    def from_url(cls, database_url: str, lock_timeout: float = 5.0) -> "VaultStore":
        return cls(build_engine(database_url), lock_timeout=lock_timeout)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def supports_row_locks(self) -> bool:
        return self.dialect in ROW_LOCK_DIALECTS

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    def open(self) -> "VaultStore":
        try:
            base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not initialize vault schema: {exc}") from exc
        logger.info("Vault store ready (%s)", self.dialect)
        return self

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Vault store closed")

    def reset(self) -> None:
        """Drop and recreate every table. Development only."""
        base.metadata.drop_all(bind=self.engine)
        base.metadata.create_all(bind=self.engine)
        logger.warning("Vault store reset: all vaults deleted")

    def __enter__(self) -> "VaultStore":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Transactions ───────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self, user_id: str) -> Iterator[Session]:
        """Session holding the exclusive per-user lock until commit or rollback.

        Commits when the block exits normally, rolls back on any exception.
        The session and the lock are released on every exit path.
        """
        if self.supports_row_locks:
            guard = nullcontext()
        else:
            guard = self._user_locks.hold(user_id, self.lock_timeout)

        with guard:
            session = self._sessionmaker()
            try:
                self._set_lock_timeout(session)
                yield session
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise self._translate(exc) from exc
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _set_lock_timeout(self, session: Session) -> None:
        if self.dialect == "postgresql":
            millis = int(self.lock_timeout * 1000)
            session.execute(text(f"SET LOCAL lock_timeout = '{millis}ms'"))
        elif self.dialect in ("mysql", "mariadb"):
            seconds = max(1, int(self.lock_timeout))
            session.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))

    def _translate(self, exc: SQLAlchemyError) -> StoreError:
        if isinstance(exc, OperationalError):
            orig = exc.orig
            code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
            args = getattr(orig, "args", ())
            if code == PG_LOCK_NOT_AVAILABLE or (args and args[0] == MYSQL_LOCK_WAIT_TIMEOUT):
                return LockTimeout(f"Timed out after {self.lock_timeout}s waiting for vault lock")
        return StoreError(str(exc))

    # ── Reads and writes ───────────────────────────────────────────────────────

    def read_for_update(self, session: Session, user_id: str) -> Optional[VaultRecord]:
        """Locked read. Must run inside :meth:`transaction` for the same user."""
        stmt = select(Vault).where(Vault.user_id == user_id)
        try:
            if self.dialect == "postgresql":
                session.execute(
                    text("SELECT pg_advisory_xact_lock(hashtext(:user_id))"),
                    {"user_id": user_id},
                )
            if self.supports_row_locks:
                stmt = stmt.with_for_update()
            row = session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc
        return VaultRecord.from_row(row) if row is not None else None

    def read(self, user_id: str) -> Optional[VaultRecord]:
        """Unlocked snapshot read; may or may not see a push committing concurrently."""
        try:
            with self._sessionmaker() as session:
                row = session.get(Vault, user_id)
                return VaultRecord.from_row(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    def upsert(self, session: Session, record: VaultRecord) -> None:
        """Insert the user's row or overwrite every mutable field of it."""
        values = {
            "user_id": record.user_id,
            "encrypted_blob": record.encrypted_blob,
            "version": record.version,
            "last_updated_by_device_id": record.last_writer_device_id,
            "updated_at": record.updated_at,
        }
        mutable = [key for key in values if key != "user_id"]

        try:
            if self.dialect in ("postgresql", "sqlite"):
                insert = postgresql.insert if self.dialect == "postgresql" else sqlite.insert
                stmt = insert(Vault).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id"],
                    set_={key: stmt.excluded[key] for key in mutable},
                )
                session.execute(stmt)
            elif self.dialect in ("mysql", "mariadb"):
                stmt = mysql.insert(Vault).values(**values)
                stmt = stmt.on_duplicate_key_update({key: stmt.inserted[key] for key in mutable})
                session.execute(stmt)
            else:
                session.merge(Vault(**values))
                session.flush()
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc
