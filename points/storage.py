import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from typing import ContextManager, Iterator, Optional

from sqlalchemy import Column, DateTime, Integer, String, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .models import Grant

logger = logging.getLogger(__name__)

Base = declarative_base()


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_naive_utc(value: datetime) -> datetime:
    return _to_utc(value).replace(tzinfo=None)


class GrantRecord(Base):
    __tablename__ = "points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payer = Column(String, nullable=False, index=True)
    points = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)  # naive UTC

    def to_grant(self) -> Grant:
        return Grant(id=self.id, payer=self.payer, points=self.points, timestamp=_to_utc(self.timestamp))


def _use_immediate_transactions(engine: Engine) -> None:
    """
    Start every SQLite transaction with BEGIN IMMEDIATE.

    SQLite ignores SELECT ... FOR UPDATE, so the write lock is taken when the
    transaction begins instead. That serializes spends across processes
    sharing the database file, not just across threads of one process.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class LedgerStore(ABC):
    """
    Ordered store of point grants.

    Calls made inside ``with store.transaction():`` share one transaction
    that commits when the block exits and rolls back if it raises. Calls
    made outside a transaction block each run in their own.
    """

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        ...

    @abstractmethod
    def insert(self, payer: str, points: int, timestamp: datetime) -> int:
        ...

    @abstractmethod
    def get_all_ordered_by_timestamp(self) -> list[Grant]:
        ...

    @abstractmethod
    def update_points(self, grant_id: int, new_points: int) -> None:
        ...


class SqlLedgerStore(LedgerStore):
    def __init__(self, database_url: str, busy_timeout: float = 5.0):
        self.database_url = database_url
        self.busy_timeout = busy_timeout
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._local = threading.local()

    def open(self) -> None:
        kwargs: dict = {"pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": self.busy_timeout}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
        try:
            self._engine = create_engine(self.database_url, **kwargs)
            if self._engine.dialect.name == "sqlite":
                _use_immediate_transactions(self._engine)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not open ledger database: {e}") from e
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        logger.info("ledger_store_opened", extra={"database": self._engine.url.render_as_string(hide_password=True)})

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("ledger_store_closed")

    @property
    def _session(self) -> Session:
        return self._local.session

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "session", None) is not None:
            yield
            return
        if self._session_factory is None:
            raise StorageError("Ledger store is not open")

        session = self._session_factory()
        self._local.session = session
        try:
            yield
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Ledger transaction failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            self._local.session = None
            session.close()

    def insert(self, payer: str, points: int, timestamp: datetime) -> int:
        with self.transaction():
            record = GrantRecord(payer=payer, points=points, timestamp=_to_naive_utc(timestamp))
            self._session.add(record)
            self._session.flush()
            return record.id

    def get_all_ordered_by_timestamp(self) -> list[Grant]:
        with self.transaction():
            records = (
                self._session.query(GrantRecord)
                .order_by(GrantRecord.timestamp, GrantRecord.id)
                .with_for_update()
                .all()
            )
            return [record.to_grant() for record in records]

    def update_points(self, grant_id: int, new_points: int) -> None:
        with self.transaction():
            record = self._session.get(GrantRecord, grant_id)
            if record is None:
                raise StorageError(f"Grant {grant_id} not found")
            if new_points < 0 or new_points > record.points:
                raise StorageError(f"Grant {grant_id} can only be decremented, got {new_points}")
            record.points = new_points
            self._session.flush()


class InMemoryLedgerStore(LedgerStore):
    def __init__(self):
        self.grants: dict[int, dict] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            backup, next_id = deepcopy(self.grants), self._next_id
            self._depth = 1
            try:
                yield
            except Exception:
                self.grants, self._next_id = backup, next_id
                raise
            finally:
                self._depth = 0

    def insert(self, payer: str, points: int, timestamp: datetime) -> int:
        with self.transaction():
            grant_id = self._next_id
            self._next_id += 1
            self.grants[grant_id] = {
                "id": grant_id,
                "payer": payer,
                "points": points,
                "timestamp": _to_utc(timestamp),
            }
            return grant_id

    def get_all_ordered_by_timestamp(self) -> list[Grant]:
        with self.transaction():
            rows = sorted(self.grants.values(), key=lambda g: (g["timestamp"], g["id"]))
            return [Grant(**row) for row in rows]

    def update_points(self, grant_id: int, new_points: int) -> None:
        with self.transaction():
            row = self.grants.get(grant_id)
            if row is None:
                raise StorageError(f"Grant {grant_id} not found")
            if new_points < 0 or new_points > row["points"]:
                raise StorageError(f"Grant {grant_id} can only be decremented, got {new_points}")
            row["points"] = new_points
