from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, create_engine, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ProcessedMessageLedger(Protocol):
    """Message ids that have been handled.

    ``reserve`` is the atomic check-and-insert: it succeeds for exactly one
    caller per id until that caller either commits or releases it.
    """

    def reset(self) -> None: ...

    def contains(self, message_id: str) -> bool: ...

    def reserve(self, message_id: str) -> bool: ...

    def commit(self, message_id: str) -> None: ...

    def release(self, message_id: str) -> None: ...

    def count(self) -> int: ...


class InMemoryProcessedMessageLedger:
    def __init__(self, *, checkpoint_path: str = "") -> None:
        self._lock = Lock()
        self._committed: set[str] = set()
        self._in_flight: set[str] = set()
        self._checkpoint_path = Path(checkpoint_path) if checkpoint_path.strip() else None
        if self._checkpoint_path is not None:
            self._committed.update(self._load_checkpoint(self._checkpoint_path))

    def reset(self) -> None:
        with self._lock:
            self._committed.clear()
            self._in_flight.clear()
            self._write_checkpoint()

    def contains(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._committed

    def reserve(self, message_id: str) -> bool:
        with self._lock:
            if message_id in self._committed or message_id in self._in_flight:
                return False
            self._in_flight.add(message_id)
            return True

    def commit(self, message_id: str) -> None:
        with self._lock:
            self._in_flight.discard(message_id)
            if message_id in self._committed:
                return
            self._committed.add(message_id)
            self._write_checkpoint()

    def release(self, message_id: str) -> None:
        with self._lock:
            self._in_flight.discard(message_id)

    def count(self) -> int:
        with self._lock:
            return len(self._committed)

    @staticmethod
    def _load_checkpoint(path: Path) -> list[str]:
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("ledger checkpoint unreadable, starting empty: %s", path)
            return []
        message_ids = payload.get("message_ids") if isinstance(payload, dict) else None
        if not isinstance(message_ids, list):
            logger.warning("ledger checkpoint has unexpected shape, starting empty: %s", path)
            return []
        return [str(item) for item in message_ids]

    def _write_checkpoint(self) -> None:
        # Caller holds self._lock.
        if self._checkpoint_path is None:
            return
        payload = {
            "message_ids": sorted(self._committed),
            "written_at": _now_utc().isoformat(),
        }
        directory = self._checkpoint_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        handle, temp_name = tempfile.mkstemp(prefix=".ledger-", suffix=".json", dir=directory)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                json.dump(payload, stream)
            os.replace(temp_name, self._checkpoint_path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise


class LedgerBase(DeclarativeBase):
    pass


class _ProcessedMessageRow(LedgerBase):
    __tablename__ = "outreach_processed_messages"

    message_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyProcessedMessageLedger:
    """Committed ids live in SQL; reservations stay process-local."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for LEDGER_BACKEND=postgres")
        self._lock = Lock()
        self._in_flight: set[str] = set()
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            LedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._lock:
            self._in_flight.clear()
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_ProcessedMessageRow))

    def contains(self, message_id: str) -> bool:
        with self._session() as session:
            return session.get(_ProcessedMessageRow, message_id) is not None

    def reserve(self, message_id: str) -> bool:
        with self._lock:
            if message_id in self._in_flight or self.contains(message_id):
                return False
            self._in_flight.add(message_id)
            return True

    def commit(self, message_id: str) -> None:
        with self._lock:
            self._in_flight.discard(message_id)
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(_ProcessedMessageRow(message_id=message_id, processed_at=_now_utc()))
            except IntegrityError:
                logger.info("message already committed by another worker: %s", message_id)

    def release(self, message_id: str) -> None:
        with self._lock:
            self._in_flight.discard(message_id)

    def count(self) -> int:
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(_ProcessedMessageRow)) or 0)


def create_processed_message_ledger(
    *,
    backend: str,
    database_url: str,
    checkpoint_path: str = "",
) -> ProcessedMessageLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyProcessedMessageLedger(database_url)
    if normalized == "inmemory":
        return InMemoryProcessedMessageLedger(checkpoint_path=checkpoint_path)
    raise RuntimeError(f"unsupported LEDGER_BACKEND: {backend}")
