from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import Intent, MessageDirection, ThreadStatus

_STATUS_RANK: dict[str, int] = {"active": 0, "needs_attention": 1, "completed": 2}
_ORDERING_STEP = timedelta(microseconds=1)


class ThreadNotFoundError(KeyError):
    """Raised when an operation references a thread id that does not exist."""


class InvalidStatusTransitionError(ValueError):
    """Raised when a status change would move a thread backwards."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def participant_name_from_address(address: str) -> str | None:
    local_part = address.strip().split("@", 1)[0]
    parts = [part for part in local_part.replace("_", ".").split(".") if part]
    if not parts:
        return None
    return " ".join(part[:1].upper() + part[1:].lower() for part in parts)


@dataclass(frozen=True)
class ThreadContext:
    event_name: str | None = None
    event_date: str | None = None
    participant_name: str | None = None
    interests: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ConversationMessage:
    id: str
    sender_address: str
    content: str
    received_at: datetime
    direction: MessageDirection
    thread_id: str
    campaign_id: str | None = None
    intent: Intent | None = None


@dataclass(frozen=True)
class ConversationThread:
    thread_id: str
    participant_address: str
    campaign_id: str | None
    messages: tuple[ConversationMessage, ...]
    last_activity_at: datetime
    status: ThreadStatus
    context: ThreadContext
    created_at: datetime

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def recent_messages(self, limit: int) -> tuple[ConversationMessage, ...]:
        if limit <= 0:
            return ()
        return self.messages[-limit:]


class ThreadRepository(Protocol):
    def reset(self) -> None: ...

    def get_or_create(
        self,
        thread_id: str,
        participant_address: str,
        campaign_id: str | None = None,
    ) -> ConversationThread: ...

    def get(self, thread_id: str) -> ConversationThread | None: ...

    # Appending a message id already in the thread returns the thread unchanged.
    def append_message(self, thread_id: str, message: ConversationMessage) -> ConversationThread: ...

    def set_status(self, thread_id: str, status: ThreadStatus) -> ConversationThread: ...

    def resolve_escalation(self, thread_id: str) -> ConversationThread: ...

    def update_context(
        self,
        thread_id: str,
        *,
        event_name: str | None = None,
        event_date: str | None = None,
        interests: frozenset[str] = frozenset(),
    ) -> ConversationThread: ...

    def list_threads(self, *, limit: int) -> list[ConversationThread]: ...


def _check_transition(current: str, target: str) -> None:
    if current == target:
        return
    if _STATUS_RANK[target] < _STATUS_RANK[current]:
        raise InvalidStatusTransitionError(f"cannot move thread from {current} to {target}")


def _ordered_timestamp(received_at: datetime, previous: datetime | None) -> datetime:
    received_at = _coerce_utc(received_at)
    if previous is not None and received_at <= previous:
        return previous + _ORDERING_STEP
    return received_at


class _KeyedLocks:
    """One lock per thread id; the registry lock only guards lock creation."""

    def __init__(self) -> None:
        self._registry_lock = Lock()
        self._locks: dict[str, Lock] = {}

    def lock_for(self, key: str) -> Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def clear(self) -> None:
        with self._registry_lock:
            self._locks.clear()


class InMemoryThreadRepository:
    def __init__(self) -> None:
        self._keyed_locks = _KeyedLocks()
        self._threads: dict[str, ConversationThread] = {}

    def reset(self) -> None:
        self._threads.clear()
        self._keyed_locks.clear()

    def get_or_create(
        self,
        thread_id: str,
        participant_address: str,
        campaign_id: str | None = None,
    ) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            existing = self._threads.get(thread_id)
            if existing is not None:
                if existing.campaign_id is None and campaign_id:
                    existing = replace(existing, campaign_id=campaign_id)
                    self._threads[thread_id] = existing
                return existing

            now = _now_utc()
            created = ConversationThread(
                thread_id=thread_id,
                participant_address=participant_address,
                campaign_id=campaign_id,
                messages=(),
                last_activity_at=now,
                status="active",
                context=ThreadContext(participant_name=participant_name_from_address(participant_address)),
                created_at=now,
            )
            self._threads[thread_id] = created
            return created

    def get(self, thread_id: str) -> ConversationThread | None:
        return self._threads.get(thread_id)

    def append_message(self, thread_id: str, message: ConversationMessage) -> ConversationThread:
        if message.thread_id != thread_id:
            raise ValueError(f"message {message.id} belongs to thread {message.thread_id}, not {thread_id}")
        with self._keyed_locks.lock_for(thread_id):
            current = self._require(thread_id)
            if any(existing.id == message.id for existing in current.messages):
                return current
            previous = current.messages[-1].received_at if current.messages else None
            stamped = replace(message, received_at=_ordered_timestamp(message.received_at, previous))
            updated = replace(
                current,
                messages=current.messages + (stamped,),
                last_activity_at=max(current.last_activity_at, stamped.received_at),
            )
            self._threads[thread_id] = updated
            return updated

    def set_status(self, thread_id: str, status: ThreadStatus) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            current = self._require(thread_id)
            _check_transition(current.status, status)
            updated = replace(current, status=status, last_activity_at=max(current.last_activity_at, _now_utc()))
            self._threads[thread_id] = updated
            return updated

    def resolve_escalation(self, thread_id: str) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            current = self._require(thread_id)
            if current.status == "active":
                return current
            if current.status != "needs_attention":
                raise InvalidStatusTransitionError(f"cannot resolve thread in status {current.status}")
            updated = replace(current, status="active", last_activity_at=max(current.last_activity_at, _now_utc()))
            self._threads[thread_id] = updated
            return updated

    def update_context(
        self,
        thread_id: str,
        *,
        event_name: str | None = None,
        event_date: str | None = None,
        interests: frozenset[str] = frozenset(),
    ) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            current = self._require(thread_id)
            context = replace(
                current.context,
                event_name=event_name or current.context.event_name,
                event_date=event_date or current.context.event_date,
                interests=current.context.interests | interests,
            )
            updated = replace(current, context=context)
            self._threads[thread_id] = updated
            return updated

    def list_threads(self, *, limit: int) -> list[ConversationThread]:
        ordered = sorted(self._threads.values(), key=lambda value: value.last_activity_at, reverse=True)
        return ordered[:limit]

    def _require(self, thread_id: str) -> ConversationThread:
        current = self._threads.get(thread_id)
        if current is None:
            raise ThreadNotFoundError(thread_id)
        return current


class ThreadsBase(DeclarativeBase):
    pass


class _ThreadRow(ThreadsBase):
    __tablename__ = "outreach_threads"

    thread_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    participant_address: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    campaign_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", index=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    event_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    participant_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    interests_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageRow(ThreadsBase):
    __tablename__ = "outreach_messages"

    thread_id: Mapped[str] = mapped_column(
        String(256), ForeignKey("outreach_threads.thread_id"), primary_key=True
    )
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    sender_address: Mapped[str] = mapped_column(String(320), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    campaign_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    intent: Mapped[str | None] = mapped_column(String(16), nullable=True)


class SqlAlchemyThreadRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for THREAD_STORE_BACKEND=postgres")
        self._keyed_locks = _KeyedLocks()
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ThreadsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_MessageRow))
                session.execute(delete(_ThreadRow))
        self._keyed_locks.clear()

    def get_or_create(
        self,
        thread_id: str,
        participant_address: str,
        campaign_id: str | None = None,
    ) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id)
                    if row is None:
                        now = _now_utc()
                        row = _ThreadRow(
                            thread_id=thread_id,
                            participant_address=participant_address,
                            campaign_id=campaign_id,
                            status="active",
                            message_count=0,
                            participant_name=participant_name_from_address(participant_address),
                            interests_json="[]",
                            last_message_at=None,
                            last_activity_at=now,
                            created_at=now,
                        )
                        session.add(row)
                    elif row.campaign_id is None and campaign_id:
                        row.campaign_id = campaign_id
                    session.flush()
                    return self._thread_record(session, row)

    def get(self, thread_id: str) -> ConversationThread | None:
        with self._session() as session:
            row = session.get(_ThreadRow, thread_id)
            return self._thread_record(session, row) if row is not None else None

    def append_message(self, thread_id: str, message: ConversationMessage) -> ConversationThread:
        if message.thread_id != thread_id:
            raise ValueError(f"message {message.id} belongs to thread {message.thread_id}, not {thread_id}")
        with self._keyed_locks.lock_for(thread_id):
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id, with_for_update=True)
                    if row is None:
                        raise ThreadNotFoundError(thread_id)
                    duplicate = session.scalar(
                        select(_MessageRow.sequence).where(
                            _MessageRow.thread_id == thread_id,
                            _MessageRow.message_id == message.id,
                        )
                    )
                    if duplicate is not None:
                        return self._thread_record(session, row)
                    previous = _coerce_utc(row.last_message_at) if row.last_message_at is not None else None
                    received_at = _ordered_timestamp(message.received_at, previous)
                    session.add(
                        _MessageRow(
                            thread_id=thread_id,
                            sequence=row.message_count,
                            message_id=message.id,
                            sender_address=message.sender_address,
                            content=message.content,
                            received_at=received_at,
                            direction=message.direction,
                            campaign_id=message.campaign_id,
                            intent=message.intent,
                        )
                    )
                    row.message_count += 1
                    row.last_message_at = received_at
                    row.last_activity_at = max(_coerce_utc(row.last_activity_at), received_at)
                    session.flush()
                    return self._thread_record(session, row)

    def set_status(self, thread_id: str, status: ThreadStatus) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id, with_for_update=True)
                    if row is None:
                        raise ThreadNotFoundError(thread_id)
                    _check_transition(row.status, status)
                    row.status = status
                    row.last_activity_at = max(_coerce_utc(row.last_activity_at), _now_utc())
                    session.flush()
                    return self._thread_record(session, row)

    def resolve_escalation(self, thread_id: str) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id, with_for_update=True)
                    if row is None:
                        raise ThreadNotFoundError(thread_id)
                    if row.status == "needs_attention":
                        row.status = "active"
                        row.last_activity_at = max(_coerce_utc(row.last_activity_at), _now_utc())
                    elif row.status != "active":
                        raise InvalidStatusTransitionError(f"cannot resolve thread in status {row.status}")
                    session.flush()
                    return self._thread_record(session, row)

    def update_context(
        self,
        thread_id: str,
        *,
        event_name: str | None = None,
        event_date: str | None = None,
        interests: frozenset[str] = frozenset(),
    ) -> ConversationThread:
        with self._keyed_locks.lock_for(thread_id):
            with self._session() as session:
                with session.begin():
                    row = session.get(_ThreadRow, thread_id, with_for_update=True)
                    if row is None:
                        raise ThreadNotFoundError(thread_id)
                    row.event_name = event_name or row.event_name
                    row.event_date = event_date or row.event_date
                    merged = set(json.loads(row.interests_json or "[]")) | interests
                    row.interests_json = json.dumps(sorted(merged))
                    session.flush()
                    return self._thread_record(session, row)

    def list_threads(self, *, limit: int) -> list[ConversationThread]:
        with self._session() as session:
            rows = session.scalars(
                select(_ThreadRow).order_by(_ThreadRow.last_activity_at.desc()).limit(limit)
            ).all()
            return [self._thread_record(session, row) for row in rows]

    @staticmethod
    def _thread_record(session, row: _ThreadRow) -> ConversationThread:
        message_rows = session.scalars(
            select(_MessageRow).where(_MessageRow.thread_id == row.thread_id).order_by(_MessageRow.sequence.asc())
        ).all()
        messages = tuple(
            ConversationMessage(
                id=item.message_id,
                sender_address=item.sender_address,
                content=item.content,
                received_at=_coerce_utc(item.received_at),
                direction=item.direction,  # type: ignore[arg-type]
                thread_id=item.thread_id,
                campaign_id=item.campaign_id,
                intent=item.intent,  # type: ignore[arg-type]
            )
            for item in message_rows
        )
        return ConversationThread(
            thread_id=row.thread_id,
            participant_address=row.participant_address,
            campaign_id=row.campaign_id,
            messages=messages,
            last_activity_at=_coerce_utc(row.last_activity_at),
            status=row.status,  # type: ignore[arg-type]
            context=ThreadContext(
                event_name=row.event_name,
                event_date=row.event_date,
                participant_name=row.participant_name,
                interests=frozenset(json.loads(row.interests_json or "[]")),
            ),
            created_at=_coerce_utc(row.created_at),
        )


def create_thread_repository(*, backend: str, database_url: str) -> ThreadRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyThreadRepository(database_url)
    if normalized == "inmemory":
        return InMemoryThreadRepository()
    raise RuntimeError(f"unsupported THREAD_STORE_BACKEND: {backend}")
