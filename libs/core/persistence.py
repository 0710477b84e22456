from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import DateTime, Float, Integer, String, create_engine, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from . import logging as core_logging
from .models import IdempotencyRecord, TokenUsage

LOGGER = core_logging.get_logger("persistence")


class Base(DeclarativeBase):
    pass


class IdempotencyKeyRecord(Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    step: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    ttl_ms: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class LlmUsageLogRecord(Base):
    __tablename__ = "llm_usage_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)


def make_session_factory(database_url: str) -> sessionmaker[Session]:
    kwargs = {}
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_record(row: IdempotencyKeyRecord) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row.key,
        owner_id=row.owner_id,
        step=row.step,
        created_at=row.created_at.replace(tzinfo=timezone.utc),
        ttl_ms=row.ttl_ms,
    )


class SqlPersistence:
    """Idempotency keys and token usage stored through SQLAlchemy.

    Uniqueness of the idempotency key is enforced by the primary key. A row
    whose TTL has lapsed is taken over with a conditional UPDATE so that only
    one of several concurrent callers can claim it.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self.session_factory() as db:
            row = db.get(IdempotencyKeyRecord, key)
            return _to_record(row) if row else None

    def create_if_absent(self, key: str, record: IdempotencyRecord) -> bool:
        created_at = _naive_utc(record.created_at)
        expires_at = created_at + timedelta(milliseconds=record.ttl_ms)
        with self.session_factory() as db:
            db.add(
                IdempotencyKeyRecord(
                    key=key,
                    owner_id=record.owner_id,
                    step=record.step,
                    created_at=created_at,
                    ttl_ms=record.ttl_ms,
                    expires_at=expires_at,
                )
            )
            try:
                db.commit()
                return True
            except IntegrityError:
                db.rollback()
        with self.session_factory() as db:
            result = db.execute(
                update(IdempotencyKeyRecord)
                .where(IdempotencyKeyRecord.key == key)
                .where(IdempotencyKeyRecord.expires_at <= created_at)
                .values(
                    owner_id=record.owner_id,
                    step=record.step,
                    created_at=created_at,
                    ttl_ms=record.ttl_ms,
                    expires_at=expires_at,
                )
            )
            db.commit()
            return result.rowcount == 1

    def delete(self, key: str) -> None:
        with self.session_factory() as db:
            row = db.get(IdempotencyKeyRecord, key)
            if row is not None:
                db.delete(row)
                db.commit()

    def record_usage(
        self,
        task_id: str,
        tokens: TokenUsage,
        cost: float | None = None,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        with self.session_factory() as db:
            db.add(
                LlmUsageLogRecord(
                    task_id=task_id,
                    provider=provider,
                    model=model,
                    input_tokens=tokens.input_tokens,
                    output_tokens=tokens.output_tokens,
                    total_tokens=tokens.total_tokens,
                    cost=cost if cost is not None else tokens.cost,
                    created_at=datetime.utcnow(),
                )
            )
            db.commit()
        LOGGER.debug("usage_recorded", task_id=task_id, provider=provider, total_tokens=tokens.total_tokens)

    def usage_for_task(self, task_id: str) -> list[LlmUsageLogRecord]:
        with self.session_factory() as db:
            return list(
                db.query(LlmUsageLogRecord)
                .filter(LlmUsageLogRecord.task_id == task_id)
                .order_by(LlmUsageLogRecord.id)
                .all()
            )
