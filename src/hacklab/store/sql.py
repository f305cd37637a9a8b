"""SQLAlchemy-backed record store.

Tables mirror the records one-to-one. Session work is blocking, so every
public method hands it to a worker thread.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Integer, String, create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from hacklab.models import (
    ActiveLab,
    ActiveOSContainer,
    ActiveRecord,
    LabScore,
    LabStatus,
    LabType,
    OSType,
)
from hacklab.observability import get_logger
from hacklab.store.base import RecordStore, RecordType


log = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class ActiveLabRow(Base):
    __tablename__ = "active_labs"

    pod_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(63))
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    lab_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default=LabStatus.RUNNING.value)
    url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ActiveOSContainerRow(Base):
    __tablename__ = "active_os_containers"

    pod_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(63))
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    os_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default=LabStatus.RUNNING.value)
    url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LabScoreRow(Base):
    __tablename__ = "lab_scores"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    lab_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[int] = mapped_column(Integer, primary_key=True)
    score: Mapped[int] = mapped_column(Integer, default=0)
    solved: Mapped[bool] = mapped_column(Boolean, default=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SystemSettingRow(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(String(1024))


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _lab_from_row(row: ActiveLabRow) -> ActiveLab:
    return ActiveLab(
        pod_name=row.pod_name,
        namespace=row.namespace,
        user_id=row.user_id,
        lab_type=LabType(row.lab_type),
        status=LabStatus(row.status),
        url=row.url,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        expires_at=_aware(row.expires_at),
    )


def _os_from_row(row: ActiveOSContainerRow) -> ActiveOSContainer:
    return ActiveOSContainer(
        pod_name=row.pod_name,
        namespace=row.namespace,
        user_id=row.user_id,
        os_type=OSType(row.os_type),
        status=LabStatus(row.status),
        url=row.url,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        expires_at=_aware(row.expires_at),
    )


_ROW_TYPES = {
    ActiveLab: (ActiveLabRow, _lab_from_row),
    ActiveOSContainer: (ActiveOSContainerRow, _os_from_row),
}


def create_store_engine(url: str, *, echo: bool = False) -> Engine:
    """Build an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SQLRecordStore(RecordStore):
    """Relational store over ``active_labs``, ``active_os_containers``,
    ``lab_scores`` and ``system_settings``."""

    def __init__(self, url: str, *, echo: bool = False, engine: Engine | None = None) -> None:
        self.engine = engine or create_store_engine(url, echo=echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        log.info("record_store_initialized", backend=self.engine.dialect.name)

    def _rows(self, record_type: RecordType):
        try:
            return _ROW_TYPES[record_type]
        except KeyError:
            msg = f"unsupported record type: {record_type!r}"
            raise TypeError(msg) from None

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    # Active records

    def _upsert_sync(self, record: ActiveRecord) -> None:
        row_cls, _ = self._rows(type(record))
        values = {
            "pod_name": record.pod_name,
            "namespace": record.namespace,
            "user_id": record.user_id,
            "status": record.status.value,
            "url": record.url,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
            "expires_at": record.expires_at,
        }
        if isinstance(record, ActiveLab):
            values["lab_type"] = record.lab_type.value
        else:
            values["os_type"] = record.os_type.value
        with self._sessions.begin() as session:
            session.merge(row_cls(**values))

    async def upsert(self, record: ActiveRecord) -> None:
        await self._run(self._upsert_sync, record)

    def _get_sync(self, record_type: RecordType, pod_name: str) -> ActiveRecord | None:
        row_cls, convert = self._rows(record_type)
        with Session(self.engine) as session:
            row = session.get(row_cls, pod_name)
            return convert(row) if row is not None else None

    async def get(self, record_type: RecordType, pod_name: str) -> ActiveRecord | None:
        return await self._run(self._get_sync, record_type, pod_name)

    def _delete_sync(self, record_type: RecordType, pod_name: str) -> bool:
        row_cls, _ = self._rows(record_type)
        with self._sessions.begin() as session:
            row = session.get(row_cls, pod_name)
            if row is None:
                return False
            session.delete(row)
            return True

    async def delete(self, record_type: RecordType, pod_name: str) -> bool:
        return await self._run(self._delete_sync, record_type, pod_name)

    def _list_sync(self, record_type: RecordType, user_id: str | None) -> list[ActiveRecord]:
        row_cls, convert = self._rows(record_type)
        stmt = select(row_cls).order_by(row_cls.created_at)
        if user_id is not None:
            stmt = stmt.where(row_cls.user_id == user_id)
        with Session(self.engine) as session:
            return [convert(row) for row in session.scalars(stmt)]

    async def get_by_user(self, record_type: RecordType, user_id: str) -> list[ActiveRecord]:
        return await self._run(self._list_sync, record_type, user_id)

    async def get_all(self, record_type: RecordType) -> list[ActiveRecord]:
        return await self._run(self._list_sync, record_type, None)

    # Scores

    @staticmethod
    def _score_from_row(row: LabScoreRow) -> LabScore:
        return LabScore(
            user_id=row.user_id,
            lab_id=row.lab_id,
            level=row.level,
            score=row.score,
            solved=row.solved,
            submitted_at=_aware(row.submitted_at),
        )

    def _get_score_sync(self, user_id: str, lab_id: int, level: int) -> LabScore | None:
        with Session(self.engine) as session:
            row = session.get(LabScoreRow, (user_id, lab_id, level))
            if row is None:
                return None
            return self._score_from_row(row)

    async def get_score(self, user_id: str, lab_id: int, level: int) -> LabScore | None:
        return await self._run(self._get_score_sync, user_id, lab_id, level)

    def _upsert_score_sync(self, score: LabScore) -> None:
        with self._sessions.begin() as session:
            session.merge(
                LabScoreRow(
                    user_id=score.user_id,
                    lab_id=score.lab_id,
                    level=score.level,
                    score=score.score,
                    solved=score.solved,
                    submitted_at=score.submitted_at,
                )
            )

    async def upsert_score(self, score: LabScore) -> None:
        await self._run(self._upsert_score_sync, score)

    def _get_scores_sync(self, user_id: str, lab_id: int) -> list[LabScore]:
        stmt = (
            select(LabScoreRow)
            .where(LabScoreRow.user_id == user_id, LabScoreRow.lab_id == lab_id)
            .order_by(LabScoreRow.level)
        )
        with Session(self.engine) as session:
            return [self._score_from_row(row) for row in session.scalars(stmt)]

    async def get_scores(self, user_id: str, lab_id: int) -> list[LabScore]:
        return await self._run(self._get_scores_sync, user_id, lab_id)

    def _score_summary_sync(self, user_id: str, lab_id: int) -> tuple[int, int]:
        stmt = select(
            func.coalesce(func.sum(LabScoreRow.score), 0),
            func.count(LabScoreRow.level),
        ).where(
            LabScoreRow.user_id == user_id,
            LabScoreRow.lab_id == lab_id,
            LabScoreRow.solved.is_(True),
        )
        with Session(self.engine) as session:
            total, count = session.execute(stmt).one()
        return int(total), int(count)

    async def score_summary(self, user_id: str, lab_id: int) -> tuple[int, int]:
        return await self._run(self._score_summary_sync, user_id, lab_id)

    # System settings

    def _get_setting_sync(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(SystemSettingRow, key)
            return row.value if row is not None else None

    async def get_setting(self, key: str) -> str | None:
        return await self._run(self._get_setting_sync, key)

    def _set_setting_sync(self, key: str, value: str) -> None:
        with self._sessions.begin() as session:
            session.merge(SystemSettingRow(key=key, value=value))

    async def set_setting(self, key: str, value: str) -> None:
        await self._run(self._set_setting_sync, key, value)

    async def close(self) -> None:
        await self._run(self.engine.dispose)
