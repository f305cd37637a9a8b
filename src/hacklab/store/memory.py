"""Dict-backed record store used when no database URL is configured."""

import asyncio
from dataclasses import replace

from hacklab.models import ActiveLab, ActiveOSContainer, ActiveRecord, LabScore
from hacklab.store.base import RecordStore, RecordType


class MemoryRecordStore(RecordStore):
    """In-process store. Returned records are copies, so callers can't mutate state."""

    def __init__(self) -> None:
        self._records: dict[RecordType, dict[str, ActiveRecord]] = {
            ActiveLab: {},
            ActiveOSContainer: {},
        }
        self._scores: dict[tuple[str, int, int], LabScore] = {}
        self._settings: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _table(self, record_type: RecordType) -> dict[str, ActiveRecord]:
        try:
            return self._records[record_type]
        except KeyError:
            msg = f"unsupported record type: {record_type!r}"
            raise TypeError(msg) from None

    async def upsert(self, record: ActiveRecord) -> None:
        async with self._lock:
            self._table(type(record))[record.pod_name] = replace(record)

    async def get(self, record_type: RecordType, pod_name: str) -> ActiveRecord | None:
        async with self._lock:
            record = self._table(record_type).get(pod_name)
            return replace(record) if record is not None else None

    async def delete(self, record_type: RecordType, pod_name: str) -> bool:
        async with self._lock:
            return self._table(record_type).pop(pod_name, None) is not None

    async def get_by_user(self, record_type: RecordType, user_id: str) -> list[ActiveRecord]:
        async with self._lock:
            records = [r for r in self._table(record_type).values() if r.user_id == user_id]
        return [replace(r) for r in sorted(records, key=lambda r: r.created_at)]

    async def get_all(self, record_type: RecordType) -> list[ActiveRecord]:
        async with self._lock:
            records = list(self._table(record_type).values())
        return [replace(r) for r in sorted(records, key=lambda r: r.created_at)]

    async def get_score(self, user_id: str, lab_id: int, level: int) -> LabScore | None:
        async with self._lock:
            score = self._scores.get((user_id, lab_id, level))
            return score.copy() if score is not None else None

    async def upsert_score(self, score: LabScore) -> None:
        async with self._lock:
            self._scores[score.key] = score.copy()

    async def get_scores(self, user_id: str, lab_id: int) -> list[LabScore]:
        async with self._lock:
            rows = [s.copy() for s in self._scores.values() if s.user_id == user_id and s.lab_id == lab_id]
        return sorted(rows, key=lambda s: s.level)

    async def score_summary(self, user_id: str, lab_id: int) -> tuple[int, int]:
        async with self._lock:
            solved = [
                s for s in self._scores.values()
                if s.user_id == user_id and s.lab_id == lab_id and s.solved
            ]
        return sum(s.score for s in solved), len(solved)

    async def get_setting(self, key: str) -> str | None:
        async with self._lock:
            return self._settings.get(key)

    async def set_setting(self, key: str, value: str) -> None:
        async with self._lock:
            self._settings[key] = value
