"""Record store interface.

The store is the single source of truth for which labs and desktops are
active. It is a dumb keyed store: all invariants are enforced by the
lifecycle manager that owns the writes.
"""

from abc import ABC, abstractmethod

from hacklab.models import ActiveLab, ActiveOSContainer, ActiveRecord, LabScore


RecordType = type[ActiveLab] | type[ActiveOSContainer]


class RecordStore(ABC):
    """Async CRUD over active records, scores and system settings."""

    # Active records, keyed by pod name

    @abstractmethod
    async def upsert(self, record: ActiveRecord) -> None:
        """Insert or replace the record with the same pod name."""

    @abstractmethod
    async def get(self, record_type: RecordType, pod_name: str) -> ActiveRecord | None:
        """Fetch one record, or None."""

    @abstractmethod
    async def delete(self, record_type: RecordType, pod_name: str) -> bool:
        """Remove a record. Returns False when it was already gone."""

    @abstractmethod
    async def get_by_user(self, record_type: RecordType, user_id: str) -> list[ActiveRecord]:
        """All records owned by ``user_id``, oldest first."""

    @abstractmethod
    async def get_all(self, record_type: RecordType) -> list[ActiveRecord]:
        """Every tracked record of ``record_type``."""

    # Scores, keyed by (user_id, lab_id, level)

    @abstractmethod
    async def get_score(self, user_id: str, lab_id: int, level: int) -> LabScore | None: ...

    @abstractmethod
    async def upsert_score(self, score: LabScore) -> None: ...

    @abstractmethod
    async def get_scores(self, user_id: str, lab_id: int) -> list[LabScore]:
        """Every score row for one lab, ordered by level."""

    @abstractmethod
    async def score_summary(self, user_id: str, lab_id: int) -> tuple[int, int]:
        """Return ``(total_score, solved_count)`` across a lab's levels."""

    # System settings

    @abstractmethod
    async def get_setting(self, key: str) -> str | None: ...

    @abstractmethod
    async def set_setting(self, key: str, value: str) -> None: ...

    async def close(self) -> None:  # noqa: B027
        """Release held resources."""
