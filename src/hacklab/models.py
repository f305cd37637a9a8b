"""Records and enums shared by the lifecycle core.

The record store persists ``ActiveLab`` / ``ActiveOSContainer`` rows keyed by
pod name and ``LabScore`` rows keyed by ``(user_id, lab_id, level)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class LabType(str, Enum):
    """Web challenge images available to users."""

    XSS = "xss"
    CSRF = "csrf"
    NMAP = "nmap"


class OSType(str, Enum):
    """Desktop (pwnbox) images available to users."""

    DEBIAN = "debian"


class LabStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class WorkloadState(str, Enum):
    """Live workload state as reported by the orchestrator."""

    RUNNING = "running"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @property
    def points(self) -> int:
        return _DIFFICULTY_POINTS[self]

    @property
    def level(self) -> int:
        return _DIFFICULTY_LEVELS[self]


_DIFFICULTY_POINTS = {Difficulty.EASY: 33, Difficulty.MEDIUM: 33, Difficulty.HARD: 34}
_DIFFICULTY_LEVELS = {Difficulty.EASY: 1, Difficulty.MEDIUM: 2, Difficulty.HARD: 3}

LEVELS_PER_LAB = len(Difficulty)


class WorkloadCategory(str, Enum):
    LAB = "lab"
    OS = "os"


@dataclass(frozen=True)
class WorkloadKind:
    """Kind scope for deletes and waits.

    ``name`` is the lab or OS type; ``None`` selects every kind of the
    category (desktop eviction is category-wide).
    """

    category: WorkloadCategory
    name: str | None = None

    @classmethod
    def for_lab(cls, lab_type: LabType | str) -> WorkloadKind:
        return cls(WorkloadCategory.LAB, LabType(lab_type).value)

    @classmethod
    def for_os(cls, os_type: OSType | str | None = None) -> WorkloadKind:
        return cls(WorkloadCategory.OS, OSType(os_type).value if os_type is not None else None)

    @property
    def label(self) -> str:
        """Short identifier used in object names and metric labels."""
        if self.name is None:
            return self.category.value
        if self.category is WorkloadCategory.OS:
            return f"os-{self.name}"
        return self.name

    @property
    def route_segment(self) -> str:
        """Path segment after the user slug, e.g. ``xss`` or ``os/debian``."""
        if self.name is None:
            msg = "category-wide kinds have no route"
            raise ValueError(msg)
        if self.category is WorkloadCategory.OS:
            return f"os/{self.name}"
        return self.name

    def selector(self) -> dict[str, str]:
        """Label selector matching every object of this kind."""
        labels = {CATEGORY_LABEL: self.category.value}
        if self.name is not None:
            labels[KIND_LABEL] = self.name
        return labels


CATEGORY_LABEL = "hacklab.io/category"
KIND_LABEL = "hacklab.io/kind"
USER_LABEL = "hacklab.io/user-id"
TENANT_LABEL = "hacklab.io/tenant"
WORKLOAD_LABEL = "hacklab.io/workload"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "hacklab"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class ActiveLab:
    """A running web lab, persisted once the orchestrator reports it ready."""

    pod_name: str
    namespace: str
    user_id: str
    lab_type: LabType
    status: LabStatus = LabStatus.RUNNING
    url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    @property
    def kind(self) -> WorkloadKind:
        return WorkloadKind.for_lab(self.lab_type)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "user_id": self.user_id,
            "lab_type": self.lab_type.value,
            "status": self.status.value,
            "url": self.url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
        }


@dataclass
class ActiveOSContainer:
    """A running desktop workload; the VNC links hang off ``url``."""

    pod_name: str
    namespace: str
    user_id: str
    os_type: OSType
    status: LabStatus = LabStatus.RUNNING
    url: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None

    @property
    def kind(self) -> WorkloadKind:
        return WorkloadKind.for_os(self.os_type)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def vnc_url(self, password: str) -> str | None:
        if not self.url:
            return None
        return f"{_base_url(self.url)}vnc.html?autoconnect=true&password={password}&path=websockify"

    def display_url(self, password: str) -> str | None:
        if not self.url:
            return None
        return (
            f"{_base_url(self.url)}vnc.html?autoconnect=true&resize=scale"
            f"&password={password}&path=websockify"
        )

    def to_dict(self, password: str | None = None) -> dict[str, Any]:
        data = {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "user_id": self.user_id,
            "os_type": self.os_type.value,
            "status": self.status.value,
            "url": self.url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
        }
        if password is not None:
            data["vnc_url"] = self.vnc_url(password)
            data["display_url"] = self.display_url(password)
        return data


ActiveRecord = ActiveLab | ActiveOSContainer


@dataclass
class LabScore:
    """Score row for one ``(user_id, lab_id, level)``; write-once once solved."""

    user_id: str
    lab_id: int
    level: int
    score: int = 0
    solved: bool = False
    submitted_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.user_id, self.lab_id, self.level)

    def copy(self) -> LabScore:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "lab_id": self.lab_id,
            "level": self.level,
            "score": self.score,
            "solved": self.solved,
            "submitted_at": _iso(self.submitted_at),
        }


def _base_url(url: str) -> str:
    if url.endswith("/"):
        return url
    return url[: url.rfind("/") + 1]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


__all__ = [
    "CATEGORY_LABEL",
    "KIND_LABEL",
    "LEVELS_PER_LAB",
    "MANAGED_BY",
    "MANAGED_BY_LABEL",
    "TENANT_LABEL",
    "USER_LABEL",
    "WORKLOAD_LABEL",
    "ActiveLab",
    "ActiveOSContainer",
    "ActiveRecord",
    "Difficulty",
    "LabScore",
    "LabStatus",
    "LabType",
    "OSType",
    "WorkloadCategory",
    "WorkloadKind",
    "WorkloadState",
    "utcnow",
]
