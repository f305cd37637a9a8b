"""Deterministic object names for user namespaces and workloads.

All names are DNS-1123 labels: lowercase alphanumerics and ``-``, at most
63 characters, starting and ending with an alphanumeric.
"""

from __future__ import annotations

import re
import threading
import time

from hacklab.models import LabType, OSType


MAX_NAME_LENGTH = 63
USER_FRAGMENT_LENGTH = 8


def sanitize_name(value: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Coerce an arbitrary string into a DNS-1123 label."""
    sanitized = re.sub(r"[^a-z0-9-]+", "-", value.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return sanitized[:max_length].rstrip("-")


def user_slug(user_id: str) -> str:
    """Path prefix for a user's routes."""
    slug = sanitize_name(user_id)
    if not slug:
        msg = f"user id {user_id!r} has no usable characters"
        raise ValueError(msg)
    return slug


def user_namespace(user_id: str, prefix: str = "hacklab") -> str:
    """Isolation domain for ``user_id``; stable across calls."""
    return sanitize_name(f"{prefix}-{user_slug(user_id)}")


def service_name(pod_name: str) -> str:
    return f"{pod_name}-svc"


def route_name(pod_name: str) -> str:
    return f"{pod_name}-route"


class PodNameAllocator:
    """Allocates ``{kind}-{user}-{millis}`` names.

    Timestamps are strictly increasing per allocator, so two starts within
    the same millisecond still get distinct names.
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def _next_timestamp(self) -> int:
        with self._lock:
            now = int(self._clock() * 1000)
            if now <= self._last:
                now = self._last + 1
            self._last = now
            return now

    def lab_pod(self, lab_type: LabType | str, user_id: str) -> str:
        lab = LabType(lab_type).value
        return self._compose(lab, user_id)

    def os_pod(self, os_type: OSType | str, user_id: str) -> str:
        os_name = OSType(os_type).value
        return self._compose(f"os-{os_name}", user_id)

    def _compose(self, prefix: str, user_id: str) -> str:
        fragment = user_slug(user_id)[:USER_FRAGMENT_LENGTH].strip("-")
        return sanitize_name(f"{prefix}-{fragment}-{self._next_timestamp()}")


__all__ = [
    "MAX_NAME_LENGTH",
    "PodNameAllocator",
    "route_name",
    "sanitize_name",
    "service_name",
    "user_namespace",
    "user_slug",
]
