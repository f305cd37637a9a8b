"""Runtime-tunable lab timeouts."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from hacklab.config.settings import LabSettings
from hacklab.observability import get_logger
from hacklab.store.base import RecordStore


log = get_logger(__name__)

DEFAULT_TIMEOUT_MINUTES = 60
LAB_TIMEOUT_KEY = "lab_timeout_minutes"
OS_TIMEOUT_KEY = "os_timeout_minutes"


class SettingsProvider(ABC):
    @abstractmethod
    async def lab_timeout_minutes(self) -> int: ...

    @abstractmethod
    async def os_timeout_minutes(self) -> int: ...


class StaticSettingsProvider(SettingsProvider):
    """Timeouts fixed at startup from environment configuration."""

    def __init__(self, settings: LabSettings) -> None:
        self._settings = settings

    async def lab_timeout_minutes(self) -> int:
        return self._settings.lab_timeout_minutes

    async def os_timeout_minutes(self) -> int:
        return self._settings.os_timeout_minutes


class StoreSettingsProvider(SettingsProvider):
    """Timeouts read from the store's system settings on every call.

    An absent key defers to ``fallback`` (configuration, when given). A value
    that is not a positive integer falls back to 60 minutes.
    """

    def __init__(self, store: RecordStore, fallback: SettingsProvider | None = None) -> None:
        self._store = store
        self._fallback = fallback

    async def _read(self, key: str, fallback: Callable[[], Awaitable[int]] | None) -> int:
        raw = await self._store.get_setting(key)
        if raw is None:
            return await fallback() if fallback is not None else DEFAULT_TIMEOUT_MINUTES
        try:
            value = int(raw.strip())
        except ValueError:
            value = 0
        if value <= 0:
            log.warning(
                "invalid_setting_value",
                key=key,
                value=raw,
                fallback=DEFAULT_TIMEOUT_MINUTES,
            )
            return DEFAULT_TIMEOUT_MINUTES
        return value

    async def lab_timeout_minutes(self) -> int:
        fallback = self._fallback.lab_timeout_minutes if self._fallback else None
        return await self._read(LAB_TIMEOUT_KEY, fallback)

    async def os_timeout_minutes(self) -> int:
        fallback = self._fallback.os_timeout_minutes if self._fallback else None
        return await self._read(OS_TIMEOUT_KEY, fallback)
