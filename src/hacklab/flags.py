"""Flag verification.

The authoritative flag is read from inside the caller's running lab, never
taken from the request. A level is scored at most once per user: after a
correct submission every further attempt reports ``already_solved``.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any

from hacklab.errors import ExecError, ValidationError
from hacklab.models import LEVELS_PER_LAB, Difficulty, LabScore, utcnow
from hacklab.observability import MetricsCollector, get_logger
from hacklab.orchestrator.base import OrchestratorAdapter
from hacklab.store.base import RecordStore


log = get_logger(__name__)

FLAG_ROOT = "/usr/share/nginx/html"
# The Linux lab keeps its flags under uploads/ and inside an API config file.
LINUX_LAB_ID = 4

# Linux fundamentals flags planted around the desktop filesystem.
DESKTOP_FLAG_PATHS = {
    Difficulty.EASY: "/home/debian/lf_easy.txt",
    Difficulty.MEDIUM: "/opt/lf/lf_medium.txt",
    Difficulty.HARD: "/var/tmp/.lf_hard.txt",
}


class FlagTarget(str, Enum):
    """Where the authoritative flag lives."""

    LAB = "lab"
    DESKTOP = "desktop"


@dataclass
class FlagResult:
    correct: bool
    already_solved: bool = False
    points: int = 0
    total_score: int | None = None
    solved_count: int | None = None
    completed: bool = False
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "correct": self.correct,
            "already_solved": self.already_solved,
            "points": self.points,
            "total_score": self.total_score,
            "solved_count": self.solved_count,
            "completed": self.completed,
            "message": self.message,
        }


def flag_read_command(
    lab_id: int,
    difficulty: Difficulty,
    target: FlagTarget = FlagTarget.LAB,
) -> list[str]:
    """Command that prints the flag for ``difficulty`` inside the target container."""
    if target is FlagTarget.DESKTOP:
        return ["cat", DESKTOP_FLAG_PATHS[difficulty]]
    if lab_id == LINUX_LAB_ID:
        if difficulty is Difficulty.MEDIUM:
            return [
                "sh",
                "-c",
                f'cat {FLAG_ROOT}/api/config.json | grep flag_medium | cut -d\\" -f4',
            ]
        return ["cat", f"{FLAG_ROOT}/uploads/flag_{difficulty.value}.txt"]
    return ["cat", f"{FLAG_ROOT}/flag_{difficulty.value}.txt"]


class FlagVerificationGate:
    def __init__(
        self,
        store: RecordStore,
        orchestrator: OrchestratorAdapter,
        *,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.metrics = metrics
        self._locks: weakref.WeakValueDictionary[tuple[str, int, int], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @staticmethod
    def parse_difficulty(value: Difficulty | str) -> Difficulty:
        try:
            return Difficulty(value)
        except ValueError:
            msg = f"invalid difficulty {value!r}; expected easy, medium or hard"
            raise ValidationError(msg, phase="validate") from None

    def _lock(self, key: tuple[str, int, int]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def submit_flag(
        self,
        user_id: str,
        lab_id: int,
        difficulty: Difficulty | str,
        value: str,
        pod_name: str | None,
        namespace: str | None,
        target: FlagTarget | str = FlagTarget.LAB,
    ) -> FlagResult:
        """Check ``value`` against the flag inside ``pod_name`` and score it once.

        ``target`` picks the read command: a web lab container or the user's
        desktop for the Linux fundamentals track.
        """
        if not user_id:
            raise ValidationError("user id is required", phase="validate")
        difficulty = self.parse_difficulty(difficulty)
        target = FlagTarget(target)
        if value is None or not str(value).strip():
            raise ValidationError("flag value is required", phase="validate")
        level = difficulty.level
        key = (user_id, lab_id, level)

        async with self._lock(key):
            existing = await self.store.get_score(user_id, lab_id, level)
            if existing is not None and existing.solved:
                self._count("already_solved")
                return FlagResult(
                    correct=True,
                    already_solved=True,
                    points=existing.score,
                    message=f"You already solved this flag! ({existing.score} points)",
                )

            if not pod_name or not namespace:
                raise ValidationError(
                    "pod name and namespace are required to verify a flag",
                    phase="validate",
                )

            command = flag_read_command(lab_id, difficulty, target)
            try:
                output = await self.orchestrator.exec_in_workload(namespace, pod_name, command)
            except ExecError:
                self._count("error")
                raise
            expected = (output or "").strip()
            if not expected:
                self._count("error")
                raise ExecError(
                    f"no flag found in {pod_name} for {difficulty.value}",
                    phase="read_flag",
                    details={"pod_name": pod_name, "namespace": namespace},
                )

            if str(value).strip() != expected:
                self._count("incorrect")
                log.info(
                    "flag_incorrect",
                    user_id=user_id,
                    lab_id=lab_id,
                    difficulty=difficulty.value,
                )
                return FlagResult(correct=False, message="Incorrect flag. Try again!")

            points = difficulty.points
            await self.store.upsert_score(
                LabScore(
                    user_id=user_id,
                    lab_id=lab_id,
                    level=level,
                    score=points,
                    solved=True,
                    submitted_at=utcnow(),
                )
            )

        total_score, solved_count = await self.store.score_summary(user_id, lab_id)
        self._count("correct")
        log.info(
            "flag_solved",
            user_id=user_id,
            lab_id=lab_id,
            difficulty=difficulty.value,
            points=points,
            total_score=total_score,
        )
        return FlagResult(
            correct=True,
            points=points,
            total_score=total_score,
            solved_count=solved_count,
            completed=solved_count == LEVELS_PER_LAB,
            message=f"Correct! You earned {points} points.",
        )

    def _count(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_flag_submission(result)
