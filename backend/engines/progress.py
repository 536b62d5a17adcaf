"""Per-user completion ledger.

Anonymous learners are tracked per device in a local JSON document;
signed-in learners are tracked in the database. Signing in migrates the
device's records to the account once, merging with what the account already
has.

Local storage problems never fail a request: unreadable progress is treated
as empty progress. Remote failures fall back to the local store, except for
migration, which reports ``False`` and leaves local data untouched.
"""
import asyncio
import json
import math
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable

from pydantic import Field, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import SessionFactory, execute_transaction
from core.errors import AppError, Err, Ok, Result
from core.logging import progress_logger
from core.security import UserIdentity
from models.exercise import (
    CamelModel,
    CefrLevel,
    CompletedExerciseRecord,
    ExerciseType,
    Score,
    now_ms,
)
from models.progress import CompletedExercise

log = progress_logger()

LOCAL_NAMESPACE = "vjezbajmo-progress"
RECENT_ACTIVITY_LIMIT = 10
_DAY_MS = 24 * 60 * 60 * 1000


# =============================================================================
# Record arithmetic
# =============================================================================

def _max_optional(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def apply_completion(
    existing: CompletedExerciseRecord | None,
    *,
    exercise_id: str,
    exercise_type: ExerciseType,
    cefr_level: CefrLevel,
    theme: str | None,
    score: Score | None,
    title: str | None,
    at_ms: int,
) -> CompletedExerciseRecord:
    """Record one more completion: new record, or attempt+1 and best score kept."""
    percentage = score.percentage if score else None
    if existing is None:
        return CompletedExerciseRecord(
            exercise_id=exercise_id,
            exercise_type=exercise_type,
            cefr_level=cefr_level,
            theme=theme,
            completed_at=at_ms,
            score=score,
            attempt_number=1,
            best_score=percentage,
            title=title,
        )
    return existing.model_copy(update={
        "completed_at": at_ms,
        "score": score or existing.score,
        "attempt_number": existing.attempt_number + 1,
        "best_score": _max_optional(existing.best_score, percentage),
        "title": title or existing.title,
    })


def merge_records(
    current: CompletedExerciseRecord | None,
    incoming: CompletedExerciseRecord,
) -> CompletedExerciseRecord:
    """Merge two records of the same exercise.

    The most recent completion supplies the score and metadata; attempts and
    best score take the maximum of both sides, so merging twice changes nothing.
    """
    if current is None:
        return incoming
    latest = incoming if incoming.completed_at > current.completed_at else current
    return latest.model_copy(update={
        "attempt_number": max(current.attempt_number, incoming.attempt_number),
        "best_score": _max_optional(current.best_score, incoming.best_score),
    })


# =============================================================================
# Stats
# =============================================================================

@dataclass(frozen=True, slots=True)
class ExerciseTypeStats:
    completed: int = 0
    average_score: int = 0
    last_attempted: int | None = None


@dataclass(frozen=True, slots=True)
class PerformanceStats:
    total_completed: int
    average_score: int
    by_exercise_type: dict[str, ExerciseTypeStats]
    recent_activity: list[CompletedExerciseRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "totalCompleted": self.total_completed,
            "averageScore": self.average_score,
            "byExerciseType": {
                name: {
                    "completed": s.completed,
                    "averageScore": s.average_score,
                    "lastAttempted": s.last_attempted,
                }
                for name, s in self.by_exercise_type.items()
            },
            "recentActivity": [r.to_json_dict() for r in self.recent_activity],
        }


def _average_score(records: list[CompletedExerciseRecord]) -> int:
    scored = [r.score.percentage for r in records if r.score is not None]
    return _round_half_up(sum(scored) / len(scored)) if scored else 0


def compute_stats(
    records: Iterable[CompletedExerciseRecord],
    exercise_type: ExerciseType | None = None,
) -> PerformanceStats:
    records = list(records)
    selected = [r for r in records if exercise_type is None or r.exercise_type == exercise_type]

    by_type = {}
    for t in ExerciseType:
        if exercise_type is not None and t != exercise_type:
            by_type[t.value] = ExerciseTypeStats()
            continue
        typed = [r for r in selected if r.exercise_type == t]
        by_type[t.value] = ExerciseTypeStats(
            completed=len(typed),
            average_score=_average_score(typed),
            last_attempted=max((r.completed_at for r in typed), default=None),
        )

    recent = sorted(selected, key=lambda r: r.completed_at, reverse=True)
    return PerformanceStats(
        total_completed=len(selected),
        average_score=_average_score(selected),
        by_exercise_type=by_type,
        recent_activity=recent[:RECENT_ACTIVITY_LIMIT],
    )


# =============================================================================
# Local store
# =============================================================================

class LocalProgressDocument(CamelModel):
    records: list[CompletedExerciseRecord] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms)
    migrated_to: str | None = None
    migrated_at: int | None = None


@dataclass
class _DeviceLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LocalProgressStore:
    """Device-scoped progress kept as one JSON document per device."""

    def __init__(
        self,
        directory: Path,
        *,
        retention_days: int = 30,
        clock: Callable[[], int] = now_ms,
    ):
        self.directory = Path(directory)
        self.retention_days = retention_days
        self._clock = clock
        self._locks: dict[str, _DeviceLock] = {}

    @asynccontextmanager
    async def _device_lock(self, device_id: str) -> AsyncIterator[None]:
        """Serialize access to one device's document; idle locks are dropped."""
        entry = self._locks.get(device_id)
        if entry is None:
            entry = self._locks[device_id] = _DeviceLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[device_id]

    def path_for(self, device_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", device_id)
        return self.directory / f"{LOCAL_NAMESPACE}-{safe}.json"

    def _sweep(self, document: LocalProgressDocument) -> tuple[LocalProgressDocument, int]:
        cutoff = self._clock() - self.retention_days * _DAY_MS
        fresh = [r for r in document.records if r.completed_at >= cutoff]
        dropped = len(document.records) - len(fresh)
        if dropped:
            document = document.model_copy(update={"records": fresh})
        return document, dropped

    def _read_file(self, path: Path) -> LocalProgressDocument:
        if not path.exists():
            return LocalProgressDocument(last_updated=self._clock())
        return LocalProgressDocument.model_validate_json(path.read_text(encoding="utf-8"))

    def _write_file(self, path: Path, document: LocalProgressDocument) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(
            json.dumps(document.model_dump(mode="json", by_alias=True, exclude_none=True)),
            encoding="utf-8",
        )
        tmp.replace(path)

    async def _load(self, device_id: str) -> LocalProgressDocument:
        path = self.path_for(device_id)
        try:
            document = await asyncio.to_thread(self._read_file, path)
        except (OSError, ValueError, ValidationError) as e:
            log.warning("local_progress_unreadable", device_id=device_id, error=str(e))
            return LocalProgressDocument(last_updated=self._clock())

        document, dropped = self._sweep(document)
        if dropped:
            log.info("local_progress_swept", device_id=device_id, dropped=dropped)
            await self._save(device_id, document)
        return document

    async def _save(self, device_id: str, document: LocalProgressDocument) -> bool:
        path = self.path_for(device_id)
        try:
            await asyncio.to_thread(self._write_file, path, document)
            return True
        except OSError as e:
            log.warning("local_progress_write_failed", device_id=device_id, error=str(e))
            return False

    async def read(self, device_id: str) -> LocalProgressDocument:
        async with self._device_lock(device_id):
            return await self._load(device_id)

    async def records(self, device_id: str) -> list[CompletedExerciseRecord]:
        return (await self.read(device_id)).records

    async def mark_completed(self, device_id: str, **completion) -> CompletedExerciseRecord:
        async with self._device_lock(device_id):
            document = await self._load(device_id)
            by_id = {r.exercise_id: r for r in document.records}
            exercise_id = completion["exercise_id"]
            record = apply_completion(by_id.get(exercise_id), at_ms=self._clock(), **completion)
            by_id[exercise_id] = record
            await self._save(device_id, document.model_copy(update={
                "records": list(by_id.values()),
                "last_updated": self._clock(),
            }))
            return record

    async def mark_migrated(
        self,
        device_id: str,
        user_id: str,
        migrated: Iterable[CompletedExerciseRecord],
    ) -> None:
        """Drop the migrated records and remember which account took them.

        Records written after the migration read its snapshot are kept.
        """
        taken = {r.exercise_id: r for r in migrated}
        async with self._device_lock(device_id):
            document = await self._load(device_id)
            now = self._clock()
            await self._save(device_id, document.model_copy(update={
                "records": [r for r in document.records if taken.get(r.exercise_id) != r],
                "last_updated": now,
                "migrated_to": user_id,
                "migrated_at": now,
            }))

    async def clear(self, device_id: str) -> None:
        async with self._device_lock(device_id):
            path = self.path_for(device_id)
            try:
                await asyncio.to_thread(path.unlink, True)
            except OSError as e:
                log.warning("local_progress_clear_failed", device_id=device_id, error=str(e))


# =============================================================================
# Remote store
# =============================================================================

class RemoteProgressStore:
    """Account-scoped progress in the ``completed_exercises`` table."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        retention_days: int = 30,
        clock: Callable[[], int] = now_ms,
    ):
        self._session_factory = session_factory
        self.retention_days = retention_days
        self._clock = clock

    async def _sweep(self, session: AsyncSession, user_id: str) -> None:
        cutoff = self._clock() - self.retention_days * _DAY_MS
        await session.execute(
            delete(CompletedExercise).where(
                CompletedExercise.user_id == user_id,
                CompletedExercise.completed_at < cutoff,
            )
        )

    async def list_records(self, user_id: str) -> Result[list[CompletedExerciseRecord], AppError]:
        async def op(session: AsyncSession) -> list[CompletedExerciseRecord]:
            await self._sweep(session, user_id)
            rows = await session.execute(
                select(CompletedExercise)
                .where(CompletedExercise.user_id == user_id)
                .order_by(CompletedExercise.completed_at)
            )
            return [row.to_record() for row in rows.scalars()]

        return await execute_transaction(self._session_factory, op)

    async def mark_completed(self, user_id: str, **completion) -> Result[CompletedExerciseRecord, AppError]:
        async def op(session: AsyncSession) -> CompletedExerciseRecord:
            await self._sweep(session, user_id)
            row = await session.get(CompletedExercise, (user_id, completion["exercise_id"]))
            record = apply_completion(
                row.to_record() if row else None,
                at_ms=self._clock(),
                **completion,
            )
            if row is None:
                session.add(CompletedExercise.from_record(user_id, record))
            else:
                row.apply(record)
            return record

        return await execute_transaction(self._session_factory, op)

    async def merge_records(
        self, user_id: str, records: Iterable[CompletedExerciseRecord]
    ) -> Result[int, AppError]:
        """Merge ``records`` into the account in a single transaction."""
        incoming: dict[str, CompletedExerciseRecord] = {}
        for record in records:
            incoming[record.exercise_id] = merge_records(incoming.get(record.exercise_id), record)

        async def op(session: AsyncSession) -> int:
            for exercise_id, record in incoming.items():
                row = await session.get(CompletedExercise, (user_id, exercise_id))
                if row is None:
                    session.add(CompletedExercise.from_record(user_id, record))
                else:
                    row.apply(merge_records(row.to_record(), record))
            return len(incoming)

        return await execute_transaction(self._session_factory, op)

    async def clear(self, user_id: str) -> Result[int, AppError]:
        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                delete(CompletedExercise).where(CompletedExercise.user_id == user_id)
            )
            return result.rowcount or 0

        return await execute_transaction(self._session_factory, op)


# =============================================================================
# Ledger
# =============================================================================

class UserProgressLedger:
    """Which exercises an identity has completed, and how well."""

    __slots__ = ("local", "remote")

    def __init__(self, local: LocalProgressStore, remote: RemoteProgressStore):
        self.local = local
        self.remote = remote

    async def _records(self, identity: UserIdentity) -> list[CompletedExerciseRecord]:
        if identity.is_authenticated:
            match await self.remote.list_records(identity.user_id):
                case Ok(records):
                    return records
                case Err(error):
                    log.warning(
                        "remote_progress_unavailable",
                        user_id=identity.user_id,
                        error=str(error),
                    )
        return await self.local.records(identity.device_id)

    async def get_completed_exercises(
        self,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
        identity: UserIdentity | None = None,
    ) -> list[str]:
        identity = identity or UserIdentity()
        ids = [
            r.exercise_id
            for r in await self._records(identity)
            if r.matches(exercise_type, cefr_level, theme)
        ]
        return list(dict.fromkeys(ids))

    async def mark_exercise_completed(
        self,
        exercise_id: str,
        exercise_type: ExerciseType,
        cefr_level: CefrLevel,
        theme: str | None = None,
        score: Score | None = None,
        title: str | None = None,
        identity: UserIdentity | None = None,
    ) -> CompletedExerciseRecord:
        identity = identity or UserIdentity()
        completion = dict(
            exercise_id=exercise_id,
            exercise_type=exercise_type,
            cefr_level=cefr_level,
            theme=theme,
            score=score,
            title=title,
        )

        if identity.is_authenticated:
            result = await self.remote.mark_completed(identity.user_id, **completion)
            if result.is_ok():
                record = result.unwrap()
                log.info(
                    "exercise_completed",
                    exercise_id=exercise_id,
                    store="remote",
                    attempt=record.attempt_number,
                    best_score=record.best_score,
                )
                return record
            log.warning(
                "remote_progress_write_failed",
                user_id=identity.user_id,
                exercise_id=exercise_id,
                error=str(result.unwrap_err()),
            )

        record = await self.local.mark_completed(identity.device_id, **completion)
        log.info(
            "exercise_completed",
            exercise_id=exercise_id,
            store="local",
            attempt=record.attempt_number,
            best_score=record.best_score,
        )
        return record

    async def migrate_local_progress_to_user(self, identity: UserIdentity) -> bool:
        """Move this device's records into the signed-in account.

        Returns False when there is nothing to migrate or the remote write
        failed; in the latter case local records are kept for a later retry.
        """
        if not identity.is_authenticated:
            return False

        document = await self.local.read(identity.device_id)
        if not document.records:
            return False

        result = await self.remote.merge_records(identity.user_id, document.records)
        if result.is_err():
            log.warning(
                "progress_migration_failed",
                user_id=identity.user_id,
                device_id=identity.device_id,
                error=str(result.unwrap_err()),
            )
            return False

        await self.local.mark_migrated(identity.device_id, identity.user_id, document.records)
        log.info(
            "progress_migrated",
            user_id=identity.user_id,
            device_id=identity.device_id,
            records=result.unwrap(),
        )
        return True

    async def get_performance_stats(
        self,
        identity: UserIdentity | None = None,
        exercise_type: ExerciseType | None = None,
    ) -> PerformanceStats:
        return compute_stats(await self._records(identity or UserIdentity()), exercise_type)

    async def get_all_records(self, identity: UserIdentity | None = None) -> list[CompletedExerciseRecord]:
        """Every record for the identity, most recent first."""
        records = await self._records(identity or UserIdentity())
        return sorted(records, key=lambda r: r.completed_at, reverse=True)

    async def clear_all_progress(self, identity: UserIdentity | None = None) -> None:
        identity = identity or UserIdentity()
        await self.local.clear(identity.device_id)
        if identity.is_authenticated:
            result = await self.remote.clear(identity.user_id)
            if result.is_err():
                log.warning(
                    "remote_progress_clear_failed",
                    user_id=identity.user_id,
                    error=str(result.unwrap_err()),
                )
        log.info("progress_cleared", device_id=identity.device_id, user_id=identity.user_id)
