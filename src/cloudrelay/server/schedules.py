"""Recurring sync schedules.

This module provides:
- calculate_next_run: next fire time for interval/hourly/daily/weekly schedules
- ScheduleStore: create, list and disable schedules, and enqueue jobs for
  the ones that are due

Schedule times are UTC. ``day_of_week`` uses Python's convention
(0 = Monday).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.errors import InvalidSpec, ScheduleNotFound
from cloudrelay.core.types import ItemKind, ScheduleFrequency, SyncMode
from cloudrelay.server.jobs import JobSpec
from cloudrelay.server.models import SyncSchedule

if TYPE_CHECKING:
    from cloudrelay.server.database import Database
    from cloudrelay.server.jobs import JobStore

logger = logging.getLogger(__name__)


@dataclass
class ScheduleSpec:
    """Request to create a recurring sync."""

    user_id: str
    name: str
    source_provider: str
    dest_provider: str
    source_item_id: str
    dest_folder_id: str
    frequency: ScheduleFrequency | str
    item_kind: ItemKind | str = ItemKind.FOLDER
    mode: SyncMode | str = SyncMode.CUMULATIVE_SYNC
    interval_minutes: int | None = None
    hour: int = 8
    minute: int = 0
    day_of_week: int | None = None
    priority: int = 0
    max_retries: int | None = None


def calculate_next_run(
    frequency: ScheduleFrequency | str,
    now: datetime,
    interval_minutes: int | None = None,
    hour: int = 0,
    minute: int = 0,
    day_of_week: int | None = None,
) -> datetime:
    """Compute the first fire time strictly after ``now``.

    Args:
        frequency: Schedule frequency.
        now: Reference time (UTC).
        interval_minutes: Period for ``interval`` schedules.
        hour: Hour of day for daily and weekly schedules.
        minute: Minute past the hour for hourly, daily and weekly schedules.
        day_of_week: Weekday for weekly schedules (0 = Monday).

    Returns:
        Next fire time.
    """
    freq = ScheduleFrequency(frequency)

    if freq == ScheduleFrequency.INTERVAL:
        if not interval_minutes or interval_minutes < 1:
            raise ValueError("interval schedules need interval_minutes >= 1")
        return now + timedelta(minutes=interval_minutes)

    if freq == ScheduleFrequency.HOURLY:
        candidate = now.replace(minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(hours=1)
        return candidate

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if freq == ScheduleFrequency.DAILY:
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    # Weekly
    if day_of_week is None:
        raise ValueError("weekly schedules need day_of_week")
    days_ahead = (day_of_week - now.weekday()) % 7
    candidate += timedelta(days=days_ahead)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def _next_for(schedule: SyncSchedule, now: datetime) -> datetime:
    return calculate_next_run(
        schedule.frequency,
        now,
        interval_minutes=schedule.interval_minutes,
        hour=schedule.hour,
        minute=schedule.minute,
        day_of_week=schedule.day_of_week,
    )


class ScheduleStore:
    """Persistence and firing of recurring sync schedules."""

    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or SystemClock()

    def create(self, spec: ScheduleSpec) -> SyncSchedule:
        """Create an enabled schedule.

        Raises:
            InvalidSpec: If routing, frequency or timing fields are invalid.
        """
        for field_name in ("user_id", "name", "source_provider", "dest_provider",
                           "source_item_id", "dest_folder_id"):
            if not str(getattr(spec, field_name) or "").strip():
                raise InvalidSpec(f"{field_name} is required")
        try:
            frequency = ScheduleFrequency(spec.frequency)
            item_kind = ItemKind(spec.item_kind)
            mode = SyncMode(spec.mode)
        except ValueError as e:
            raise InvalidSpec(str(e)) from e
        if not 0 <= spec.hour <= 23 or not 0 <= spec.minute <= 59:
            raise InvalidSpec("hour must be 0-23 and minute 0-59")
        if frequency == ScheduleFrequency.WEEKLY and (
            spec.day_of_week is None or not 0 <= spec.day_of_week <= 6
        ):
            raise InvalidSpec("weekly schedules need day_of_week 0-6")
        if frequency == ScheduleFrequency.INTERVAL and (
            spec.interval_minutes is None or spec.interval_minutes < 1
        ):
            raise InvalidSpec("interval schedules need interval_minutes >= 1")
        if spec.max_retries is not None and spec.max_retries < 1:
            raise InvalidSpec("max_retries must be at least 1")

        now = self._clock.now()
        next_run = calculate_next_run(
            frequency,
            now,
            interval_minutes=spec.interval_minutes,
            hour=spec.hour,
            minute=spec.minute,
            day_of_week=spec.day_of_week,
        )
        with self._db.session() as session:
            schedule = SyncSchedule(
                user_id=spec.user_id,
                name=spec.name,
                source_provider=spec.source_provider,
                dest_provider=spec.dest_provider,
                source_item_id=spec.source_item_id,
                dest_folder_id=spec.dest_folder_id,
                item_kind=item_kind.value,
                mode=mode.value,
                priority=spec.priority,
                max_retries=spec.max_retries,
                frequency=frequency.value,
                interval_minutes=spec.interval_minutes,
                hour=spec.hour,
                minute=spec.minute,
                day_of_week=spec.day_of_week,
                enabled=True,
                next_run_at=next_run,
                created_at=now,
                updated_at=now,
            )
            session.add(schedule)
            session.commit()
            session.expunge(schedule)

        logger.info(
            "Created %s schedule %d (%s) for user %s, first run at %s",
            frequency.value,
            schedule.id,
            schedule.name,
            spec.user_id,
            next_run.isoformat(),
        )
        return schedule

    def get(self, schedule_id: int, user_id: str | None = None) -> SyncSchedule:
        """Get a schedule.

        Raises:
            ScheduleNotFound: If the schedule does not exist (or is not the user's).
        """
        with self._db.session() as session:
            schedule = session.get(SyncSchedule, schedule_id)
            if schedule is None or (user_id is not None and schedule.user_id != user_id):
                raise ScheduleNotFound(f"Schedule not found: {schedule_id}")
            session.expunge(schedule)
            return schedule

    def list_schedules(self, user_id: str | None = None) -> list[SyncSchedule]:
        """List schedules ordered by next fire time."""
        with self._db.session() as session:
            stmt = select(SyncSchedule)
            if user_id is not None:
                stmt = stmt.where(SyncSchedule.user_id == user_id)
            schedules = list(session.execute(stmt.order_by(SyncSchedule.next_run_at)).scalars().all())
            for schedule in schedules:
                session.expunge(schedule)
            return schedules

    def disable(self, schedule_id: int, user_id: str | None = None) -> SyncSchedule:
        """Stop a schedule from firing. Jobs it already enqueued are untouched."""
        with self._db.session() as session:
            schedule = session.get(SyncSchedule, schedule_id)
            if schedule is None or (user_id is not None and schedule.user_id != user_id):
                raise ScheduleNotFound(f"Schedule not found: {schedule_id}")
            schedule.enabled = False
            schedule.updated_at = self._clock.now()
            session.commit()
            session.expunge(schedule)
        logger.info("Disabled schedule %d", schedule_id)
        return schedule

    def enqueue_due(self, job_store: JobStore) -> list[str]:
        """Enqueue one job for every enabled schedule that is due.

        A schedule whose previous job is still pending or running is advanced
        without enqueueing, so two jobs never target the same destination.

        Returns:
            Ids of the jobs enqueued.
        """
        now = self._clock.now()
        with self._db.session() as session:
            due = list(
                session.execute(
                    select(SyncSchedule)
                    .where(SyncSchedule.enabled.is_(True), SyncSchedule.next_run_at <= now)
                    .order_by(SyncSchedule.next_run_at)
                ).scalars().all()
            )
            for schedule in due:
                session.expunge(schedule)

        job_ids: list[str] = []
        for schedule in due:
            next_run = _next_for(schedule, now)

            # Advance first; whoever moves next_run_at owns this firing
            with self._db.session() as session:
                result = session.execute(
                    update(SyncSchedule)
                    .where(
                        SyncSchedule.id == schedule.id,
                        SyncSchedule.next_run_at == schedule.next_run_at,
                    )
                    .values(next_run_at=next_run, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount != 1:
                    continue

            if job_store.has_active_job(schedule.last_job_id):
                logger.info(
                    "Schedule %d skipped: previous job %s still active",
                    schedule.id,
                    schedule.last_job_id,
                )
                continue

            spec = JobSpec(
                user_id=schedule.user_id,
                source_provider=schedule.source_provider,
                dest_provider=schedule.dest_provider,
                source_item_id=schedule.source_item_id,
                dest_folder_id=schedule.dest_folder_id,
                item_kind=schedule.item_kind,
                mode=schedule.mode,
                priority=schedule.priority,
                max_retries=schedule.max_retries,
                schedule_id=schedule.id,
            )
            try:
                job_id = job_store.enqueue(spec)
            except InvalidSpec as e:
                logger.error("Schedule %d disabled: %s", schedule.id, e)
                self.disable(schedule.id)
                continue

            with self._db.session() as session:
                session.execute(
                    update(SyncSchedule)
                    .where(SyncSchedule.id == schedule.id)
                    .values(
                        last_run_at=now,
                        last_job_id=job_id,
                        total_runs=SyncSchedule.total_runs + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()

            job_ids.append(job_id)
            logger.info("Schedule %d enqueued job %s, next run at %s", schedule.id, job_id, next_run.isoformat())

        return job_ids
