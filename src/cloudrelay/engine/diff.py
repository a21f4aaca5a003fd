"""Diff engine for sync jobs.

Compares a source snapshot with the state recorded for previous runs and
with the destination snapshot, and produces a plan:

- cumulative_sync: copy new and modified files, skip unchanged ones
- mirror: like cumulative_sync, plus deletion of destination-only files
  (executed last, and only if every copy succeeded)
- one_shot_copy: copy every file unconditionally

Change detection prefers content fingerprints. When either side lacks one,
it falls back to comparing (size, modified time); equal pairs are treated as
unchanged, so a content change that preserves both goes unnoticed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from cloudrelay.core.types import SyncMode
from cloudrelay.engine.providers import ProviderEntry

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    """Per-file outcome of the comparison."""

    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class PriorState:
    """What was recorded the last time a source file was copied.

    Attributes:
        file_id: Mapping id (version chain key).
        dest_item_id: Destination item written last time.
        size: Source size recorded with the last version.
        modified_at: Source modification time recorded with the last version.
        fingerprint: Source fingerprint recorded with the last version.
    """

    file_id: int
    dest_item_id: str | None
    size: int | None
    modified_at: datetime | None
    fingerprint: str | None


@dataclass(frozen=True)
class DestinationRecord:
    """Size and modification time of a destination file as last written by a run."""

    size: int | None
    modified_at: datetime | None


@dataclass(frozen=True)
class PlannedCopy:
    entry: ProviderEntry
    verdict: Verdict
    prior: PriorState | None = None


@dataclass
class DiffPlan:
    """Ordered work for one run.

    Attributes:
        mode: Sync mode the plan was computed for.
        folders: Source folders to create on the destination, parents first.
        copies: Files to transfer, in path order.
        skipped: Unchanged files left alone.
        deletes: Destination-only files to delete after all copies succeed.
        preserved: Destination-only files kept because they were edited on
            the destination since the last run.
    """

    mode: SyncMode
    folders: list[ProviderEntry] = field(default_factory=list)
    copies: list[PlannedCopy] = field(default_factory=list)
    skipped: list[PlannedCopy] = field(default_factory=list)
    deletes: list[ProviderEntry] = field(default_factory=list)
    preserved: list[ProviderEntry] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        """Units of work counted by job progress (copies then deletes)."""
        return len(self.copies) + len(self.deletes)

    def count(self, verdict: Verdict) -> int:
        """Number of planned or skipped files with this verdict."""
        return sum(1 for item in [*self.copies, *self.skipped] if item.verdict == verdict)


def classify(entry: ProviderEntry, prior: PriorState | None) -> Verdict:
    """Compare a source file against its last recorded state."""
    if prior is None:
        return Verdict.NEW
    if entry.fingerprint and prior.fingerprint:
        return Verdict.UNCHANGED if entry.fingerprint == prior.fingerprint else Verdict.MODIFIED
    if entry.size == prior.size and entry.modified_at == prior.modified_at:
        return Verdict.UNCHANGED
    return Verdict.MODIFIED


def compute_diff(
    mode: SyncMode | str,
    source_entries: Iterable[ProviderEntry],
    prior: Mapping[str, PriorState],
    dest_entries: Iterable[ProviderEntry] = (),
    preserve_edits: bool = True,
    last_run_at: datetime | None = None,
    written: Mapping[str, DestinationRecord] | None = None,
) -> DiffPlan:
    """Compute the plan for a run.

    Args:
        mode: Sync mode.
        source_entries: Source snapshot (paths relative to the job root).
        prior: Recorded state keyed by source item id.
        dest_entries: Destination snapshot, used by mirror mode.
        preserve_edits: Keep destination-only files modified after
            ``last_run_at`` instead of deleting them.
        last_run_at: Completion time of the previous successful run.
        written: Destination files written by earlier runs, keyed by
            destination item id. These count as edited only if they changed
            since they were written.

    Returns:
        The plan, with every list in lexicographic path order.
    """
    sync_mode = SyncMode(mode)
    plan = DiffPlan(mode=sync_mode)

    source_paths: set[str] = set()
    for entry in sorted(source_entries, key=lambda e: e.path):
        source_paths.add(entry.path)
        if entry.is_folder:
            plan.folders.append(entry)
            continue

        previous = prior.get(entry.id)
        item = PlannedCopy(entry=entry, verdict=classify(entry, previous), prior=previous)
        if sync_mode == SyncMode.ONE_SHOT_COPY or item.verdict != Verdict.UNCHANGED:
            plan.copies.append(item)
        else:
            plan.skipped.append(item)

    if sync_mode == SyncMode.MIRROR:
        for entry in sorted(dest_entries, key=lambda e: e.path):
            # Folders are never deleted
            if entry.is_folder or entry.path in source_paths:
                continue
            if preserve_edits and _edited_since(entry, last_run_at, (written or {}).get(entry.id)):
                plan.preserved.append(entry)
            else:
                plan.deletes.append(entry)

    logger.debug(
        "Diff (%s): %d to copy (%d new, %d modified), %d unchanged, %d to delete, %d preserved",
        sync_mode.value,
        len(plan.copies),
        plan.count(Verdict.NEW),
        plan.count(Verdict.MODIFIED),
        len(plan.skipped),
        len(plan.deletes),
        len(plan.preserved),
    )
    return plan


def _edited_since(
    entry: ProviderEntry,
    last_run_at: datetime | None,
    record: DestinationRecord | None,
) -> bool:
    """Whether a destination file may hold edits made since the last run.

    Without a previous run or a modification time there is nothing to prove
    the file is stale, so it counts as edited.
    """
    if record is not None:
        return entry.size != record.size or entry.modified_at != record.modified_at
    if last_run_at is None or entry.modified_at is None:
        return True
    return entry.modified_at > last_run_at
