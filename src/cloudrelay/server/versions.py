"""Version chains and source-to-destination file mappings.

This module provides:
- VersionRecorder.append_version: gap-free, strictly increasing version numbers
- History reads (newest first)
- CloudFileMapping lookups used for idempotent re-copy and sync diffing

A mapping's id is the file id that keys its version chain.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.errors import ConcurrentAppend
from cloudrelay.core.types import ChangeType
from cloudrelay.server.models import CloudFileMapping, FileVersion

if TYPE_CHECKING:
    from cloudrelay.server.database import Database

logger = logging.getLogger(__name__)


class VersionRecorder:
    """Owns FileVersion appends and CloudFileMapping rows."""

    def __init__(self, db: Database, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or SystemClock()

    # === Version chain ===

    def append_version(
        self,
        file_id: int,
        change_type: ChangeType | str,
        size: int | None,
        detail: str = "",
        fingerprint: str | None = None,
        source_modified_at: datetime | None = None,
        job_id: str | None = None,
    ) -> int:
        """Append the next version to a file's chain.

        Args:
            file_id: Mapping id owning the chain.
            change_type: Kind of change.
            size: Size in bytes of the content written.
            detail: Free-text description of the change.
            fingerprint: Content fingerprint, when the provider exposes one.
            source_modified_at: Source modification time of the content.
            job_id: Job that produced the change.

        Returns:
            The assigned version number (prior max + 1, starting at 1).

        Raises:
            ConcurrentAppend: If another writer took the same version number.
            ValueError: If the file id is unknown.
        """
        change = ChangeType(change_type)
        with self._db.session() as session:
            if session.get(CloudFileMapping, file_id) is None:
                raise ValueError(f"File not found: {file_id}")

            current = session.execute(
                select(func.max(FileVersion.version)).where(FileVersion.file_id == file_id)
            ).scalar_one_or_none()
            version = (current or 0) + 1

            session.add(
                FileVersion(
                    file_id=file_id,
                    version=version,
                    change_type=change.value,
                    size=size,
                    fingerprint=fingerprint,
                    source_modified_at=source_modified_at,
                    detail=detail,
                    job_id=job_id,
                    created_at=self._clock.now(),
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConcurrentAppend(file_id, version) from e

        logger.debug("File %d: appended version %d (%s)", file_id, version, change.value)
        return version

    def history(self, file_id: int) -> list[FileVersion]:
        """Version chain of a file, newest first."""
        with self._db.session() as session:
            versions = list(
                session.execute(
                    select(FileVersion)
                    .where(FileVersion.file_id == file_id)
                    .order_by(FileVersion.version.desc())
                ).scalars().all()
            )
            for version in versions:
                session.expunge(version)
            return versions

    def latest(self, file_id: int) -> FileVersion | None:
        """Highest version of a file (its current state)."""
        with self._db.session() as session:
            version = session.execute(
                select(FileVersion)
                .where(FileVersion.file_id == file_id)
                .order_by(FileVersion.version.desc())
                .limit(1)
            ).scalar_one_or_none()
            if version:
                session.expunge(version)
            return version

    def latest_versions(self, file_ids: Iterable[int]) -> dict[int, FileVersion]:
        """Highest version per file for a batch of files."""
        ids = list(file_ids)
        if not ids:
            return {}
        with self._db.session() as session:
            newest = (
                select(FileVersion.file_id, func.max(FileVersion.version).label("version"))
                .where(FileVersion.file_id.in_(ids))
                .group_by(FileVersion.file_id)
                .subquery()
            )
            rows = session.execute(
                select(FileVersion).join(
                    newest,
                    (FileVersion.file_id == newest.c.file_id)
                    & (FileVersion.version == newest.c.version),
                )
            ).scalars().all()
            result: dict[int, FileVersion] = {}
            for version in rows:
                session.expunge(version)
                result[version.file_id] = version
            return result

    # === Mappings ===

    def get_mapping(
        self,
        user_id: str,
        source_provider: str,
        source_item_id: str,
        dest_provider: str,
        dest_folder_id: str,
    ) -> CloudFileMapping | None:
        """Look up the mapping of a source item into a destination folder."""
        with self._db.session() as session:
            mapping = session.execute(
                select(CloudFileMapping).where(
                    CloudFileMapping.user_id == user_id,
                    CloudFileMapping.source_provider == source_provider,
                    CloudFileMapping.source_item_id == source_item_id,
                    CloudFileMapping.dest_provider == dest_provider,
                    CloudFileMapping.dest_folder_id == dest_folder_id,
                )
            ).scalar_one_or_none()
            if mapping:
                session.expunge(mapping)
            return mapping

    def get_mapping_by_id(self, file_id: int) -> CloudFileMapping | None:
        """Get a mapping by its id."""
        with self._db.session() as session:
            mapping = session.get(CloudFileMapping, file_id)
            if mapping:
                session.expunge(mapping)
            return mapping

    def get_or_create_mapping(
        self,
        user_id: str,
        source_provider: str,
        source_item_id: str,
        dest_provider: str,
        dest_folder_id: str,
        file_name: str,
        path: str,
    ) -> tuple[CloudFileMapping, bool]:
        """Return the existing mapping for a source item or create it.

        Returns:
            Tuple of (mapping, created).
        """
        existing = self.get_mapping(
            user_id, source_provider, source_item_id, dest_provider, dest_folder_id
        )
        if existing is not None:
            return existing, False

        now = self._clock.now()
        with self._db.session() as session:
            mapping = CloudFileMapping(
                user_id=user_id,
                source_provider=source_provider,
                source_item_id=source_item_id,
                dest_provider=dest_provider,
                dest_folder_id=dest_folder_id,
                file_name=file_name,
                path=path,
                created_at=now,
                updated_at=now,
            )
            session.add(mapping)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race with another creator; theirs is authoritative
                session.rollback()
                found = self.get_mapping(
                    user_id, source_provider, source_item_id, dest_provider, dest_folder_id
                )
                if found is None:
                    raise
                return found, False
            session.expunge(mapping)

        logger.debug("Created mapping %d for %s:%s", mapping.id, source_provider, source_item_id)
        return mapping, True

    def update_mapping_destination(
        self,
        file_id: int,
        dest_item_id: str,
        dest_size: int | None,
        dest_modified_at: datetime | None,
        file_name: str | None = None,
        path: str | None = None,
        dest_name: str | None = None,
    ) -> CloudFileMapping:
        """Record where the latest copy of a source item landed.

        Clears any previous soft delete.

        Raises:
            ValueError: If the mapping does not exist.
        """
        with self._db.session() as session:
            mapping = session.get(CloudFileMapping, file_id)
            if mapping is None:
                raise ValueError(f"File not found: {file_id}")
            mapping.dest_item_id = dest_item_id
            mapping.dest_size = dest_size
            mapping.dest_modified_at = dest_modified_at
            if file_name is not None:
                mapping.file_name = file_name
            if path is not None:
                mapping.path = path
            if dest_name is not None:
                mapping.dest_name = dest_name
            mapping.deleted_at = None
            mapping.updated_at = self._clock.now()
            session.commit()
            session.expunge(mapping)
            return mapping

    def mark_mapping_deleted(self, file_id: int) -> None:
        """Soft-delete a mapping whose destination item was removed."""
        with self._db.session() as session:
            mapping = session.get(CloudFileMapping, file_id)
            if mapping is None:
                return
            now = self._clock.now()
            mapping.deleted_at = now
            mapping.updated_at = now
            session.commit()

    def mappings_for_destination(
        self,
        user_id: str,
        source_provider: str,
        dest_provider: str,
        dest_folder_id: str,
        include_deleted: bool = False,
    ) -> list[CloudFileMapping]:
        """All mappings of one user's source into one destination folder."""
        with self._db.session() as session:
            stmt = select(CloudFileMapping).where(
                CloudFileMapping.user_id == user_id,
                CloudFileMapping.source_provider == source_provider,
                CloudFileMapping.dest_provider == dest_provider,
                CloudFileMapping.dest_folder_id == dest_folder_id,
            )
            if not include_deleted:
                stmt = stmt.where(CloudFileMapping.deleted_at.is_(None))
            mappings = list(session.execute(stmt.order_by(CloudFileMapping.path)).scalars().all())
            for mapping in mappings:
                session.expunge(mapping)
            return mappings
