"""Provider adapter abstraction.

This module provides:
- ProviderEntry: metadata of one provider-side file or folder
- ProviderAdapter: abstract capability interface used by workers
- MemoryProvider: in-process provider for development and testing
- LocalFSProvider: provider backed by a local directory tree
- ProviderRegistry: per-user adapter lookup by provider name
- walk: recursive snapshot of a folder in lexicographic path order

The engine never sees provider wire formats; adapters raise ProviderError
subclasses (or plain OS errors, classified by the worker).
"""

from __future__ import annotations

import hashlib
import itertools
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from cloudrelay.core.clock import Clock, SystemClock
from cloudrelay.core.errors import PermanentProviderError, ProviderNotFound, classify_os_error
from cloudrelay.core.types import ErrorCode

# Streaming chunk size for reads
CHUNK_SIZE = 1024 * 1024  # 1 MiB

ROOT_ID = "root"


@dataclass(frozen=True)
class ProviderEntry:
    """Metadata for one provider item.

    Attributes:
        id: Provider-side item id.
        name: Item name.
        path: Slash-separated path (relative to the walk root for walk() results).
        is_folder: Whether the item is a folder.
        size: Size in bytes (files only).
        modified_at: Last modification time.
        fingerprint: Content hash, when the provider exposes one.
        web_url: Link to the item in the provider's UI.
    """

    id: str
    name: str
    path: str
    is_folder: bool = False
    size: int | None = None
    modified_at: datetime | None = None
    fingerprint: str | None = None
    web_url: str | None = None


class ProviderAdapter(ABC):
    """Capability interface for one provider account."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name, as used in job routing."""

    @abstractmethod
    def stat_file(self, item_id: str) -> ProviderEntry:
        """Get metadata of an item.

        Raises:
            ProviderNotFound: If the item does not exist.
        """

    @abstractmethod
    def list_children(self, folder_id: str) -> list[ProviderEntry]:
        """List the direct children of a folder.

        Raises:
            ProviderNotFound: If the folder does not exist.
        """

    @abstractmethod
    def read_file(self, item_id: str) -> Iterator[bytes]:
        """Stream the content of a file in chunks.

        Raises:
            ProviderNotFound: If the file does not exist.
        """

    @abstractmethod
    def write_file(
        self,
        folder_id: str,
        name: str,
        chunks: Iterable[bytes],
        existing_item_id: str | None = None,
    ) -> ProviderEntry:
        """Write a file into a folder.

        Args:
            folder_id: Destination folder.
            name: File name.
            chunks: Content stream.
            existing_item_id: Item to overwrite, when updating a previous copy.

        Returns:
            Metadata of the written file.
        """

    @abstractmethod
    def ensure_folder(self, parent_id: str, name: str) -> ProviderEntry:
        """Return the child folder ``name`` of ``parent_id``, creating it if needed."""

    @abstractmethod
    def delete_file(self, item_id: str) -> None:
        """Delete a file. Deleting a missing file is not an error."""


def walk(
    provider: ProviderAdapter,
    folder_id: str,
    on_folder: Callable[[], None] | None = None,
) -> list[ProviderEntry]:
    """Snapshot a folder tree.

    Args:
        provider: Adapter to list with.
        folder_id: Root of the walk.
        on_folder: Called before each folder is listed.

    Returns:
        Every file and folder below the root, with ``path`` relative to the
        root, sorted by path.
    """
    entries: list[ProviderEntry] = []
    pending: list[tuple[str, str]] = [(folder_id, "")]
    while pending:
        current_id, prefix = pending.pop()
        if on_folder is not None:
            on_folder()
        for child in provider.list_children(current_id):
            rel_path = f"{prefix}/{child.name}" if prefix else child.name
            entries.append(replace(child, path=rel_path))
            if child.is_folder:
                pending.append((child.id, rel_path))
    entries.sort(key=lambda e: e.path)
    return entries


def content_fingerprint(data: bytes) -> str:
    """SHA-256 hex digest used as a content fingerprint."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class _Node:
    id: str
    name: str
    parent_id: str | None
    is_folder: bool
    data: bytes = b""
    modified_at: datetime | None = None


class MemoryProvider(ProviderAdapter):
    """Thread-safe in-memory provider.

    Failures can be injected per item id (reads, stats, deletes) or per file
    name (writes) with inject_failure().
    """

    def __init__(
        self,
        name: str = "memory",
        clock: Clock | None = None,
        fingerprints: bool = True,
    ) -> None:
        """Initialize an empty provider with a single root folder.

        Args:
            name: Provider name.
            clock: Time source for modification times.
            fingerprints: Whether entries expose content fingerprints.
        """
        self._name = name
        self._clock = clock or SystemClock()
        self._fingerprints = fingerprints
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._nodes: dict[str, _Node] = {
            ROOT_ID: _Node(id=ROOT_ID, name="", parent_id=None, is_folder=True)
        }
        self._failures: dict[str, list[BaseException]] = {}

    @property
    def name(self) -> str:
        return self._name

    # === Test/dev helpers ===

    def inject_failure(self, key: str, exc: BaseException, times: int = 1) -> None:
        """Make the next ``times`` operations on ``key`` raise ``exc``."""
        with self._lock:
            self._failures.setdefault(key, []).extend([exc] * times)

    def _maybe_fail(self, key: str) -> None:
        with self._lock:
            queued = self._failures.get(key)
            exc = queued.pop(0) if queued else None
        if exc is not None:
            raise exc

    def add_folder(self, parent_id: str, name: str) -> str:
        """Create a folder and return its id."""
        return self.ensure_folder(parent_id, name).id

    def add_file(
        self,
        parent_id: str,
        name: str,
        data: bytes,
        modified_at: datetime | None = None,
    ) -> str:
        """Create a file and return its id."""
        with self._lock:
            self._require_folder(parent_id)
            node = _Node(
                id=f"{self._name}-{next(self._ids)}",
                name=name,
                parent_id=parent_id,
                is_folder=False,
                data=data,
                modified_at=modified_at or self._clock.now(),
            )
            self._nodes[node.id] = node
            return node.id

    def update_file(self, item_id: str, data: bytes, modified_at: datetime | None = None) -> None:
        """Replace a file's content in place."""
        with self._lock:
            node = self._require(item_id)
            node.data = data
            node.modified_at = modified_at or self._clock.now()

    def get_bytes(self, item_id: str) -> bytes:
        """Current content of a file."""
        with self._lock:
            return self._require(item_id).data

    def find(self, path: str, root_id: str = ROOT_ID) -> ProviderEntry | None:
        """Resolve a slash-separated path below ``root_id``."""
        with self._lock:
            current = root_id
            for part in PurePosixPath(path).parts:
                match = self._child_named(current, part)
                if match is None:
                    return None
                current = match.id
            return self._entry(self._nodes[current])

    def exists(self, item_id: str) -> bool:
        """Whether an item exists."""
        with self._lock:
            return item_id in self._nodes

    # === Internals (lock held) ===

    def _require(self, item_id: str) -> _Node:
        node = self._nodes.get(item_id)
        if node is None:
            raise ProviderNotFound(f"{self._name}: item not found: {item_id}")
        return node

    def _require_folder(self, folder_id: str) -> _Node:
        node = self._require(folder_id)
        if not node.is_folder:
            raise PermanentProviderError(
                f"{self._name}: not a folder: {folder_id}", ErrorCode.UNSUPPORTED
            )
        return node

    def _child_named(self, parent_id: str, name: str) -> _Node | None:
        for node in self._nodes.values():
            if node.parent_id == parent_id and node.name == name:
                return node
        return None

    def _path(self, node: _Node) -> str:
        parts: list[str] = []
        current: _Node | None = node
        while current is not None and current.parent_id is not None:
            parts.append(current.name)
            current = self._nodes.get(current.parent_id)
        return "/".join(reversed(parts))

    def _entry(self, node: _Node) -> ProviderEntry:
        return ProviderEntry(
            id=node.id,
            name=node.name,
            path=self._path(node),
            is_folder=node.is_folder,
            size=None if node.is_folder else len(node.data),
            modified_at=node.modified_at,
            fingerprint=(
                content_fingerprint(node.data)
                if self._fingerprints and not node.is_folder
                else None
            ),
            web_url=f"memory://{self._name}/{node.id}",
        )

    # === ProviderAdapter ===

    def stat_file(self, item_id: str) -> ProviderEntry:
        self._maybe_fail(item_id)
        with self._lock:
            return self._entry(self._require(item_id))

    def list_children(self, folder_id: str) -> list[ProviderEntry]:
        self._maybe_fail(folder_id)
        with self._lock:
            self._require_folder(folder_id)
            return [
                self._entry(node) for node in self._nodes.values() if node.parent_id == folder_id
            ]

    def read_file(self, item_id: str) -> Iterator[bytes]:
        self._maybe_fail(item_id)
        with self._lock:
            data = self._require(item_id).data
        for offset in range(0, len(data), CHUNK_SIZE):
            yield data[offset : offset + CHUNK_SIZE]

    def write_file(
        self,
        folder_id: str,
        name: str,
        chunks: Iterable[bytes],
        existing_item_id: str | None = None,
    ) -> ProviderEntry:
        self._maybe_fail(name)
        data = b"".join(chunks)
        with self._lock:
            self._require_folder(folder_id)
            node = self._nodes.get(existing_item_id) if existing_item_id else None
            if node is None or node.parent_id != folder_id:
                node = self._child_named(folder_id, name)
            if node is None:
                node = _Node(
                    id=f"{self._name}-{next(self._ids)}",
                    name=name,
                    parent_id=folder_id,
                    is_folder=False,
                )
                self._nodes[node.id] = node
            node.name = name
            node.data = data
            node.modified_at = self._clock.now()
            return self._entry(node)

    def ensure_folder(self, parent_id: str, name: str) -> ProviderEntry:
        with self._lock:
            self._require_folder(parent_id)
            node = self._child_named(parent_id, name)
            if node is None:
                node = _Node(
                    id=f"{self._name}-{next(self._ids)}",
                    name=name,
                    parent_id=parent_id,
                    is_folder=True,
                    modified_at=self._clock.now(),
                )
                self._nodes[node.id] = node
            elif not node.is_folder:
                raise PermanentProviderError(
                    f"{self._name}: a file named {name} already exists", ErrorCode.UNSUPPORTED
                )
            return self._entry(node)

    def delete_file(self, item_id: str) -> None:
        self._maybe_fail(item_id)
        with self._lock:
            self._nodes.pop(item_id, None)


class LocalFSProvider(ProviderAdapter):
    """Provider backed by a local directory.

    Item ids are POSIX paths relative to the root; the root itself is
    ``ROOT_ID``.
    """

    def __init__(self, name: str, base_path: Path | str, hash_files: bool = True) -> None:
        """Initialize the provider.

        Args:
            name: Provider name.
            base_path: Directory holding the provider's files.
            hash_files: Whether to expose SHA-256 fingerprints.
        """
        self._name = name
        self._base_path = Path(base_path).resolve()
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._hash_files = hash_files

    @property
    def name(self) -> str:
        return self._name

    @property
    def location(self) -> str:
        """Return the local storage path."""
        return f"Local filesystem: {self._base_path}"

    def _resolve(self, item_id: str) -> Path:
        """Map an item id to a path inside the root."""
        if item_id in (ROOT_ID, "", "."):
            return self._base_path
        path = (self._base_path / item_id).resolve()
        if not path.is_relative_to(self._base_path):
            raise PermanentProviderError(
                f"{self._name}: path escapes provider root: {item_id}",
                ErrorCode.PERMISSION_DENIED,
            )
        return path

    def _child(self, folder: Path, name: str) -> Path:
        if not name or "/" in name or name in (".", ".."):
            raise PermanentProviderError(
                f"{self._name}: invalid item name: {name!r}", ErrorCode.UNSUPPORTED
            )
        return folder / name

    def _item_id(self, path: Path) -> str:
        if path == self._base_path:
            return ROOT_ID
        return path.relative_to(self._base_path).as_posix()

    def _hash(self, path: Path) -> str:
        digest = hashlib.sha256()
        with path.open("rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                digest.update(chunk)
        return digest.hexdigest()

    def _entry(self, path: Path) -> ProviderEntry:
        try:
            stat = path.stat()
        except FileNotFoundError as e:
            raise ProviderNotFound(f"{self._name}: item not found: {self._item_id(path)}") from e
        is_folder = path.is_dir()
        item_id = self._item_id(path)
        return ProviderEntry(
            id=item_id,
            name=path.name,
            path="" if item_id == ROOT_ID else item_id,
            is_folder=is_folder,
            size=None if is_folder else stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            fingerprint=self._hash(path) if self._hash_files and not is_folder else None,
            web_url=path.as_uri(),
        )

    def stat_file(self, item_id: str) -> ProviderEntry:
        return self._entry(self._resolve(item_id))

    def list_children(self, folder_id: str) -> list[ProviderEntry]:
        folder = self._resolve(folder_id)
        if not folder.exists():
            raise ProviderNotFound(f"{self._name}: folder not found: {folder_id}")
        if not folder.is_dir():
            raise PermanentProviderError(
                f"{self._name}: not a folder: {folder_id}", ErrorCode.UNSUPPORTED
            )
        return [self._entry(child) for child in sorted(folder.iterdir())]

    def read_file(self, item_id: str) -> Iterator[bytes]:
        path = self._resolve(item_id)
        try:
            f = path.open("rb")
        except FileNotFoundError as e:
            raise ProviderNotFound(f"{self._name}: file not found: {item_id}") from e
        except PermissionError as e:
            raise PermanentProviderError(str(e), ErrorCode.PERMISSION_DENIED) from e
        with f:
            while chunk := f.read(CHUNK_SIZE):
                yield chunk

    def write_file(
        self,
        folder_id: str,
        name: str,
        chunks: Iterable[bytes],
        existing_item_id: str | None = None,
    ) -> ProviderEntry:
        folder = self._resolve(folder_id)
        if not folder.is_dir():
            raise ProviderNotFound(f"{self._name}: folder not found: {folder_id}")
        target = self._child(folder, name)

        # Write to a temp file in the same directory, then rename into place
        try:
            fd, tmp_name = tempfile.mkstemp(dir=folder, prefix=".cloudrelay-")
        except OSError as e:
            raise classify_os_error(e) from e
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in chunks:
                    f.write(chunk)
            os.replace(tmp_name, target)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise classify_os_error(e) from e
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        if existing_item_id and existing_item_id != self._item_id(target):
            self._unlink(self._resolve(existing_item_id))
        return self._entry(target)

    def ensure_folder(self, parent_id: str, name: str) -> ProviderEntry:
        parent = self._resolve(parent_id)
        if not parent.is_dir():
            raise ProviderNotFound(f"{self._name}: folder not found: {parent_id}")
        folder = self._child(parent, name)
        try:
            folder.mkdir(exist_ok=True)
        except FileExistsError as e:
            raise PermanentProviderError(
                f"{self._name}: a file named {name} already exists", ErrorCode.UNSUPPORTED
            ) from e
        except OSError as e:
            raise classify_os_error(e) from e
        return self._entry(folder)

    def delete_file(self, item_id: str) -> None:
        path = self._resolve(item_id)
        if path.is_dir():
            raise PermanentProviderError(
                f"{self._name}: refusing to delete folder {item_id}", ErrorCode.UNSUPPORTED
            )
        self._unlink(path)

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise classify_os_error(e) from e


ProviderFactory = Callable[[str], ProviderAdapter]


class ProviderRegistry:
    """Resolves (provider name, user) to an adapter instance.

    Factories receive the user id and are called once per user; the adapter
    is cached afterwards.
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._adapters: dict[tuple[str, str], ProviderAdapter] = {}
        self._lock = threading.Lock()

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register a per-user adapter factory."""
        with self._lock:
            self._factories[name] = factory
            for key in [k for k in self._adapters if k[0] == name]:
                del self._adapters[key]

    def register_shared(self, adapter: ProviderAdapter) -> None:
        """Register one adapter instance shared by every user."""
        self.register(adapter.name, lambda _user_id: adapter)

    def names(self) -> list[str]:
        """Registered provider names."""
        with self._lock:
            return sorted(self._factories)

    def get(self, name: str, user_id: str) -> ProviderAdapter:
        """Adapter for ``name`` acting for ``user_id``.

        Raises:
            PermanentProviderError: If no such provider is registered.
        """
        with self._lock:
            key = (name, user_id)
            adapter = self._adapters.get(key)
            if adapter is None:
                factory = self._factories.get(name)
                if factory is None:
                    raise PermanentProviderError(f"Unknown provider: {name}", ErrorCode.UNSUPPORTED)
                adapter = factory(user_id)
                self._adapters[key] = adapter
            return adapter


def local_registry(root: Path | str) -> ProviderRegistry:
    """Registry with one LocalFSProvider per subdirectory of ``root``.

    Each user gets their own tree under ``root/<provider>/<user_id>``.
    """
    registry = ProviderRegistry()
    base = Path(root)
    if not base.is_dir():
        return registry
    for child in sorted(base.iterdir()):
        if not child.is_dir():
            continue

        def factory(user_id: str, _name: str = child.name, _path: Path = child) -> ProviderAdapter:
            if not user_id or "/" in user_id or user_id in (".", ".."):
                raise PermanentProviderError(
                    f"Invalid user id for local provider: {user_id!r}", ErrorCode.PERMISSION_DENIED
                )
            return LocalFSProvider(_name, _path / user_id)

        registry.register(child.name, factory)
    return registry
