"""Kopia backend — mount a snapshot from a Kopia repository server as a read-only filesystem.

The snapshot is chosen by ``KopiaOptions.snapshot``:
    "latest" (or "")  -> most recent complete snapshot
    "pin"             -> most recent complete snapshot with a pin
    anything else     -> the snapshot with that id or root object id
"""

import logging
import mimetypes
import posixpath
import time
from dataclasses import dataclass

from backend import (
    Backend,
    DirectoryNotFoundError,
    IsDirectoryError,
    ObjectNotFoundError,
    PointsToFileError,
    ResourceInfo,
    clean_path,
)
from context import Context
from dirtree import DirectoryEntry, DirectoryTree
from kopia_api import KopiaClient, ObjectStream
from snapshot import COOLDOWN, LATEST, SnapshotResolver

logger = logging.getLogger(__name__)


@dataclass
class KopiaOptions:
    """Connection and snapshot selection settings."""
    url: str
    user: str
    host: str = ""
    path: str = "/"
    snapshot: str = LATEST
    username: str = ""
    password: str = ""
    verify_tls: bool = True

    def __post_init__(self):
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"Kopia URL must start with http:// or https://, got {self.url!r}")
        if not self.user:
            raise ValueError("Kopia user is required")

    @property
    def auth(self) -> tuple[str, str] | None:
        if not self.username:
            return None
        return (self.username, self.password)


class KopiaBackend(Backend):
    """Expose one snapshot of a Kopia repository server as a read-only filesystem.

    ``root`` is a subpath inside the snapshot that acts as this backend's
    root. If it names a file, the root becomes the file's parent directory
    and the constructor raises PointsToFileError carrying the adjusted
    backend.
    """

    def __init__(
        self,
        options: KopiaOptions,
        root: str = "",
        *,
        client: KopiaClient | None = None,
        ctx: Context | None = None,
        cooldown: float = COOLDOWN,
        clock=time.monotonic,
    ):
        self.options = options
        self.root = clean_path(root)
        self.client = client or KopiaClient(options.url, auth=options.auth, verify=options.verify_tls)
        self.resolver = SnapshotResolver(
            self.client,
            options.user,
            options.host,
            options.path,
            options.snapshot,
            describe=self.describe,
            cooldown=cooldown,
            clock=clock,
        )
        self.tree = DirectoryTree(self.client, self.resolver.resolve_root)

        if self.root:
            try:
                entry = self.tree.lookup(ctx or Context(), self.root)
            except (ObjectNotFoundError, DirectoryNotFoundError):
                # The path may appear in a later snapshot.
                entry = None
            if entry is not None and not entry.is_dir:
                file_path = self.root
                self.root = posixpath.dirname(self.root)
                raise PointsToFileError(f"{self}: root points to file /{file_path}", backend=self)

    def describe(self) -> str:
        o = self.options
        return f"kopia[{o.user}@{o.host}:{o.path}/{self.root}]"

    __str__ = describe

    def _full(self, path: str) -> str:
        """Join path onto the root. Paths that climb out of the root do not exist."""
        path = clean_path(path)
        full = clean_path(posixpath.join(self.root, path))
        if full == ".." or full.startswith("../"):
            raise ObjectNotFoundError(f"Not found: /{path}")
        if self.root and full != self.root and not full.startswith(self.root + "/"):
            raise ObjectNotFoundError(f"Not found: /{path}")
        return full

    def relative_path(self, entry: DirectoryEntry) -> str:
        """Path of entry relative to this backend's root."""
        if not self.root:
            return entry.path
        return entry.path[len(self.root) + 1:]

    # Snapshot tree access. Paths are relative to the backend root.

    def list_entries(self, ctx: Context, path: str = "") -> tuple[DirectoryEntry, ...]:
        return self.tree.list(ctx, self._full(path))

    def lookup(self, ctx: Context, path: str) -> DirectoryEntry:
        return self.tree.lookup(ctx, self._full(path))

    def new_object(self, ctx: Context, path: str) -> DirectoryEntry:
        """Return the file entry at path. Raises IsDirectoryError for directories."""
        entry = self.lookup(ctx, path)
        if entry.is_dir:
            raise IsDirectoryError(f"Is a directory: /{entry.path}")
        return entry

    def open_entry(self, ctx: Context, entry: DirectoryEntry) -> ObjectStream:
        """Open a file entry's contents with a single whole-object GET."""
        if entry.is_dir:
            raise IsDirectoryError(f"Is a directory: /{entry.path}")
        logger.debug("Opening /%s (%s)", entry.path, entry.id)
        return self.client.open_object(ctx, entry.id)

    # Backend interface

    def _info(self, entry: DirectoryEntry) -> ResourceInfo:
        if entry.is_dir:
            return ResourceInfo(is_dir=True, size=entry.size, mod_time=entry.mod_time, etag=entry.id)
        ctype = mimetypes.guess_type(entry.name)[0] or "application/octet-stream"
        return ResourceInfo(
            is_dir=False,
            size=entry.size,
            content_type=ctype,
            mod_time=entry.mod_time,
            etag=entry.id,
        )

    def info(self, path: str, ctx: Context | None = None) -> ResourceInfo:
        ctx = ctx or Context()
        full = self._full(path)
        if not full:
            # Listing the root proves the snapshot exists.
            self.tree.list(ctx, "")
            return ResourceInfo(is_dir=True)
        return self._info(self.tree.lookup(ctx, full))

    def list_info(self, path: str, ctx: Context | None = None) -> list[tuple[str, ResourceInfo]]:
        return [(entry.name, self._info(entry)) for entry in self.list_entries(ctx or Context(), path)]

    def list(self, path: str, ctx: Context | None = None) -> list[str]:
        return [entry.name for entry in self.list_entries(ctx or Context(), path)]

    def open(self, path: str, ctx: Context | None = None) -> ObjectStream:
        ctx = ctx or Context()
        return self.open_entry(ctx, self.new_object(ctx, path))

