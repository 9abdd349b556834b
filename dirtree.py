"""Lazily fetched directory tree of one snapshot.

Listings are fetched from the server the first time a path is walked and
kept for the lifetime of the tree: snapshot contents never change, so a
fetched listing is never refreshed.
"""

import enum
import logging
import posixpath
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from backend import (
    DirectoryNotFoundError,
    IsDirectoryError,
    IsFileError,
    ObjectNotFoundError,
    clean_path,
)
from context import Context
from kopia_api import KopiaClient, ListingItem, is_json

logger = logging.getLogger(__name__)

_WAIT_POLL = 0.1


class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "dir"


@dataclass(frozen=True)
class DirectoryEntry:
    """A file or directory inside the snapshot.

    ``path`` is the full normalized path from the snapshot root.
    """
    kind: EntryKind
    id: str
    name: str
    path: str
    size: int = 0
    mod_time: datetime | None = None

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @classmethod
    def from_item(cls, parent: str, item: ListingItem) -> "DirectoryEntry":
        if item.is_dir:
            kind, size = EntryKind.DIRECTORY, item.summary.size
        else:
            kind, size = EntryKind.FILE, item.size
        return cls(
            kind=kind,
            id=item.obj,
            name=item.name,
            path=posixpath.join(parent, item.name),
            size=size,
            mod_time=item.mtime,
        )


def fetch_listing(ctx: Context, client: KopiaClient, path: str, object_id: str) -> tuple[DirectoryEntry, ...]:
    """Fetch the listing of the directory object at path. Does no caching.

    Raises IsFileError if the object turns out to be a file.
    """
    response = client.get_object(ctx, object_id)
    if not is_json(response):
        response.close()
        raise IsFileError(f"Is a file: /{path}")
    items = client.read_listing(response, object_id)
    return tuple(DirectoryEntry.from_item(path, item) for item in items)


class DirectoryTree:
    """Per-path cache of directory listings plus the path walk over it.

    ``resolve_root`` returns the snapshot's root object id; it is only called
    when the root listing is first needed. A path's slot is empty until its
    listing has been fetched and parsed in full, then it is filled once.
    Concurrent first listings of one path share a single fetch.
    """

    def __init__(self, client: KopiaClient, resolve_root: Callable[[Context], str]):
        self._client = client
        self._resolve_root = resolve_root
        self._listings: dict[str, tuple[DirectoryEntry, ...]] = {}
        self._gates: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def cached(self, path: str) -> tuple[DirectoryEntry, ...] | None:
        """Return the cached listing of path, or None if it has not been fetched."""
        return self._listings.get(clean_path(path))

    def list(self, ctx: Context, path: str) -> tuple[DirectoryEntry, ...]:
        """Return the entries of the directory at path, fetching it on first use."""
        path = clean_path(path)
        listing = self._listings.get(path)
        if listing is not None:
            return listing

        if path == "":
            return self._fill(ctx, path, self._resolve_root)

        try:
            entry = self.lookup(ctx, path)
        except ObjectNotFoundError as e:
            raise DirectoryNotFoundError(f"Directory not found: /{path}") from e
        if not entry.is_dir:
            raise IsFileError(f"Is a file: /{path}")
        return self._fill(ctx, path, lambda _ctx: entry.id)

    def lookup(self, ctx: Context, path: str) -> DirectoryEntry:
        """Return the entry at path by walking listings down from the root."""
        path = clean_path(path)
        parent, name = posixpath.split(path)
        entries = self.list(ctx, parent)
        if not name:
            raise IsDirectoryError("Is a directory: /")
        for entry in entries:
            if entry.name == name:
                return entry
        raise ObjectNotFoundError(f"Not found: /{path}")

    def _gate(self, path: str) -> threading.Lock:
        with self._lock:
            return self._gates.setdefault(path, threading.Lock())

    def _fill(self, ctx: Context, path: str, object_id: Callable[[Context], str]) -> tuple[DirectoryEntry, ...]:
        gate = self._gate(path)
        while True:
            remaining = ctx.remaining()
            if gate.acquire(timeout=_WAIT_POLL if remaining is None else min(remaining, _WAIT_POLL)):
                break
            ctx.check()
        try:
            listing = self._listings.get(path)
            if listing is None:
                listing = fetch_listing(ctx, self._client, path, object_id(ctx))
                self._listings[path] = listing
                logger.debug("Fetched %d entries for /%s", len(listing), path)
            return listing
        finally:
            gate.release()
