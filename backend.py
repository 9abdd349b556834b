"""Base backend interface and the errors shared by every layer."""

import posixpath
from dataclasses import dataclass
from datetime import datetime


@dataclass
class ResourceInfo:
    """Metadata about a resource (file or directory)."""
    is_dir: bool
    size: int = 0
    content_type: str = "application/octet-stream"
    mod_time: datetime | None = None
    etag: str = ""


class BackendError(Exception):
    """Base error for backend operations."""
    pass


class NotFoundError(BackendError):
    """Resource does not exist."""
    pass


class DirectoryNotFoundError(NotFoundError):
    """A listing was requested for a path that is not a directory in the tree."""
    pass


class ObjectNotFoundError(NotFoundError):
    """No entry exists at the requested path."""
    pass


class SnapshotNotFoundError(NotFoundError):
    """No snapshot matched the configured specifier."""
    pass


class IsDirectoryError(BackendError):
    """File semantics were requested on a directory."""
    pass


class IsFileError(BackendError):
    """Directory semantics were requested on a file."""
    pass


class PointsToFileError(IsFileError):
    """The backend root named a file; the root was moved to its parent.

    The adjusted backend is available as ``backend`` so the caller can keep
    using it.
    """

    def __init__(self, message: str, backend=None):
        super().__init__(message)
        self.backend = backend


class PermissionDeniedError(BackendError):
    """The store is read-only."""
    pass


class CancelledError(BackendError):
    """The request context was cancelled or its deadline passed."""
    pass


def clean_path(path: str) -> str:
    """Normalize a path: collapse '.', '..' and repeated '/', strip leading and trailing '/'.

    The root is the empty string.
    """
    if not path:
        return ""
    path = posixpath.normpath(path).strip("/")
    return "" if path == "." else path


class Backend:
    """Abstract read-only filesystem interface.

    Paths are '/'-separated and relative to the backend root; '' (or '/')
    is the root, which is always a directory. Every method takes an optional
    request context bounding any remote work it does.
    """

    def info(self, path: str, ctx=None) -> ResourceInfo:
        """Return metadata for the resource at path."""
        raise NotImplementedError

    def list_info(self, path: str, ctx=None) -> list[tuple[str, ResourceInfo]]:
        """Return (name, info) pairs for the children of a directory."""
        base = clean_path(path)
        return [
            (name, self.info(posixpath.join(base, name), ctx))
            for name in self.list(path, ctx)
        ]

    def list(self, path: str, ctx=None) -> list[str]:
        """Return child names for a directory. Raises NotFoundError if not a directory."""
        raise NotImplementedError

    def open(self, path: str, ctx=None):
        """Return a readable binary stream over a file. Raises IsDirectoryError for directories."""
        raise NotImplementedError

    def get(self, path: str, ctx=None) -> bytes:
        """Return the content of a file."""
        with self.open(path, ctx) as stream:
            return stream.read()

    # Mutations. The store is immutable, so all of them are refused.

    def put(self, path: str, data, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot create {path}")

    def update(self, path: str, data, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot update {path}")

    def mkdir(self, path: str, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot create directory {path}")

    def rmdir(self, path: str, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot remove directory {path}")

    def remove(self, path: str, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot remove {path}")

    def set_mod_time(self, path: str, mod_time: datetime, ctx=None):
        raise PermissionDeniedError(f"Read-only filesystem: cannot set modification time of {path}")
