"""Kopia repository server API client and response types.

Only the two read endpoints snapdav needs are covered:

    GET /api/v1/snapshots?userName=&host=&path=   snapshot list
    GET /api/v1/objects/{id}                      directory listing (JSON) or file body

Every request goes through a Pacer, so transient failures and 5xx
responses are retried until the request context ends.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

import requests

from backend import BackendError, ObjectNotFoundError
from context import Context
from pacer import Pacer

logger = logging.getLogger(__name__)

SNAPSHOTS_PATH = "/api/v1/snapshots"
OBJECTS_PATH = "/api/v1/objects/{id}"

_FRACTION = re.compile(r"\.(\d+)")


class ApiError(BackendError):
    """The server answered with a non-retryable error status or a malformed body."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def parse_time(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as sent by the server (nanosecond precision, 'Z' suffix)."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # datetime only keeps microseconds
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ApiError(f"Bad timestamp {value!r}: {e}") from e


def is_json(response: requests.Response) -> bool:
    return "json" in response.headers.get("Content-Type", "")


@dataclass
class Summary:
    size: int = 0
    files: int = 0
    symlinks: int = 0
    dirs: int = 0
    max_time: datetime | None = None
    num_failed: int = 0

    @classmethod
    def from_json(cls, data: dict | None) -> "Summary":
        data = data or {}
        return cls(
            size=data.get("size", 0),
            files=data.get("files", 0),
            symlinks=data.get("symlinks", 0),
            dirs=data.get("dirs", 0),
            max_time=parse_time(data.get("maxTime")),
            num_failed=data.get("numFailed", 0),
        )


@dataclass
class Snapshot:
    """One backup run as reported by the server."""
    id: str
    root_id: str
    description: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    summary: Summary = field(default_factory=Summary)
    retention: list[str] = field(default_factory=list)
    pins: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> "Snapshot":
        return cls(
            id=data.get("id", ""),
            root_id=data.get("rootID", ""),
            description=data.get("description", ""),
            start_time=parse_time(data.get("startTime")),
            end_time=parse_time(data.get("endTime")),
            summary=Summary.from_json(data.get("summary")),
            retention=list(data.get("retention") or []),
            pins=list(data.get("pins") or []),
        )


@dataclass
class ListingItem:
    """One row of a directory object's listing."""
    name: str
    type: str
    obj: str
    size: int = 0
    mode: str = ""
    mtime: datetime | None = None
    summary: Summary = field(default_factory=Summary)

    @property
    def is_dir(self) -> bool:
        return self.type == "d"

    @classmethod
    def from_json(cls, data: dict) -> "ListingItem":
        if not isinstance(data, dict):
            raise ApiError(f"Listing entry is not an object: {data!r}")
        try:
            return cls(
                name=data["name"],
                type=data.get("type", ""),
                obj=data["obj"],
                size=data.get("size", 0),
                mode=data.get("mode", ""),
                mtime=parse_time(data.get("mtime")),
                summary=Summary.from_json(data.get("summ")),
            )
        except KeyError as e:
            raise ApiError(f"Listing entry missing field {e}") from e


class ObjectStream:
    """Readable byte stream over a file object's body. Close it (or use ``with``) when done."""

    def __init__(self, response: requests.Response):
        self._response = response
        self._raw = response.raw
        self._raw.decode_content = True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return self._raw.read()
        return self._raw.read(size)

    def close(self):
        self._response.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class KopiaClient:
    """Thin client for the Kopia repository server's read API."""

    def __init__(
        self,
        url: str,
        *,
        auth: tuple[str, str] | None = None,
        verify: bool = True,
        pacer: Pacer | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = url.rstrip("/")
        self.pacer = pacer or Pacer()
        self._session = session or requests.Session()
        if auth is not None:
            self._session.auth = auth
        self._session.verify = verify

    def close(self):
        self._session.close()

    def _get(self, ctx: Context, path: str, params: dict | None = None) -> requests.Response:
        url = self.base_url + path

        def attempt():
            remaining = ctx.remaining()
            timeout = None if remaining is None else max(remaining, 0.001)
            response = self._session.get(url, params=params, stream=True, timeout=timeout)
            if is_json(response):
                # Read JSON bodies inside the retry loop; file bodies stay streaming.
                try:
                    response.content
                except requests.RequestException:
                    response.close()
                    raise
            return response

        response = self.pacer.call(ctx, attempt)
        if response.status_code >= 400:
            response.close()
            if response.status_code == 404:
                raise ObjectNotFoundError(f"Not found: {path}")
            raise ApiError(f"GET {path}: HTTP {response.status_code}", response.status_code)
        return response

    def _json(self, response: requests.Response, what: str) -> dict:
        try:
            if not is_json(response):
                raise ApiError(f"{what}: expected JSON, got {response.headers.get('Content-Type')!r}")
            try:
                data = response.json()
            except ValueError as e:
                raise ApiError(f"{what}: malformed JSON: {e}") from e
        finally:
            response.close()
        if not isinstance(data, dict):
            raise ApiError(f"{what}: expected a JSON object")
        return data

    def list_snapshots(self, ctx: Context, user: str, host: str, path: str) -> list[Snapshot]:
        """Return the snapshots of one source, oldest first."""
        response = self._get(ctx, SNAPSHOTS_PATH, {"userName": user, "host": host, "path": path})
        data = self._json(response, "snapshot list")
        snapshots = [Snapshot.from_json(s) for s in data.get("snapshots") or []]
        logger.debug("Fetched %d snapshots for %s@%s:%s", len(snapshots), user, host, path)
        return snapshots

    def get_object(self, ctx: Context, object_id: str) -> requests.Response:
        """Fetch an object. A JSON listing arrives fully read; a file body is left streaming."""
        return self._get(ctx, OBJECTS_PATH.format(id=object_id))

    def read_listing(self, response: requests.Response, object_id: str) -> list[ListingItem]:
        """Decode a directory object's response into its listing rows."""
        data = self._json(response, f"object {object_id}")
        entries = data.get("entries") or []
        if not isinstance(entries, list):
            raise ApiError(f"object {object_id}: entries is not a list")
        return [ListingItem.from_json(item) for item in entries]

    def open_object(self, ctx: Context, object_id: str) -> ObjectStream:
        return ObjectStream(self.get_object(ctx, object_id))
