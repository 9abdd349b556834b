"""In-process fake of the Kopia server's read API, for tests.

Directory trees are nested dicts: dict values are directories, bytes/str
values are files. Every request path is counted in ``hits``.
"""

import collections
import itertools
import json
import threading
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse, parse_qs

MTIME = "2024-03-01T12:30:45.123456789Z"


def build_objects(tree: dict, objects: dict, counter=None) -> tuple[str, int]:
    """Register a directory tree's objects. Returns (directory object id, total size)."""
    counter = counter if counter is not None else itertools.count()
    entries = []
    total = 0
    for name, node in tree.items():
        if isinstance(node, dict):
            child_id, size = build_objects(node, objects, counter)
            entries.append({
                "name": name,
                "type": "d",
                "mode": "0755",
                "mtime": MTIME,
                "obj": child_id,
                "summ": {"size": size, "files": len(node), "dirs": 0},
            })
        else:
            data = node.encode("utf-8") if isinstance(node, str) else node
            oid = f"f{next(counter)}"
            objects[oid] = data
            size = len(data)
            entries.append({
                "name": name,
                "type": "f",
                "mode": "0644",
                "size": size,
                "mtime": MTIME,
                "obj": oid,
            })
        total += size
    dir_id = f"k{next(counter)}"
    objects[dir_id] = {"stream": "kopia:directory", "entries": entries, "summary": {"size": total}}
    return dir_id, total


def snapshot(id: str, root_id: str, retention=(), pins=()) -> dict:
    return {
        "id": id,
        "description": "",
        "startTime": "2024-03-01T12:00:00Z",
        "endTime": "2024-03-01T12:05:00Z",
        "rootID": root_id,
        "retention": list(retention),
        "pins": list(pins),
        "summary": {"size": 0, "files": 0, "dirs": 0},
    }


class FakeKopiaServer:
    """A Kopia server stand-in serving one tree under one or more snapshots."""

    def __init__(self, tree: dict, snapshots: list[dict] | None = None):
        self.objects: dict = {}
        self.root_id, _ = build_objects(tree, self.objects)
        self.snapshots = snapshots if snapshots is not None else [snapshot("s1", self.root_id)]
        self.hits = collections.Counter()
        self.queries: list[dict] = []
        self.fail_next: collections.Counter = collections.Counter()
        self.auth_header = None
        self._lock = threading.Lock()

        fake = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format, *args):
                pass

            def do_GET(self):
                fake._handle(self)

        self._server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self._server.server_address[1]}"

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=2)

    def object_id(self, *names: str) -> str:
        """Return the object id at a path of names below the root."""
        oid = self.root_id
        for name in names:
            listing = self.objects[oid]
            oid = next(e["obj"] for e in listing["entries"] if e["name"] == name)
        return oid

    def _handle(self, handler: BaseHTTPRequestHandler):
        parsed = urlparse(handler.path)
        with self._lock:
            self.hits[parsed.path] += 1
            self.auth_header = handler.headers.get("Authorization")
            failing = self.fail_next[parsed.path] > 0
            if failing:
                self.fail_next[parsed.path] -= 1
        if failing:
            return self._send(handler, 503, b"busy", "text/plain")

        if parsed.path == "/api/v1/snapshots":
            self.queries.append({k: v[0] for k, v in parse_qs(parsed.query, keep_blank_values=True).items()})
            body = json.dumps({"snapshots": self.snapshots, "unfilteredCount": len(self.snapshots)})
            return self._send(handler, 200, body.encode(), "application/json")

        prefix = "/api/v1/objects/"
        if parsed.path.startswith(prefix):
            oid = parsed.path[len(prefix):]
            obj = self.objects.get(oid)
            if obj is None:
                return self._send(handler, 404, b"not found", "text/plain")
            if isinstance(obj, dict):
                return self._send(handler, 200, json.dumps(obj).encode(), "application/json; charset=utf-8")
            return self._send(handler, 200, obj, "application/octet-stream")

        self._send(handler, 404, b"not found", "text/plain")

    def _send(self, handler, status: int, body: bytes, content_type: str):
        handler.send_response(status)
        handler.send_header("Content-Type", content_type)
        handler.send_header("Content-Length", str(len(body)))
        handler.end_headers()
        handler.wfile.write(body)
