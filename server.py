"""Read-only WebDAV server built on http.server."""

import html
import io
import logging
import shutil
import xml.etree.ElementTree as ET
from email.utils import format_datetime
from datetime import timezone
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from urllib.parse import unquote, quote, urlparse

import requests

from backend import (
    Backend,
    BackendError,
    CancelledError,
    IsFileError,
    NotFoundError,
    PermissionDeniedError,
    ResourceInfo,
)
from context import Context

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
SUPPORTED_PROPS = [
    "displayname",
    "getcontentlength",
    "getcontenttype",
    "resourcetype",
    "getlastmodified",
    "getetag",
]
EPOCH_HTTP_DATE = "Thu, 01 Jan 1970 00:00:00 GMT"
DEFAULT_REQUEST_TIMEOUT = 60.0
ALLOW = "OPTIONS, GET, HEAD, PROPFIND"


def _parse_path(raw: str) -> list[str]:
    """Parse a URL path into a list of segments. Handles decoding, slashes, dots."""
    decoded = unquote(raw)
    return [p for p in decoded.split("/") if p and p != "."]


def _to_href(path: list[str], is_dir: bool) -> str:
    """Convert a path list back to a URL-safe href string."""
    href = "/" + "/".join(quote(p, safe="") for p in path)
    if is_dir and not href.endswith("/"):
        href += "/"
    return href


def _http_date(info: ResourceInfo) -> str:
    if info.mod_time is None:
        return EPOCH_HTTP_DATE
    mod_time = info.mod_time
    if mod_time.tzinfo is None:
        mod_time = mod_time.replace(tzinfo=timezone.utc)
    return format_datetime(mod_time.astimezone(timezone.utc), usegmt=True)


def _build_response_element(href: str, info: ResourceInfo, include_props: list[str] | None = None) -> ET.Element:
    """Build a DAV:response element for a resource."""
    response = ET.Element(f"{{{DAV_NS}}}response")

    href_el = ET.SubElement(response, f"{{{DAV_NS}}}href")
    href_el.text = href

    propstat = ET.SubElement(response, f"{{{DAV_NS}}}propstat")
    prop = ET.SubElement(propstat, f"{{{DAV_NS}}}prop")

    props_to_report = include_props if include_props is not None else SUPPORTED_PROPS

    for pname in props_to_report:
        if pname == "displayname":
            el = ET.SubElement(prop, f"{{{DAV_NS}}}displayname")
            name = href.rstrip("/").rsplit("/", 1)[-1] or "/"
            el.text = unquote(name)
        elif pname == "getcontentlength":
            if not info.is_dir:
                el = ET.SubElement(prop, f"{{{DAV_NS}}}getcontentlength")
                el.text = str(info.size)
        elif pname == "getcontenttype":
            if not info.is_dir:
                el = ET.SubElement(prop, f"{{{DAV_NS}}}getcontenttype")
                el.text = info.content_type
        elif pname == "resourcetype":
            rt = ET.SubElement(prop, f"{{{DAV_NS}}}resourcetype")
            if info.is_dir:
                ET.SubElement(rt, f"{{{DAV_NS}}}collection")
        elif pname == "getlastmodified":
            el = ET.SubElement(prop, f"{{{DAV_NS}}}getlastmodified")
            el.text = _http_date(info)
        elif pname == "getetag":
            if info.etag:
                el = ET.SubElement(prop, f"{{{DAV_NS}}}getetag")
                el.text = f'"{info.etag}"'

    status = ET.SubElement(propstat, f"{{{DAV_NS}}}status")
    status.text = "HTTP/1.1 200 OK"

    return response


def _multistatus_xml(responses: list[ET.Element]) -> bytes:
    """Wrap response elements in a multistatus document and serialize."""
    ET.register_namespace("D", DAV_NS)
    ms = ET.Element(f"{{{DAV_NS}}}multistatus")
    for r in responses:
        ms.append(r)

    buf = io.BytesIO()
    tree = ET.ElementTree(ms)
    tree.write(buf, xml_declaration=True, encoding="utf-8")
    return buf.getvalue()


def _parse_propfind_body(body: bytes) -> list[str] | None:
    """Parse a PROPFIND request body to determine requested properties.

    Returns None for allprop (or empty body), or a list of property local names.
    """
    if not body or not body.strip():
        return None

    root = ET.fromstring(body)
    if root.find(f"{{{DAV_NS}}}allprop") is not None:
        return None

    prop_el = root.find(f"{{{DAV_NS}}}prop")
    if prop_el is None:
        return None

    props = []
    for child in prop_el:
        tag = child.tag
        if tag.startswith(f"{{{DAV_NS}}}"):
            tag = tag[len(f"{{{DAV_NS}}}"):]
        props.append(tag)
    return props


class WebDAVHandler(BaseHTTPRequestHandler):
    """HTTP request handler for read-only WebDAV."""

    backend: Backend
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send(self, status: int, body: bytes, content_type: str, include_body: bool = True):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if include_body:
            self.wfile.write(body)

    def _context(self) -> Context:
        return Context(self.request_timeout)

    def _request_path(self) -> list[str]:
        return _parse_path(urlparse(self.path).path)

    def _try(self, fn, include_body: bool = True):
        """Call fn(), returning its result. On backend errors, send an error response and return None."""
        try:
            return fn()
        except (NotFoundError, IsFileError):
            self._send(404, b"Not Found", "text/plain", include_body)
        except PermissionDeniedError as e:
            self._send(403, str(e).encode(), "text/plain", include_body)
        except CancelledError as e:
            self._send(504, str(e).encode(), "text/plain", include_body)
        except BackendError as e:
            self._send(500, str(e).encode(), "text/plain", include_body)
        except requests.RequestException as e:
            logger.warning("Upstream request for %s failed: %s", self.path, e)
            self._send(502, b"Bad Gateway", "text/plain", include_body)
        return None

    def do_OPTIONS(self):
        self.send_response(200)
        self.send_header("Allow", ALLOW)
        self.send_header("DAV", "1")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):
        self._handle_get(include_body=True)

    def do_HEAD(self):
        self._handle_get(include_body=False)

    def _handle_get(self, include_body: bool):
        path = self._request_path()
        rel = "/".join(path)
        ctx = self._context()

        info = self._try(lambda: self.backend.info(rel, ctx), include_body)
        if info is None:
            return

        if info.is_dir:
            children = self._try(lambda: self.backend.list_info(rel, ctx), include_body)
            if children is None:
                return
            dir_name = html.escape("/" + rel)
            lines = [f"<html><head><title>{dir_name}</title></head><body>"]
            lines.append(f"<h1>{dir_name}</h1><ul>")
            if path:
                lines.append('<li><a href="../">..</a></li>')
            for name, child_info in children:
                href = quote(name, safe="") + ("/" if child_info.is_dir else "")
                lines.append(f'<li><a href="{href}">{html.escape(name)}</a></li>')
            lines.append("</ul></body></html>")
            body = "\n".join(lines).encode("utf-8")
            return self._send(200, body, "text/html; charset=utf-8", include_body)

        if not include_body:
            self.send_response(200)
            self.send_header("Content-Type", info.content_type)
            self.send_header("Content-Length", str(info.size))
            self.send_header("Last-Modified", _http_date(info))
            self.end_headers()
            return

        stream = self._try(lambda: self.backend.open(rel, ctx))
        if stream is None:
            return
        with stream:
            self.send_response(200)
            self.send_header("Content-Type", info.content_type)
            self.send_header("Content-Length", str(info.size))
            self.send_header("Last-Modified", _http_date(info))
            self.end_headers()
            shutil.copyfileobj(stream, self.wfile)

    def do_PROPFIND(self):
        path = self._request_path()
        rel = "/".join(path)
        depth = self.headers.get("Depth", "1")
        ctx = self._context()

        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length) if content_length > 0 else b""
        try:
            requested_props = _parse_propfind_body(body)
        except ET.ParseError:
            return self._send(400, b"Bad Request", "text/plain")

        info = self._try(lambda: self.backend.info(rel, ctx))
        if info is None:
            return

        responses = []
        responses.append(_build_response_element(_to_href(path, info.is_dir), info, requested_props))

        if info.is_dir and depth != "0":
            children = self._try(lambda: self.backend.list_info(rel, ctx))
            if children is None:
                return

            for name, child_info in children:
                child_path = path + [name]
                responses.append(_build_response_element(
                    _to_href(child_path, child_info.is_dir), child_info, requested_props
                ))

                if depth == "infinity" and child_info.is_dir:
                    self._propfind_recurse(child_path, responses, requested_props, ctx)

        xml_bytes = _multistatus_xml(responses)
        self._send(207, xml_bytes, "application/xml; charset=utf-8")

    def _propfind_recurse(self, dir_path: list[str], responses: list, requested_props, ctx: Context):
        """Recursively add PROPFIND responses for all descendants."""
        try:
            children = self.backend.list_info("/".join(dir_path), ctx)
        except (NotFoundError, IsFileError):
            return
        for name, child_info in children:
            child_path = dir_path + [name]
            responses.append(_build_response_element(
                _to_href(child_path, child_info.is_dir), child_info, requested_props
            ))
            if child_info.is_dir:
                self._propfind_recurse(child_path, responses, requested_props, ctx)

    def _method_not_allowed(self):
        self.send_response(405)
        self.send_header("Allow", ALLOW)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _mutate(self, fn):
        """Hand a mutation to the backend, which refuses it."""
        length = int(self.headers.get("Content-Length", 0))
        if length > 0:
            self.rfile.read(length)
        rel = "/".join(self._request_path())
        if self._try(lambda: fn(rel) or True):
            self._send(204, b"", "text/plain")

    def do_PUT(self):
        self._mutate(lambda rel: self.backend.put(rel, None))

    def do_DELETE(self):
        self._mutate(self.backend.remove)

    def do_MKCOL(self):
        self._mutate(self.backend.mkdir)

    def do_PROPPATCH(self):
        self._mutate(lambda rel: self.backend.update(rel, None))

    do_MOVE = do_DELETE
    do_COPY = do_PUT

    do_LOCK = lambda self: self._method_not_allowed()
    do_UNLOCK = lambda self: self._method_not_allowed()
    do_POST = lambda self: self._method_not_allowed()
    do_PATCH = lambda self: self._method_not_allowed()


def make_server(
    backend: Backend,
    host: str = "localhost",
    port: int = 8080,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> ThreadingHTTPServer:
    """Create a WebDAV server for the given backend."""
    handler_class = type("Handler", (WebDAVHandler,), {
        "backend": backend,
        "request_timeout": request_timeout,
    })
    return ThreadingHTTPServer((host, port), handler_class)
