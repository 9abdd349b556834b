"""CLI entry point for snapdav — read-only WebDAV server for Kopia snapshots."""

import argparse
import logging
import os
import sys

from backend import BackendError, PointsToFileError
from backend_kopia import KopiaBackend, KopiaOptions
from context import Context
from server import DEFAULT_REQUEST_TIMEOUT, make_server

logger = logging.getLogger("snapdav")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="snapdav — read-only WebDAV server for Kopia snapshots"
    )
    parser.add_argument("--url", default=os.getenv("KOPIA_URL", ""),
                        help="Kopia server URL, e.g. https://127.0.0.1:51515 (env KOPIA_URL)")
    parser.add_argument("--user", default=os.getenv("KOPIA_USER", ""),
                        help="Snapshot source user name (env KOPIA_USER)")
    parser.add_argument("--host-name", dest="source_host", default="",
                        help="Snapshot source host name")
    parser.add_argument("--path", default="/", help="Snapshot source path")
    parser.add_argument("--snapshot", default="latest",
                        help='"latest", "pin", or a snapshot/root object id')
    parser.add_argument("--root", default="", help="Subpath inside the snapshot to serve")
    parser.add_argument("--username", default=os.getenv("KOPIA_SERVER_USERNAME", ""),
                        help="Kopia server login (env KOPIA_SERVER_USERNAME)")
    parser.add_argument("--password", default=os.getenv("KOPIA_SERVER_PASSWORD", ""),
                        help="Kopia server password (env KOPIA_SERVER_PASSWORD)")
    parser.add_argument("--insecure", action="store_true",
                        help="Skip TLS certificate verification")
    parser.add_argument("--listen", default="localhost", help="Host to bind to")
    parser.add_argument("-p", "--port", type=int, default=8080, help="Port to listen on")
    parser.add_argument("--timeout", type=float, default=DEFAULT_REQUEST_TIMEOUT,
                        help="Per-request deadline in seconds")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def options_from_args(args: argparse.Namespace) -> KopiaOptions:
    return KopiaOptions(
        url=args.url,
        user=args.user,
        host=args.source_host,
        path=args.path,
        snapshot=args.snapshot,
        username=args.username,
        password=args.password,
        verify_tls=not args.insecure,
    )


def load_backend(options: KopiaOptions, root: str, timeout: float) -> KopiaBackend:
    """Create the backend, moving to the parent directory if root names a file."""
    try:
        return KopiaBackend(options, root, ctx=Context(timeout))
    except PointsToFileError as e:
        logger.warning("%s; serving its directory instead", e)
        return e.backend


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)

    try:
        options = options_from_args(args)
        backend = load_backend(options, args.root, args.timeout)
    except (BackendError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    server = make_server(backend, args.listen, args.port, request_timeout=args.timeout)
    print(f"Serving {backend} on http://{args.listen}:{args.port}/")
    print("Press Ctrl+C to stop.")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down.")
        server.shutdown()
    finally:
        backend.client.close()


if __name__ == "__main__":
    main()
