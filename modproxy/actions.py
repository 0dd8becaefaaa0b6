"""Auxiliary proxy endpoints: auth, sumdb passthrough, index, catalog and health."""

from __future__ import annotations

import hmac
import json
import logging
import mimetypes
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable
from urllib.parse import SplitResult, urlsplit

from werkzeug.wrappers import Request, Response

from modproxy.mode import matches_pattern
from modproxy.protocol import ErrorKind, ProtocolError

_log = logging.getLogger(__name__)

Handler = Callable[[Request], Response]

DEFAULT_PAGE_SIZE = 1000
DEFAULT_INDEX_LIMIT = 2000
READINESS_MODULE = "example.com/readiness"

_BASIC_AUTH_EXCLUDED = re.compile(r"^/(health|ready)z$")
_RFC3339 = re.compile(
    r"\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})")
_INT = re.compile(r"[+-]?\d+")


@dataclass
class IndexLine:
    path: str
    version: str
    timestamp: datetime

    def to_json(self) -> str:
        stamp = self.timestamp.isoformat().replace("+00:00", "Z")
        return json.dumps({"Path": self.path, "Version": self.version, "Timestamp": stamp})


def _status(err: BaseException) -> int:
    return int(err.kind) if isinstance(err, ProtocolError) else int(ErrorKind.INTERNAL)


def check_auth(request: Request, user: str, password: str) -> bool:
    """Compare the request's basic credentials with the expected ones in constant time."""
    auth = request.authorization
    if auth is None or auth.type != "basic":
        return False
    given_user = (auth.username or "").encode()
    given_pass = (auth.password or "").encode()
    if not hmac.compare_digest(user.encode(), given_user):
        return False
    return hmac.compare_digest(password.encode(), given_pass)


def basic_auth(user: str, password: str) -> Callable[[Handler], Handler]:
    """Middleware requiring basic auth on every path except the health probes."""
    def middleware(handler: Handler) -> Handler:
        def handle(request: Request) -> Response:
            if not _BASIC_AUTH_EXCLUDED.match(request.path) and \
                    not check_auth(request, user, password):
                return Response(status=401, headers={
                    "WWW-Authenticate": 'Basic realm="basic auth required"'})
            return handler(request)
        return handle
    return middleware


def no_sum_wrapper(handler: Handler, patterns: Iterable[str]) -> Handler:
    """Answer 403 to sumdb lookups of modules matching any of *patterns*."""
    patterns = list(patterns)

    def handle(request: Request) -> Response:
        if request.path.startswith("/lookup/"):
            name = request.path[len("/lookup/"):]
            if any(matches_pattern(p, name) for p in patterns):
                return Response(status=403)
        return handler(request)
    return handle


def sumdb_proxy(url: str | SplitResult, nosum_patterns: Iterable[str] | None) -> Handler:
    """Forward requests to the checksum database at *url*, keeping the request path."""
    target = urlsplit(url) if isinstance(url, str) else url

    def handle(request: Request) -> Response:
        dest = f"{target.scheme}://{target.netloc}{request.path}"
        if request.query_string:
            dest += "?" + request.query_string.decode("latin-1")
        body = request.get_data() or None
        upstream = urllib.request.Request(dest, data=body, method=request.method)
        for key in ("Accept", "Content-Type", "User-Agent"):
            if key in request.headers:
                upstream.add_header(key, request.headers[key])
        try:
            with urllib.request.urlopen(upstream) as resp:
                status, headers, data = resp.status, resp.headers, resp.read()
        except urllib.error.HTTPError as exc:
            status, headers, data = exc.code, exc.headers, exc.read()
        except OSError as exc:
            _log.error("sumdb proxy: %s", exc)
            return Response(status=502)
        out = Response(data, status=status)
        if headers.get("Content-Type"):
            out.headers["Content-Type"] = headers["Content-Type"]
        return out

    patterns = list(nosum_patterns or [])
    return no_sum_wrapper(handle, patterns) if patterns else handle


def get_index_lines(request: Request, indexer: Any) -> list[IndexLine]:
    """Read ``limit`` and ``since`` from the query and fetch index lines."""
    op = "actions.IndexHandler"
    limit = DEFAULT_INDEX_LIMIT
    since = datetime(1, 1, 1, tzinfo=timezone.utc)
    limit_str = request.args.get("limit", "")
    if limit_str:
        if not _INT.fullmatch(limit_str) or int(limit_str) <= 0:
            raise ProtocolError(f"invalid limit {limit_str!r}", ErrorKind.BAD_REQUEST, op=op)
        limit = int(limit_str)
    since_str = request.args.get("since", "")
    if since_str:
        try:
            if not _RFC3339.fullmatch(since_str):
                raise ValueError(since_str)
            since = datetime.fromisoformat(since_str.upper().replace("Z", "+00:00"))
        except ValueError:
            raise ProtocolError(f"invalid since {since_str!r}",
                                ErrorKind.BAD_REQUEST, op=op) from None
    try:
        return list(indexer.lines(since, limit) or [])
    except ProtocolError:
        raise
    except Exception as exc:
        raise ProtocolError(str(exc), ErrorKind.INTERNAL, op=op) from exc


def index_handler(indexer: Any) -> Handler:
    """GET /index: one JSON document per line."""
    def handle(request: Request) -> Response:
        try:
            lines = get_index_lines(request, indexer)
        except ProtocolError as exc:
            _log.error("%s", exc)
            return Response(str(exc) + "\n", status=_status(exc),
                            content_type="text/plain; charset=utf-8")
        body = "".join(line.to_json() + "\n" for line in lines)
        return Response(body, content_type="application/json")
    return handle


def get_limit_from_param(param: str) -> int:
    """Parse a page size, defaulting to 1000 when empty; ValueError if not an integer."""
    if param == "":
        return DEFAULT_PAGE_SIZE
    if not _INT.fullmatch(param):
        raise ValueError(f"invalid page size {param!r}")
    return int(param)


def catalog_handler(storage: Any) -> Handler:
    """GET /catalog: a page of module/version pairs from storage."""
    catalog = getattr(storage, "catalog", None)

    def handle(request: Request) -> Response:
        if catalog is None:
            return Response(status=501)
        token = request.args.get("token", "")
        try:
            page_size = get_limit_from_param(request.args.get("pagesize", ""))
        except ValueError as exc:
            _log.error("%s", exc)
            return Response(status=500)
        try:
            mods, next_token = catalog(token, page_size)
        except Exception as exc:
            _log.error("actions.CatalogHandler: %s", exc)
            return Response(status=_status(exc))
        res: dict[str, Any] = {
            "modules": [{"module": m, "version": v} for m, v in mods or []]}
        if next_token:
            res["next"] = next_token
        return Response(json.dumps(res) + "\n", content_type="application/json")
    return handle


def health_handler(request: Request) -> Response:
    return Response(status=200)


def proxy_home_handler(request: Request) -> Response:
    return Response('"Welcome to the module proxy"')


def robots_handler(robots_file: str) -> Handler:
    """Serve the robots file from disk."""
    def handle(request: Request) -> Response:
        try:
            with open(robots_file, "rb") as fh:
                data = fh.read()
        except OSError:
            return Response("404 page not found\n", status=404)
        ctype = mimetypes.guess_type(robots_file)[0] or "text/plain"
        if ctype.startswith("text/"):
            ctype += "; charset=utf-8"
        return Response(data, content_type=ctype)
    return handle


def readiness_handler(storage: Any) -> Handler:
    """Report 200 when storage answers a list request, 500 otherwise."""
    def handle(request: Request) -> Response:
        try:
            storage.list(READINESS_MODULE)
        except Exception as exc:
            _log.error("readiness: %s", exc)
            return Response(status=500)
        return Response(status=200)
    return handle