"""HTTP handlers for the module download protocol and a small router for them."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

from werkzeug.wrappers import Request, Response

from modproxy.mode import DownloadFile
from modproxy.protocol import ErrorKind, Protocol, ProtocolError, RevInfo

_log = logging.getLogger(__name__)

ROUTE_PARAMS_KEY = "modproxy.route_params"
NO_CACHE = "no-cache, no-store, must-revalidate"

PATH_LIST = "/{module:.+}/@v/list"
PATH_LATEST = "/{module:.+}/@latest"
PATH_VERSION_INFO = "/{module:.+}/@v/{version}.info"
PATH_VERSION_MODULE = "/{module:.+}/@v/{version}.mod"
PATH_VERSION_ZIP = "/{module:.+}/@v/{version}.zip"

Handler = Callable[[Request], Response]

_PARAM_RE = re.compile(r"\{(\w+)(?::([^}]+))?\}")


def _compile(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    pos = 0
    for m in _PARAM_RE.finditer(pattern):
        parts.append(re.escape(pattern[pos:m.start()]))
        parts.append(f"(?P<{m[1]}>{m[2] or '[^/]+'})")
        pos = m.end()
    parts.append(re.escape(pattern[pos:]))
    return re.compile("".join(parts))


@dataclass
class _Route:
    regex: re.Pattern[str]
    handler: Handler
    methods: frozenset[str] | None


class Router:
    """Matches request paths against ``{name:regex}`` patterns in registration order."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self._routes: list[_Route] = []

    def add(self, pattern: str, handler: Handler,
            methods: Iterable[str] | None = None) -> None:
        allowed = frozenset(m.upper() for m in methods) if methods else None
        self._routes.append(_Route(_compile(pattern), handler, allowed))

    def dispatch(self, request: Request) -> Response:
        path = request.path
        if self.prefix:
            if not path.startswith(self.prefix):
                return Response("404 page not found\n", status=404)
            path = path[len(self.prefix):] or "/"
        wrong_method = False
        for route in self._routes:
            m = route.regex.fullmatch(path)
            if m is None:
                continue
            if route.methods is not None and request.method not in route.methods:
                wrong_method = True
                continue
            request.environ[ROUTE_PARAMS_KEY] = m.groupdict()
            return route.handler(request)
        if wrong_method:
            return Response(status=405)
        return Response("404 page not found\n", status=404)

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        return self.dispatch(Request(environ))(environ, start_response)


@dataclass
class HandlerOptions:
    protocol: Protocol
    download_file: DownloadFile


def _params(request: Request) -> dict[str, str]:
    return request.environ.get(ROUTE_PARAMS_KEY, {})


def _status(err: BaseException) -> int:
    return int(err.kind) if isinstance(err, ProtocolError) else int(ErrorKind.INTERNAL)


def _log_error(op: str, err: BaseException, *expected: ErrorKind) -> None:
    level = logging.INFO if _status(err) in {int(k) for k in expected} else logging.ERROR
    _log.log(level, "%s: %s", op, err)


def _module_params(request: Request) -> tuple[str, str]:
    params = _params(request)
    mod, ver = params.get("module", ""), params.get("version", "")
    if not mod or not ver:
        raise ProtocolError("missing module or version", ErrorKind.BAD_REQUEST)
    return mod, ver


def get_redirect_url(base: str, download_path: str) -> str:
    """Join *download_path* onto the path of the *base* URL."""
    parts = urlsplit(base)
    joined = posixpath.normpath(parts.path + "/" + download_path)
    if joined.startswith("//"):
        joined = "/" + joined.lstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, joined, parts.query, parts.fragment))


def _redirect(request: Request, df: DownloadFile, mod: str) -> Response:
    try:
        url = get_redirect_url(df.url(mod), request.path)
    except ValueError as exc:
        _log.error("redirect: %s", exc)
        return Response(status=500)
    return Response(status=301, headers={"Location": url})


def list_handler(dp: Protocol, df: DownloadFile) -> Handler:
    """GET /module/@v/list"""
    def handle(request: Request) -> Response:
        mod = _params(request).get("module", "")
        if not mod:
            return Response(status=500)
        try:
            versions = dp.list(mod)
        except Exception as exc:
            _log_error("download.ListHandler", exc, ErrorKind.NOT_FOUND)
            return Response(status=_status(exc))
        return Response("\n".join(versions or []), content_type="text/plain; charset=utf-8")
    return handle


def _encode_rev(rev: RevInfo | None) -> str:
    if rev is None:
        return "null\n"
    stamp = rev.time.isoformat().replace("+00:00", "Z")
    return json.dumps({"Version": rev.version, "Time": stamp}) + "\n"


def latest_handler(dp: Protocol, df: DownloadFile) -> Handler:
    """GET /module/@latest"""
    def handle(request: Request) -> Response:
        mod = _params(request).get("module", "")
        if not mod:
            return Response(status=500)
        try:
            rev = dp.latest(mod)
        except Exception as exc:
            _log_error("download.LatestHandler", exc, ErrorKind.NOT_FOUND)
            return Response(status=_status(exc))
        return Response(_encode_rev(rev), content_type="application/json")
    return handle


def _bytes_handler(op: str, getter: Callable[[Protocol], Callable[[str, str], bytes]],
                   dp: Protocol, df: DownloadFile) -> Handler:
    def handle(request: Request) -> Response:
        try:
            mod, ver = _module_params(request)
        except ProtocolError as exc:
            _log_error(op, exc)
            return Response(status=_status(exc))
        try:
            data = getter(dp)(mod, ver)
        except Exception as exc:
            _log_error(op, exc, ErrorKind.NOT_FOUND, ErrorKind.REDIRECT)
            if _status(exc) == ErrorKind.REDIRECT:
                return _redirect(request, df, mod)
            return Response(status=_status(exc))
        return Response(data or b"")
    return handle


def info_handler(dp: Protocol, df: DownloadFile) -> Handler:
    """GET /module/@v/version.info"""
    return _bytes_handler("download.InfoHandler", lambda p: p.info, dp, df)


def module_handler(dp: Protocol, df: DownloadFile) -> Handler:
    """GET /module/@v/version.mod"""
    return _bytes_handler("download.VersionModuleHandler", lambda p: p.go_mod, dp, df)


def _size_of(obj: Any) -> int:
    size = getattr(obj, "size", 0)
    if callable(size):
        size = size()
    return int(size or 0)


def zip_handler(dp: Protocol, df: DownloadFile) -> Handler:
    """GET and HEAD /module/@v/version.zip"""
    op = "download.ZipHandler"

    def handle(request: Request) -> Response:
        try:
            mod, ver = _module_params(request)
        except ProtocolError as exc:
            _log_error(op, exc)
            return Response(status=_status(exc))
        try:
            archive = dp.zip(mod, ver)
        except Exception as exc:
            _log_error(op, exc, ErrorKind.NOT_FOUND, ErrorKind.REDIRECT)
            if _status(exc) == ErrorKind.REDIRECT:
                return _redirect(request, df, mod)
            return Response(status=_status(exc))
        try:
            size = _size_of(archive)
            if request.method == "HEAD":
                resp = Response(content_type="application/zip")
            else:
                resp = Response(archive.read(), content_type="application/zip")
            if size > 0:
                resp.headers["Content-Length"] = str(size)
            return resp
        finally:
            close = getattr(archive, "close", None)
            if close is not None:
                close()
    return handle


def _no_cache(handler: Handler) -> Handler:
    def handle(request: Request) -> Response:
        resp = handler(request)
        resp.headers["Cache-Control"] = NO_CACHE
        return resp
    return handle


def register_handlers(router: Router, opts: HandlerOptions | None) -> None:
    """Register every download protocol path on *router*."""
    if opts is None or opts.protocol is None:
        raise ValueError("handler options need a protocol")
    dp, df = opts.protocol, opts.download_file
    router.add(PATH_LIST, _no_cache(list_handler(dp, df)))
    router.add(PATH_LATEST, _no_cache(latest_handler(dp, df)), ["GET"])
    router.add(PATH_VERSION_INFO, info_handler(dp, df), ["GET"])
    router.add(PATH_VERSION_MODULE, module_handler(dp, df), ["GET"])
    router.add(PATH_VERSION_ZIP, zip_handler(dp, df), ["GET", "HEAD"])