"""The download protocol that answers the requests cmd/go makes to a module proxy."""

from __future__ import annotations

import re
import threading
import typing
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any, BinaryIO, Callable, TypeVar

from modproxy.mode import DownloadFile, Mode

_T = TypeVar("_T")


class ErrorKind(IntEnum):
    """Error categories, valued as the HTTP status they map to."""

    REDIRECT = 301
    BAD_REQUEST = 400
    NOT_FOUND = 404
    INTERNAL = 500
    NOT_IMPLEMENTED = 501


class ProtocolError(Exception):
    """An error carrying a kind, the operation that raised it and the module involved."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.INTERNAL, *,
                 op: str = "", module: str = "", version: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.op = op
        self.module = module
        self.version = version


def _kind_of(err: BaseException | None) -> ErrorKind:
    if isinstance(err, ProtocolError):
        return err.kind
    return ErrorKind.INTERNAL


def _wrap(op: str, err: BaseException) -> ProtocolError:
    wrapped = ProtocolError(str(err), _kind_of(err), op=op)
    wrapped.__cause__ = err
    return wrapped


def is_not_found_error(err: BaseException | None) -> bool:
    return err is not None and _kind_of(err) is ErrorKind.NOT_FOUND


def is_repo_not_found_error(err: BaseException | None) -> bool:
    return err is not None and "remote: Repository not found" in str(err)


@dataclass
class RevInfo:
    """A version and its commit time, as served by ``@latest`` and ``.info``."""

    version: str
    time: datetime


class Storage(typing.Protocol):
    """Module storage; missing entries raise an error of kind NOT_FOUND."""

    def list(self, mod: str) -> list[str]:
        """Return the stored versions of *mod*."""

    def info(self, mod: str, ver: str) -> bytes:
        """Return the stored .info document."""

    def go_mod(self, mod: str, ver: str) -> bytes:
        """Return the stored go.mod file."""

    def zip(self, mod: str, ver: str) -> BinaryIO:
        """Return a readable stream of the stored module zip."""


class Stasher(typing.Protocol):
    """Fetches a module version from upstream and saves it to storage."""

    def stash(self, mod: str, ver: str) -> str:
        """Save *mod* at *ver* and return the version actually saved."""


class UpstreamLister(typing.Protocol):
    """Lists the versions a module has upstream."""

    def list(self, mod: str) -> tuple[RevInfo | None, list[str]]:
        """Return the latest revision and all known versions of *mod*."""


class Protocol(ABC):
    """The download protocol, mirroring the HTTP requests cmd/go makes."""

    @abstractmethod
    def list(self, mod: str) -> list[str]:
        """GET /{module}/@v/list"""

    @abstractmethod
    def info(self, mod: str, ver: str) -> bytes:
        """GET /{module}/@v/{version}.info"""

    @abstractmethod
    def latest(self, mod: str) -> RevInfo | None:
        """GET /{module}/@latest"""

    @abstractmethod
    def go_mod(self, mod: str, ver: str) -> bytes:
        """GET /{module}/@v/{version}.mod"""

    @abstractmethod
    def zip(self, mod: str, ver: str) -> Any:
        """GET /{module}/@v/{version}.zip"""


Wrapper = Callable[[Protocol], Protocol]


class NetworkMode(StrEnum):
    STRICT = "strict"
    OFFLINE = "offline"
    FALLBACK = "fallback"


@dataclass
class Options:
    storage: Any
    stasher: Any = None
    lister: Any = None
    download_file: DownloadFile | None = None
    network_mode: str = NetworkMode.STRICT


_PSEUDO_VERSION_RE = re.compile(
    r"v[0-9]+\.(0\.0-|[0-9]+\.[0-9]+-([^+]*\.)?0\.)[0-9]{14}-[A-Za-z0-9]+(\+incompatible)?"
)


def remove_pseudo_versions(versions: list[str] | None) -> list[str]:
    """Drop pseudo-versions, keeping only tagged releases."""
    return [
        v for v in versions or []
        if not (v.count("-") >= 2 and _PSEUDO_VERSION_RE.fullmatch(v))
    ]


def union(list1: list[str] | None, list2: list[str] | None) -> list[str]:
    """Concatenate two version lists, dropping duplicates and keeping first order."""
    return list(dict.fromkeys([*(list1 or []), *(list2 or [])]))


class DownloadProtocol(Protocol):
    """Serves versions from storage, stashing from upstream when they are missing."""

    def __init__(self, download_file: DownloadFile, storage: Any, stasher: Any = None,
                 lister: Any = None, network_mode: str = NetworkMode.STRICT) -> None:
        self.download_file = download_file
        self.storage = storage
        self.stasher = stasher
        self.lister = lister
        self.network_mode = network_mode

    def list(self, mod: str) -> list[str]:
        op = "protocol.List"
        offline = self.network_mode == NetworkMode.OFFLINE
        with ThreadPoolExecutor(max_workers=2) as pool:
            stored = pool.submit(self.storage.list, mod)
            upstream = None if offline else pool.submit(self.lister.list, mod)
            s_err = stored.exception()
            go_err = upstream.exception() if upstream is not None else None

        # An unexpected storage error means the result might miss versions.
        if s_err is not None:
            raise _wrap(op, s_err) from s_err
        str_list = list(stored.result() or [])
        if offline:
            return str_list

        go_list: list[str] = []
        if upstream is not None and go_err is None:
            go_list = list(upstream.result()[1] or [])

        unexpected = go_err is not None and not is_repo_not_found_error(go_err)
        if unexpected and self.network_mode == NetworkMode.STRICT:
            raise _wrap(op, go_err) from go_err
        if unexpected and self.network_mode == NetworkMode.FALLBACK:
            return str_list

        repo_not_found = go_err is not None and is_repo_not_found_error(go_err)
        if repo_not_found and not str_list:
            raise ProtocolError(str(go_err), ErrorKind.NOT_FOUND, op=op,
                                module=mod) from go_err

        sem_vers = remove_pseudo_versions(str_list)
        # A deleted repo with only pseudo-versions saved still serves those.
        if repo_not_found and not sem_vers:
            return str_list
        # Otherwise pseudo-versions are hidden so @latest keeps being consulted.
        return union(go_list, sem_vers)

    def latest(self, mod: str) -> RevInfo | None:
        op = "protocol.Latest"
        if self.network_mode == NetworkMode.OFFLINE:
            raise ProtocolError("proxy is in offline mode, use /list endpoint",
                                ErrorKind.NOT_FOUND, op=op)
        try:
            rev, _ = self.lister.list(mod)
        except Exception as exc:
            raise _wrap(op, exc) from exc
        return rev

    def info(self, mod: str, ver: str) -> bytes:
        return self._get("protocol.Info", mod, ver, self.storage.info)

    def go_mod(self, mod: str, ver: str) -> bytes:
        return self._get("protocol.GoMod", mod, ver, self.storage.go_mod)

    def zip(self, mod: str, ver: str) -> Any:
        return self._get("protocol.Zip", mod, ver, self.storage.zip)

    def _get(self, op: str, mod: str, ver: str, getter: Callable[[str, str], _T]) -> _T:
        try:
            try:
                return getter(mod, ver)
            except Exception as exc:
                if not is_not_found_error(exc):
                    raise
            return self._process_download(mod, ver, lambda new_ver: getter(mod, new_ver))
        except Exception as exc:
            raise _wrap(op, exc) from exc

    def _stash_in_background(self, mod: str, ver: str) -> None:
        def run() -> None:
            try:
                self.stasher.stash(mod, ver)
            except Exception:
                pass

        threading.Thread(target=run, daemon=True).start()

    def _process_download(self, mod: str, ver: str, fetch: Callable[[str], _T]) -> _T | None:
        op = "protocol.processDownload"
        mode = self.download_file.match(mod)
        if mode == Mode.SYNC:
            try:
                new_ver = self.stasher.stash(mod, ver)
            except Exception as exc:
                raise _wrap(op, exc) from exc
            return fetch(new_ver)
        if mode == Mode.ASYNC:
            self._stash_in_background(mod, ver)
            raise ProtocolError("async: module not found", ErrorKind.NOT_FOUND, op=op)
        if mode == Mode.REDIRECT:
            raise ProtocolError("redirect", ErrorKind.REDIRECT, op=op)
        if mode == Mode.ASYNC_REDIRECT:
            self._stash_in_background(mod, ver)
            raise ProtocolError("async_redirect: module not found", ErrorKind.REDIRECT, op=op)
        if mode == Mode.NONE:
            raise ProtocolError("none", ErrorKind.NOT_FOUND, op=op)
        return None


def new_protocol(opts: Options, *wrappers: Wrapper) -> Protocol:
    """Build the download protocol, applying *wrappers* in order.

    The last wrapper is the outermost, so it is the first one a request hits.
    """
    if opts.download_file is None:
        opts.download_file = DownloadFile(Mode.SYNC)
    p: Protocol = DownloadProtocol(opts.download_file, opts.storage, opts.stasher,
                                   opts.lister, opts.network_mode)
    for wrap in wrappers:
        p = wrap(p)
    return p