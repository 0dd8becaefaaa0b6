"""Download modes: what to do when a module version is not found in storage."""

from __future__ import annotations

import base64
import binascii
import json
import os
import re
from dataclasses import dataclass, field
from enum import StrEnum

DOWNLOAD_MODE_ERR = "download mode is not set"
INVALID_MODE_ERR = "unrecognized download mode: {}"


class Mode(StrEnum):
    """Behaviour for a module@version request that storage cannot answer."""

    SYNC = "sync"
    ASYNC = "async"
    REDIRECT = "redirect"
    ASYNC_REDIRECT = "async_redirect"
    NONE = "none"


_VALID_MODES = frozenset(m.value for m in Mode)


class ModeError(ValueError):
    """Raised for an unset, unknown or malformed download mode."""


def _as_mode(value: Mode | str) -> Mode | str:
    return Mode(value) if value in _VALID_MODES else value


@dataclass
class DownloadPath:
    """A mode, and optionally a redirect URL, for modules matching a pattern."""

    pattern: str
    mode: Mode | str
    download_url: str = ""


@dataclass
class DownloadFile:
    """A default mode plus per-pattern overrides, checked in order."""

    mode: Mode | str
    download_url: str = ""
    paths: list[DownloadPath] = field(default_factory=list)

    def validate(self) -> None:
        for p in self.paths:
            if p.mode not in _VALID_MODES:
                raise ModeError(f"unrecognized mode for {p.pattern}: {p.mode}")

    def match(self, mod: str) -> Mode | str:
        """Return the mode of the first matching pattern, or the default mode."""
        for p in self.paths:
            if matches_pattern(p.pattern, mod):
                return p.mode
        return self.mode

    def url(self, mod: str) -> str:
        """Return the redirect URL of the first matching pattern that has one."""
        for p in self.paths:
            if matches_pattern(p.pattern, mod) and p.download_url:
                return p.download_url
        return self.download_url


# ---- glob matching with path.Match semantics ----

def _class_char(pattern: str, i: int) -> tuple[str, int]:
    if i >= len(pattern):
        raise ValueError("unterminated character class")
    c = pattern[i]
    if c in "-]":
        raise ValueError("bad character class")
    if c == "\\":
        i += 1
        if i >= len(pattern):
            raise ValueError("trailing escape")
        c = pattern[i]
    return c, i + 1


def _glob_regex(pattern: str) -> str:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "\\":
            i += 1
            if i >= n:
                raise ValueError("trailing escape")
            out.append(re.escape(pattern[i]))
        elif c == "[":
            i += 1
            negate = i < n and pattern[i] == "^"
            if negate:
                i += 1
            items: list[str] = []
            while True:
                if i >= n:
                    raise ValueError("unterminated character class")
                if pattern[i] == "]" and items:
                    break
                lo, i = _class_char(pattern, i)
                if i < n and pattern[i] == "-":
                    hi, i = _class_char(pattern, i + 1)
                    items.append(f"{re.escape(lo)}-{re.escape(hi)}")
                else:
                    items.append(re.escape(lo))
            body = "".join(items)
            out.append(f"[^{body}]" if negate else f"[{body}]")
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


def matches_pattern(pattern: str, name: str) -> bool:
    """Report whether the leading path elements of *name* match the glob *pattern*.

    The pattern is compared with as many leading elements of *name* as it
    has itself, so ``github.com/*`` matches any module under github.com.
    """
    depth = pattern.count("/")
    prefix = "/".join(name.split("/")[: depth + 1])
    try:
        return re.fullmatch(_glob_regex(pattern), prefix, re.DOTALL) is not None
    except (ValueError, re.error):
        return False


# ---- the HCL subset used by download files ----

_TOKEN_RE = re.compile(
    r"""
     (?P<ws>[ \t\r\n]+)
    |(?P<comment>\#[^\n]*|//[^\n]*|/\*.*?\*/)
    |(?P<string>"(?:[^"\\\n]|\\.)*")
    |(?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    |(?P<punct>[={}])
    """,
    re.VERBOSE | re.DOTALL,
)

_Token = tuple[str, str]
_Block = tuple[str, list[str], dict[str, str], list]


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise ModeError(f"config.hcl: unexpected character {text[pos]!r} at offset {pos}")
        kind = m.lastgroup or ""
        if kind not in ("ws", "comment"):
            tokens.append((kind, m.group()))
        pos = m.end()
    return tokens


def _unquote(token: str) -> str:
    try:
        return json.loads(token)
    except json.JSONDecodeError as exc:
        raise ModeError(f"config.hcl: invalid string {token}") from exc


def _parse_body(tokens: list[_Token], i: int,
                nested: bool) -> tuple[dict[str, str], list[_Block], int]:
    attrs: dict[str, str] = {}
    blocks: list[_Block] = []
    while i < len(tokens):
        kind, value = tokens[i]
        if (kind, value) == ("punct", "}"):
            if not nested:
                raise ModeError("config.hcl: unexpected '}'")
            return attrs, blocks, i + 1
        if kind != "ident":
            raise ModeError(f"config.hcl: expected an attribute or block, got {value!r}")
        name = value
        i += 1
        if i < len(tokens) and tokens[i] == ("punct", "="):
            if i + 1 >= len(tokens) or tokens[i + 1][0] != "string":
                raise ModeError(f"config.hcl: {name}: expected a string value")
            if name in attrs:
                raise ModeError(f"config.hcl: duplicate attribute {name!r}")
            attrs[name] = _unquote(tokens[i + 1][1])
            i += 2
            continue
        labels: list[str] = []
        while i < len(tokens) and tokens[i][0] == "string":
            labels.append(_unquote(tokens[i][1]))
            i += 1
        if i >= len(tokens) or tokens[i] != ("punct", "{"):
            raise ModeError(f"config.hcl: {name}: expected '=' or '{{'")
        block_attrs, block_blocks, i = _parse_body(tokens, i + 1, True)
        blocks.append((name, labels, block_attrs, block_blocks))
    if nested:
        raise ModeError("config.hcl: unclosed block")
    return attrs, blocks, i


def _check_attrs(attrs: dict[str, str], required: set[str], allowed: set[str],
                 where: str) -> None:
    for name in attrs:
        if name not in allowed:
            raise ModeError(f"config.hcl: unsupported argument {name!r} in {where}")
    for name in sorted(required):
        if name not in attrs:
            raise ModeError(f"config.hcl: missing required argument {name!r} in {where}")


def parse_file(text: str | bytes) -> DownloadFile:
    """Parse an HCL download file and validate its modes."""
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ModeError("config.hcl: file is not valid UTF-8") from exc
    attrs, blocks, _ = _parse_body(_tokenize(text), 0, False)
    allowed = {"mode", "downloadURL"}
    _check_attrs(attrs, allowed, allowed, "the top level")
    paths: list[DownloadPath] = []
    for name, labels, block_attrs, inner in blocks:
        if name != "download":
            raise ModeError(f"config.hcl: unsupported block type {name!r}")
        if len(labels) != 1:
            raise ModeError("config.hcl: a download block needs exactly one pattern label")
        if inner:
            raise ModeError("config.hcl: download blocks cannot contain blocks")
        _check_attrs(block_attrs, {"mode"}, allowed, f"download {labels[0]!r}")
        paths.append(DownloadPath(labels[0], block_attrs["mode"],
                                  block_attrs.get("downloadURL", "")))
    df = DownloadFile(_as_mode(attrs["mode"]), attrs["downloadURL"], paths)
    df.validate()
    for p in df.paths:
        p.mode = Mode(p.mode)
    return df


def new_file(mode: Mode | str, download_url: str = "") -> DownloadFile:
    """Build a DownloadFile from a mode name, ``file:<path>`` or ``custom:<base64 hcl>``."""
    m = str(mode)
    if m == "":
        raise ModeError(DOWNLOAD_MODE_ERR)
    if m.startswith("file:"):
        with open(os.path.normpath(m[5:]), "rb") as fh:
            return parse_file(fh.read())
    if m.startswith("custom:"):
        try:
            data = base64.b64decode(m[7:], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ModeError(f"invalid base64 download file: {exc}") from exc
        return parse_file(data)
    if m in _VALID_MODES:
        return DownloadFile(Mode(m), download_url)
    raise ModeError(INVALID_MODE_ERR.format(m))