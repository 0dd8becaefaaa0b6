import base64

import pytest

from modproxy.mode import (
    DownloadFile,
    DownloadPath,
    Mode,
    ModeError,
    matches_pattern,
    new_file,
    parse_file,
)

# (name, default mode, default url, [(pattern, mode, url)], module, expected mode, expected url)
MODE_CASES = [
    ("sync", Mode.SYNC, "", [], "github.com/gomods/athens", Mode.SYNC, ""),
    ("redirect", Mode.REDIRECT, "gomods.io", [], "github.com/gomods/athens",
     Mode.REDIRECT, "gomods.io"),
    ("redirect with download url suffix", Mode.REDIRECT,
     "internal.domain/repository/gonexus", [],
     "github.com/gomods/athens", Mode.REDIRECT, "internal.domain/repository/gonexus"),
    ("pattern match", Mode.SYNC, "", [("github.com/gomods/*", Mode.NONE, "")],
     "github.com/gomods/athens", Mode.NONE, ""),
    ("multiple depth pattern match", Mode.SYNC, "", [("github.com/*", Mode.NONE, "")],
     "github.com/gomods/athens/pkg/mode", Mode.NONE, ""),
    ("subdomain pattern match", Mode.SYNC, "", [("*.github.com/gomods/*", Mode.NONE, "")],
     "athens.github.com/gomods/pkg/mode", Mode.NONE, ""),
    ("pattern fallback", Mode.SYNC, "", [("github.com/gomods/*", Mode.NONE, "")],
     "github.com/athens-artifacts/maturelib", Mode.SYNC, ""),
    ("pattern redirect", Mode.SYNC, "",
     [("github.com/gomods/*", Mode.ASYNC_REDIRECT, "gomods.io")],
     "github.com/gomods/athens", Mode.ASYNC_REDIRECT, "gomods.io"),
    ("redirect fallback", Mode.REDIRECT, "proxy.example.com",
     [("github.com/gomods/*", Mode.ASYNC_REDIRECT, "gomods.io")],
     "github.com/athens-artifacts/maturelib", Mode.REDIRECT, "proxy.example.com"),
]


@pytest.mark.parametrize(
    "name,default_mode,default_url,path_specs,mod,expected_mode,expected_url",
    MODE_CASES, ids=[c[0] for c in MODE_CASES])
def test_mode_match_and_url(name, default_mode, default_url, path_specs, mod,
                            expected_mode, expected_url):
    df = DownloadFile(default_mode, default_url,
                      [DownloadPath(pattern, m, url) for pattern, m, url in path_specs])
    assert df.match(mod) == expected_mode
    assert df.url(mod) == expected_url


@pytest.mark.parametrize("mode,expected", [
    ("", "download mode is not set"),
    ("invalidMode", "unrecognized download mode: invalidMode"),
])
def test_new_file_errors(mode, expected):
    with pytest.raises(ModeError) as exc_info:
        new_file(mode, "github.com/gomods/athens")
    assert str(exc_info.value) == expected


@pytest.mark.parametrize("mode", list(Mode))
def test_new_file_plain_modes(mode):
    df = new_file(mode.value, "https://example.com")
    assert df.mode is mode
    assert df.download_url == "https://example.com"
    assert df.paths == []


HCL = """
# default behaviour
mode = "async_redirect"
downloadURL = "https://proxy.example.com"

download "github.com/gomods/*" {
    mode = "sync"
}

/* private modules */
download "example.org/x/*" {
    mode = "redirect"
    downloadURL = "https://mirror.example.com"
}
"""


def test_parse_file():
    df = parse_file(HCL)
    assert df.mode == Mode.ASYNC_REDIRECT
    assert df.download_url == "https://proxy.example.com"
    assert df.paths == [
        DownloadPath("github.com/gomods/*", Mode.SYNC, ""),
        DownloadPath("example.org/x/*", Mode.REDIRECT, "https://mirror.example.com"),
    ]
    assert df.match("example.org/x/tools") == Mode.REDIRECT
    assert df.url("example.org/x/tools") == "https://mirror.example.com"
    assert df.url("github.com/gomods/athens") == "https://proxy.example.com"


def test_new_file_custom_base64():
    encoded = base64.b64encode(HCL.encode()).decode()
    df = new_file("custom:" + encoded)
    assert df.match("github.com/gomods/athens") == Mode.SYNC
    assert df.match("example.com/other") == Mode.ASYNC_REDIRECT


def test_new_file_from_path(tmp_path):
    path = tmp_path / "download.hcl"
    path.write_text(HCL)
    df = new_file(f"file:{path}")
    assert df.match("example.org/x/net") == Mode.REDIRECT


def test_new_file_missing_file(tmp_path):
    with pytest.raises(OSError):
        new_file(f"file:{tmp_path / 'absent.hcl'}")


def test_new_file_bad_base64():
    with pytest.raises(ModeError):
        new_file("custom:!!!not base64!!!")


def test_parse_file_rejects_unknown_path_mode():
    text = 'mode = "sync"\ndownloadURL = ""\ndownload "a/*" {\n mode = "bogus"\n}\n'
    with pytest.raises(ModeError) as exc_info:
        parse_file(text)
    assert str(exc_info.value) == "unrecognized mode for a/*: bogus"


@pytest.mark.parametrize("text", [
    'mode = "sync"\n',
    'mode = "sync"\ndownloadURL = ""\nextra = "x"\n',
    'mode = "sync"\ndownloadURL = ""\ndownload "a/*" {\n downloadURL = "x"\n}\n',
    'mode = "sync"\ndownloadURL = ""\ndownload {\n mode = "sync"\n}\n',
    'mode = "sync"\ndownloadURL = ""\ndownload "a/*" {\n mode = "sync"\n',
    'mode = sync\ndownloadURL = ""\n',
])
def test_parse_file_malformed(text):
    with pytest.raises(ModeError):
        parse_file(text)


@pytest.mark.parametrize("pattern,name,expected", [
    ("github.com/private/repo", "github.com/public/repo@v0.0.1", False),
    ("github.com/private/repo@v0.0.1", "github.com/private/repo@v0.0.1", True),
    ("github.com/private/*", "github.com/private/repo@v0.0.1", True),
    ("github.com/private/*", "github.com/private/repo/sub@v0.0.1", True),
    ("github.com/*/*", "github.com/private/repo@v0.0.1", True),
    ("github.com/private/*/*", "github.com/private/repo@v0.0.1", False),
    ("github.com/private/*/*", "github.com/private/repo/sub@v0.0.1", True),
    ("github.com/private/repo*", "github.com/private/repo@v0.0.1", True),
    ("github.com/[a-c]ar", "github.com/bar", True),
    ("github.com/[^a-c]ar", "github.com/bar", False),
    ("github.com/ba?", "github.com/bar/baz", True),
    ("github.com/[", "github.com/bar", False),
])
def test_matches_pattern(pattern, name, expected):
    assert matches_pattern(pattern, name) is expected