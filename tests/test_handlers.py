import io
from datetime import datetime, timezone

import pytest
from werkzeug.test import Client

from modproxy.handlers import HandlerOptions, Router, get_redirect_url, register_handlers
from modproxy.mode import DownloadFile, Mode
from modproxy.protocol import ErrorKind, Protocol, ProtocolError, RevInfo


class RedirectProtocol(Protocol):
    def list(self, mod):
        return []

    def info(self, mod, ver):
        raise ProtocolError("not found", ErrorKind.REDIRECT)

    def latest(self, mod):
        return None

    def go_mod(self, mod, ver):
        raise ProtocolError("not found", ErrorKind.REDIRECT)

    def zip(self, mod, ver):
        raise ProtocolError("not found", ErrorKind.REDIRECT)


class SizedZip(io.BytesIO):
    def size(self):
        return len(self.getvalue())


class HappyProtocol(Protocol):
    def list(self, mod):
        return ["v1.0.0", "v1.1.0"]

    def info(self, mod, ver):
        return f"{mod}@{ver}".encode()

    def latest(self, mod):
        return RevInfo("v0.0.3", datetime(2018, 8, 3, 17, 16, 0, tzinfo=timezone.utc))

    def go_mod(self, mod, ver):
        raise ProtocolError("none", ErrorKind.NOT_FOUND)

    def zip(self, mod, ver):
        return SizedZip(b"zipdata")


def make_client(dp, df):
    router = Router()
    register_handlers(router, HandlerOptions(dp, df))
    return Client(router)


@pytest.mark.parametrize("url", ["https://gomods.io", "https://internal.domain/repository/gonexus"])
@pytest.mark.parametrize("path", [
    "/github.com/gomods/athens/@v/v0.4.0.info",
    "/github.com/gomods/athens/@v/v0.4.0.mod",
    "/github.com/gomods/athens/@v/v0.4.0.zip",
])
def test_redirect(url, path):
    client = make_client(RedirectProtocol(), DownloadFile(Mode.REDIRECT, url))
    resp = client.get(path)
    assert resp.status_code == 301
    assert resp.headers["Location"] == url + path


def test_list_and_cache_control():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    resp = client.get("/example.com/a/b/@v/list")
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "v1.0.0\nv1.1.0"
    assert resp.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"


def test_latest_json():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    resp = client.get("/example.com/a/@latest")
    assert resp.json == {"Version": "v0.0.3", "Time": "2018-08-03T17:16:00Z"}


def test_info_passes_module_and_version():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    resp = client.get("/example.com/a/b/@v/v1.2.3.info")
    assert resp.get_data() == b"example.com/a/b@v1.2.3"


def test_mod_not_found():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    assert client.get("/example.com/a/@v/v1.0.0.mod").status_code == 404


def test_zip_get_and_head():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    resp = client.get("/example.com/a/@v/v1.0.0.zip")
    assert resp.get_data() == b"zipdata"
    assert resp.headers["Content-Type"] == "application/zip"
    head = client.head("/example.com/a/@v/v1.0.0.zip")
    assert head.status_code == 200
    assert head.headers["Content-Length"] == "7"


def test_method_not_allowed_and_unknown_path():
    client = make_client(HappyProtocol(), DownloadFile(Mode.SYNC))
    assert client.post("/example.com/a/@v/v1.0.0.info").status_code == 405
    assert client.get("/nothing").status_code == 404


def test_router_prefix():
    router = Router(prefix="/prefix")
    register_handlers(router, HandlerOptions(HappyProtocol(), DownloadFile(Mode.SYNC)))
    client = Client(router)
    assert client.get("/prefix/example.com/a/@v/list").status_code == 200
    assert client.get("/example.com/a/@v/list").status_code == 404


def test_register_handlers_rejects_missing_options():
    with pytest.raises(ValueError):
        register_handlers(Router(), None)


def test_get_redirect_url():
    assert get_redirect_url("https://internal.domain/repository/gonexus", "/m/@v/v1.info") == \
        "https://internal.domain/repository/gonexus/m/@v/v1.info"