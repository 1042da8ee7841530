import base64
import hashlib

import pytest
import requests

from deb2nix.errors import FetchError
from deb2nix.fetch import download, hash_file, is_url, obtain_package, sri_sha256

PAYLOAD = b"!<arch>\n" + b"x" * 200000


def _expected_sri(data):
    return "sha256-" + base64.b64encode(hashlib.sha256(data).digest()).decode()


class FakeResponse:
    def __init__(self, chunks, status_error=None):
        self.chunks = chunks
        self.status_error = status_error
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def raise_for_status(self):
        if self.status_error:
            raise self.status_error

    def iter_content(self, chunk_size=1):
        return iter(self.chunks)


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_is_url():
    assert is_url("https://example.org/a.deb")
    assert is_url("http://example.org/a.deb")
    assert not is_url("/tmp/a.deb")
    assert not is_url("a.deb")
    assert not is_url("ftp://example.org/a.deb")


def test_sri_format():
    assert sri_sha256(b"\x00" * 32) == "sha256-" + "A" * 43 + "="


def test_hash_file(tmp_path):
    path = tmp_path / "a.deb"
    path.write_bytes(PAYLOAD)
    assert hash_file(str(path)) == _expected_sri(PAYLOAD)


def test_obtain_local_file(tmp_path):
    path = tmp_path / "a.deb"
    path.write_bytes(PAYLOAD)

    source = obtain_package(str(path), str(tmp_path / "work"))

    assert source.url is None
    assert source.local_path == str(path)
    assert source.file_name == "a.deb"
    assert source.sri_hash == _expected_sri(PAYLOAD)


def test_obtain_missing_local_file(tmp_path):
    with pytest.raises(FetchError, match="does not exist"):
        obtain_package(str(tmp_path / "nope.deb"), str(tmp_path))


def test_download_streams_and_hashes(tmp_path):
    chunks = [PAYLOAD[:1000], b"", PAYLOAD[1000:]]
    response = FakeResponse(chunks)
    session = FakeSession(response)

    source = obtain_package("https://example.org/pool/hello%2Bgui_1.0_amd64.deb", str(tmp_path), session=session)

    assert source.url == "https://example.org/pool/hello%2Bgui_1.0_amd64.deb"
    assert source.file_name == "hello+gui_1.0_amd64.deb"
    assert source.sri_hash == _expected_sri(PAYLOAD)
    with open(source.local_path, "rb") as f:
        assert f.read() == PAYLOAD
    assert response.closed

    url, kwargs = session.requests[0]
    assert kwargs["stream"] is True
    assert kwargs["timeout"] > 0
    assert "User-Agent" in kwargs["headers"]


def test_download_http_error(tmp_path):
    response = FakeResponse([], status_error=requests.exceptions.HTTPError("404 Client Error"))
    with pytest.raises(FetchError, match="404"):
        download("https://example.org/missing.deb", str(tmp_path), session=FakeSession(response))


def test_download_connection_error(tmp_path):
    session = FakeSession(error=requests.exceptions.ConnectionError("connection refused"))
    with pytest.raises(FetchError, match="connection refused") as excinfo:
        download("https://example.org/a.deb", str(tmp_path), session=session)
    assert excinfo.value.component == "fetch"


def test_download_without_file_name(tmp_path):
    session = FakeSession(FakeResponse([b"abc"]))
    source = download("https://example.org/", str(tmp_path), session=session)
    assert source.file_name == "package.deb"
