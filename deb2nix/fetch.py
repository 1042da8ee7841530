"""
Get the .deb onto disk and compute the hash Nix will check it against.

Remote URLs are downloaded with requests; local paths are used in place.
In both cases we hash the file ourselves and emit an SRI hash
("sha256-<base64>"), which fetchurl accepts through its `hash` attribute.
That spares us a second download through nix-prefetch-url.
"""

import base64
import hashlib
import os
from typing import Optional
from urllib.parse import unquote, urlparse

import requests

from .errors import FetchError

CHUNK_SIZE = 1 << 16
DOWNLOAD_TIMEOUT = 60
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) deb2nix"


class PackageSource:
    """
    Where the package came from.

      - local_path: file on disk we will read and unpack
      - url: original URL, or None when the user passed a local file
      - sri_hash: "sha256-..." of the file contents
    """
    __slots__ = ("local_path", "url", "sri_hash")

    def __init__(self, local_path: str, url: Optional[str], sri_hash: str):
        self.local_path = local_path
        self.url = url
        self.sri_hash = sri_hash

    @property
    def file_name(self) -> str:
        return os.path.basename(self.local_path)


def is_url(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


def sri_sha256(digest: bytes) -> str:
    return "sha256-" + base64.b64encode(digest).decode("ascii")


def hash_file(path: str) -> str:
    h = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
    except OSError as e:
        raise FetchError(f"Cannot read {path!r}: {e}")
    return sri_sha256(h.digest())


def _file_name_for(url: str) -> str:
    name = os.path.basename(unquote(urlparse(url).path))
    return name or "package.deb"


def download(url: str, dest_dir: str, session: Optional[requests.Session] = None) -> PackageSource:
    """
    Stream `url` into dest_dir, hashing as we go.

    We raise FetchError instead of continuing with a partial file: a wrong
    hash in the generated expression only fails much later, at build time.
    """
    file_path = os.path.join(dest_dir, _file_name_for(url))
    http = session or requests.Session()
    h = hashlib.sha256()

    print(f"Downloading: {url}")
    try:
        with http.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT,
                      headers={"User-Agent": USER_AGENT}) as response:
            response.raise_for_status()
            with open(file_path, 'wb') as outf:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        h.update(chunk)
                        outf.write(chunk)
    except requests.exceptions.RequestException as e:
        raise FetchError(f"Failed to fetch {url}: {e}")
    except OSError as e:
        raise FetchError(f"Failed to write {file_path}: {e}")

    return PackageSource(local_path=file_path, url=url, sri_hash=sri_sha256(h.digest()))


def obtain_package(source: str, dest_dir: str, session: Optional[requests.Session] = None) -> PackageSource:
    """Download `source` if it is an http(s) URL, otherwise use it as a local path."""
    if is_url(source):
        return download(source, dest_dir, session=session)

    path = os.path.abspath(os.path.expanduser(source))
    if not os.path.isfile(path):
        raise FetchError(f"Package file {source!r} does not exist.")
    return PackageSource(local_path=path, url=None, sri_hash=hash_file(path))
