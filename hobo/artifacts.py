"""
Content-addressed cache of boxcar archives.

An archive is cached under the last path segment of its url. Once it is
present and matches its sha256 it is never fetched again; a cached file
that does not match is deleted so the next fetch starts clean.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator
from urllib.parse import unquote, urlparse

import requests

from hobo.config import TemplateRef
from hobo.errors import ConfigError, IntegrityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
HTTP_TIMEOUT = 30


def _iter_file(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk


def _iter_source(url: str) -> Iterator[bytes]:
    """Yield the bytes behind a file:// or http(s):// url."""
    parsed = urlparse(url)
    if parsed.scheme == "file":
        yield from _iter_file(Path(unquote(parsed.path)))
    elif parsed.scheme in ("http", "https"):
        with requests.get(url, stream=True, timeout=HTTP_TIMEOUT) as r:
            r.raise_for_status()
            for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
    else:
        raise ConfigError(f"unsupported boxcar url scheme: {url}")


def sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    for chunk in _iter_file(path):
        hasher.update(chunk)
    return hasher.hexdigest()


class ArtifactStore:
    """Boxcar archive cache rooted at cache_dir."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = Path(cache_dir)

    def archive_path(self, template: TemplateRef) -> Path:
        name = Path(unquote(urlparse(template.url).path)).name
        if not name:
            raise ConfigError(f"boxcar url has no file name: {template.url}")
        return self.cache_dir / name

    def fetch(self, template: TemplateRef) -> Path:
        """
        Make sure the archive for template is cached and verified.

        Returns:
            Path of the cached archive

        Raises:
            IntegrityError: The cached or downloaded bytes do not match Sha256
            requests.RequestException, OSError: The transfer failed
        """
        archive = self.archive_path(template)

        if archive.exists():
            actual = sha256_file(archive)
            if actual != template.sha256:
                archive.unlink()
                raise IntegrityError(archive, template.sha256, actual)
            logger.debug(f"Boxcar already cached: {archive}")
            return archive

        self.cache_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{archive.name}-", dir=self.cache_dir)
        tmp_path = Path(tmp_name)
        try:
            hasher = hashlib.sha256()
            logger.info(f"Fetching {template.url} to {archive} ...")
            with os.fdopen(fd, "wb") as fout:
                for chunk in _iter_source(template.url):
                    fout.write(chunk)
                    hasher.update(chunk)
                fout.flush()
                os.fsync(fout.fileno())

            actual = hasher.hexdigest()
            if actual != template.sha256:
                raise IntegrityError(archive, template.sha256, actual)

            os.replace(tmp_path, archive)
        finally:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Unable to clean up {tmp_path}: {e}")

        logger.info(f"✅ Fetched {archive}")
        return archive
