"""HTTP access for Librarian.

Fetches the launcher manifest, per-version metadata documents and artifact
files.  Each call is a single attempt; retrying is left to the next sync
pass.  Artifact downloads are streamed in chunks so that a cancellation
request can interrupt them between chunks.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_URL = "https://launchermeta.mojang.com/mc/game/version_manifest.json"
DEFAULT_TIMEOUT = 60

_CHUNK_SIZE = 64 * 1024
_PROGRESS_STEP = 0.10  # log download progress in 10% steps
_PROGRESS_MIN_INTERVAL = 5.0


class IntegrityError(ValueError):
    """Raised when downloaded data does not match its expected size or hash."""


def sha1_hex(data: bytes | bytearray | memoryview) -> str:
    """Return the hex SHA-1 digest of *data*."""
    return hashlib.sha1(data).hexdigest()


@dataclass
class DownloadResult:
    """The outcome of one artifact download.

    A cancelled download has ``completed`` set to False; ``data`` then keeps
    its full expected length with the unread remainder left as zero bytes.
    Such a result must never be stored as a valid artifact.
    """

    url: str
    data: bytearray
    bytes_read: int
    completed: bool = True

    @property
    def size(self) -> int:
        return len(self.data)


class WebAccess:
    """Thin wrapper around a :class:`requests.Session`."""

    def __init__(
        self,
        manifest_url: str = DEFAULT_MANIFEST_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.manifest_url = manifest_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    # ---- documents ----

    def fetch_manifest(self) -> bytes:
        """Download the current manifest document."""
        logger.debug("Fetching manifest from %s", self.manifest_url)
        response = self._session.get(self.manifest_url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def fetch_text(self, url: str) -> str:
        """Download a small text document (e.g. version metadata)."""
        logger.debug("Fetching %s", url)
        response = self._session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content.decode("utf-8")

    # ---- artifacts ----

    def fetch_artifact(
        self,
        url: str,
        expected_size: int | None = None,
        expected_sha1: str | None = None,
        cancel: threading.Event | None = None,
    ) -> DownloadResult:
        """
        Stream *url* into memory.

        Raises :class:`IntegrityError` if a completed download does not match
        *expected_size* or *expected_sha1*, and :class:`requests.RequestException`
        on transport or HTTP errors.  If *cancel* gets set mid-download the
        partial result is returned with ``completed=False``.
        """
        with self._session.get(url, timeout=self.timeout, stream=True) as response:
            response.raise_for_status()

            total = expected_size
            if not total:
                length = response.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else 0

            data = bytearray(total)
            read = 0
            completed = True
            last_logged = 0.0
            last_logged_at = time.monotonic()

            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if cancel is not None and cancel.is_set():
                    completed = False
                    break
                if not chunk:
                    continue
                end = read + len(chunk)
                if end > len(data):
                    data.extend(bytes(end - len(data)))
                data[read:end] = chunk
                read = end

                if total:
                    fraction = read / total
                    now = time.monotonic()
                    if (
                        fraction - last_logged >= _PROGRESS_STEP
                        and now - last_logged_at >= _PROGRESS_MIN_INTERVAL
                    ):
                        logger.debug("Download progress %s: %.0f%%", url, fraction * 100)
                        last_logged, last_logged_at = fraction, now

        if not completed:
            logger.info("Download cancelled after %d bytes: %s", read, url)
            return DownloadResult(url=url, data=data, bytes_read=read, completed=False)

        # Server sent less than announced
        if read < len(data):
            del data[read:]

        if expected_size is not None and expected_size > 0 and read != expected_size:
            raise IntegrityError(
                f"Downloaded {read} bytes from {url}, expected {expected_size}"
            )
        if expected_sha1 is not None:
            actual = sha1_hex(data)
            if actual != expected_sha1.lower():
                raise IntegrityError(
                    f"SHA-1 mismatch for {url} "
                    f"(expected={expected_sha1[:12]}… actual={actual[:12]}…)"
                )

        return DownloadResult(url=url, data=data, bytes_read=read, completed=True)
