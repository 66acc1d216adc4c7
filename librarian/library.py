"""
Local library for Librarian.

Mirrors the artifacts listed in the manifest into a folder tree below the
library root, one folder per version (see
:attr:`~librarian.inventory.VersionDescriptor.library_sub_path`).  Each
version folder holds the version's ``meta.json`` plus its artifact files.
Also stores timestamped copies of every manifest seen so that the last
known state survives a restart.

Synchronisation is idempotent: versions whose files are all present (and,
with verification on, match their recorded size) are skipped, so an
artifact that failed on one pass is simply retried on the next.  SHA-1
hashes of stored files are only compared in a deep pass, which is what the
startup validation runs.  Downloads run sequentially on the calling thread.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import urlparse

import requests

from librarian.inventory import Inventory, ManifestError, VersionDescriptor
from librarian.web import DownloadResult, IntegrityError

logger = logging.getLogger(__name__)

MANIFESTS_FOLDER = "Manifests"
METADATA_FILE = "meta.json"
MANIFEST_NAME_FORMAT = "%Y-%m-%d_%H-%M-%S_UTC"

_HASH_CHUNK = 256 * 1024  # 256 KiB read chunks for hashing


def _sha1(filepath: Path) -> str:
    """Return the hex SHA-1 digest of *filepath*."""
    h = hashlib.sha1()
    with open(filepath, "rb") as fh:
        while chunk := fh.read(_HASH_CHUNK):
            h.update(chunk)
    return h.hexdigest()


def _write_atomic(path: Path, data: bytes) -> None:
    """Write *data* to *path* via a temporary file so readers never see a partial file."""
    tmp = path.with_name(path.name + ".part")
    with open(tmp, "wb") as fh:
        fh.write(data)
    os.replace(tmp, path)


class Downloader(Protocol):
    def fetch_text(self, url: str) -> str: ...

    def fetch_artifact(
        self,
        url: str,
        expected_size: int | None = None,
        expected_sha1: str | None = None,
        cancel: threading.Event | None = None,
    ) -> DownloadResult: ...


@dataclass(frozen=True)
class Artifact:
    """One downloadable file listed in a version's metadata document."""

    name: str
    url: str
    size: int | None = None
    sha1: str | None = None

    @property
    def file_name(self) -> str:
        """Local file name: artifact name plus the URL's extension (``client.jar``)."""
        suffix = PurePosixPath(urlparse(self.url).path).suffix
        return f"{self.name}{suffix}"


@dataclass
class SyncRecord:
    """Outcome of a single download into the library."""
    url: str
    destination: str
    size_bytes: int = 0
    success: bool = False
    error: str = ""


@dataclass
class SyncStats:
    """Download totals across all sync passes, shown in the status line."""
    total_downloaded: int = 0
    total_failed: int = 0
    total_bytes: int = 0
    last_downloaded_file: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, rec: SyncRecord) -> None:
        with self._lock:
            if rec.success:
                self.total_downloaded += 1
                self.total_bytes += rec.size_bytes
                self.last_downloaded_file = rec.destination
            else:
                self.total_failed += 1


@dataclass
class SyncReport:
    """Outcome of one :meth:`Library.sync` pass."""
    versions_checked: int = 0
    versions_missing: int = 0
    downloads: int = 0
    failures: int = 0
    cancelled: bool = False

    def __str__(self) -> str:
        text = (
            f"{self.versions_checked} versions checked, {self.versions_missing} missing, "
            f"{self.downloads} downloads, {self.failures} failures"
        )
        return text + " (cancelled)" if self.cancelled else text


class Library:
    """
    The on-disk mirror of the catalog.

    Parameters
    ----------
    root : str or Path
        Library root folder; created if it does not exist.
    downloader : Downloader
        Fetches metadata documents and artifacts (normally a ``WebAccess``).
    artifact_types : list of str, optional
        Names from the metadata ``downloads`` object to mirror.  Empty or
        None mirrors all of them.
    skip_artifacts : bool
        If True only metadata documents are stored.
    verify : bool
        If True presence checks compare the size of every artifact, and deep
        checks also compare its SHA-1.  If False a file only has to exist.
    """

    def __init__(
        self,
        root: str | os.PathLike,
        downloader: Downloader,
        artifact_types: list[str] | None = None,
        skip_artifacts: bool = False,
        verify: bool = True,
    ):
        self.root = Path(root)
        self._downloader = downloader
        self._artifact_types = {t.lower() for t in artifact_types or []}
        self._skip_artifacts = skip_artifacts
        self._verify = verify
        self.stats = SyncStats()

        # Failing here is fatal for the caller
        self.root.mkdir(parents=True, exist_ok=True)
        self.manifests_dir.mkdir(exist_ok=True)

    # ---- layout ----

    @property
    def manifests_dir(self) -> Path:
        return self.root / MANIFESTS_FOLDER

    def version_dir(self, version: VersionDescriptor) -> Path:
        return self.root / version.library_sub_path

    def metadata_path(self, version: VersionDescriptor) -> Path:
        return self.version_dir(version) / METADATA_FILE

    # ---- manifest snapshots ----

    def manifest_files(self) -> list[Path]:
        """Return stored manifest files, oldest first."""
        return sorted(self.manifests_dir.glob("*.json"), key=lambda p: p.name)

    def latest_manifest(self) -> Inventory | None:
        """Load the newest stored manifest that still parses, or None."""
        for path in reversed(self.manifest_files()):
            try:
                inventory = Inventory.from_manifest(path.read_bytes())
            except (OSError, ManifestError) as exc:
                logger.warning("Ignoring unreadable manifest %s: %s", path, exc)
                continue
            logger.info("Loaded stored manifest %s (%d versions)", path.name, len(inventory))
            return inventory
        return None

    def store_manifest(self, inventory: Inventory, when: datetime | None = None) -> Path:
        """Persist *inventory*'s raw manifest under a UTC timestamped name."""
        when = when or datetime.now(timezone.utc)
        name = when.astimezone(timezone.utc).strftime(MANIFEST_NAME_FORMAT) + ".json"
        path = self.manifests_dir / name
        _write_atomic(path, inventory.manifest.encode("utf-8"))
        logger.info("Stored manifest snapshot %s", path)
        return path

    # ---- presence checks ----

    def artifacts(self, metadata: dict) -> list[Artifact]:
        """
        Return the artifacts to mirror from a parsed metadata document.

        A ``size`` that is not a non-negative integer, or a ``sha1`` that is
        not a string, is dropped and the artifact is checked by existence only.
        """
        if self._skip_artifacts:
            return []
        downloads = metadata.get("downloads") or {}
        if not isinstance(downloads, dict):
            return []
        result = []
        for name, entry in downloads.items():
            if self._artifact_types and name.lower() not in self._artifact_types:
                continue
            if not isinstance(entry, dict) or not entry.get("url"):
                continue
            size = entry.get("size")
            if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
                logger.warning("Ignoring invalid size %r for artifact %s", size, name)
                size = None
            sha1 = entry.get("sha1")
            if sha1 is not None and not isinstance(sha1, str):
                logger.warning("Ignoring invalid sha1 %r for artifact %s", sha1, name)
                sha1 = None
            result.append(
                Artifact(
                    name=name,
                    url=str(entry["url"]),
                    size=size,
                    sha1=sha1.lower() if sha1 else None,
                )
            )
        return result

    def _read_metadata(self, version: VersionDescriptor) -> dict | None:
        path = self.metadata_path(version)
        if not path.is_file():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                metadata = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable metadata %s: %s", path, exc)
            return None
        return metadata if isinstance(metadata, dict) else None

    def _artifact_valid(self, path: Path, artifact: Artifact, deep: bool = False) -> bool:
        if not path.is_file():
            return False
        if not self._verify:
            return True
        try:
            if artifact.size is not None and path.stat().st_size != artifact.size:
                return False
            if deep and artifact.sha1 and _sha1(path) != artifact.sha1:
                return False
        except OSError:
            return False
        return True

    def is_present(self, version: VersionDescriptor, deep: bool = False) -> bool:
        """
        Return True if *version*'s metadata and all its artifacts are stored.

        With *deep* every artifact is also hashed and compared with its
        recorded SHA-1.
        """
        metadata = self._read_metadata(version)
        if metadata is None:
            return False
        folder = self.version_dir(version)
        return all(
            self._artifact_valid(folder / a.file_name, a, deep) for a in self.artifacts(metadata)
        )

    # ---- synchronisation ----

    def sync(
        self,
        inventory: Inventory,
        cancel: threading.Event | None = None,
        deep: bool = False,
    ) -> SyncReport:
        """
        Download everything from *inventory* that is missing locally.

        Failures are logged and recorded per file; the pass carries on with
        the remaining artifacts and versions.  A *deep* pass also replaces
        stored artifacts whose SHA-1 no longer matches.
        """
        report = SyncReport()
        for version in inventory.versions:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                break
            report.versions_checked += 1
            try:
                if self.is_present(version, deep):
                    continue
                report.versions_missing += 1
                self._sync_version(version, report, cancel, deep)
            except Exception:
                report.failures += 1
                logger.exception("Unexpected error while syncing %s", version)

        if report.versions_missing or report.failures:
            logger.info("Library sync finished: %s", report)
        else:
            logger.debug("Library sync finished: %s", report)
        return report

    def _sync_version(
        self,
        version: VersionDescriptor,
        report: SyncReport,
        cancel: threading.Event | None,
        deep: bool,
    ) -> None:
        folder = self.version_dir(version)
        folder.mkdir(parents=True, exist_ok=True)

        metadata = self._read_metadata(version)
        if metadata is None:
            metadata = self._download_metadata(version, report)
            if metadata is None:
                return

        for artifact in self.artifacts(metadata):
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                return
            dest = folder / artifact.file_name
            if self._artifact_valid(dest, artifact, deep):
                continue
            rec = self._download_artifact(artifact, dest, cancel)
            report.downloads += 1
            if rec is None:
                report.cancelled = True
                return
            if not rec.success:
                report.failures += 1

    def _download_metadata(self, version: VersionDescriptor, report: SyncReport) -> dict | None:
        dest = self.metadata_path(version)
        rec = SyncRecord(url=version.metadata_url, destination=str(dest))
        report.downloads += 1
        metadata = None
        try:
            text = self._downloader.fetch_text(version.metadata_url)
            parsed = json.loads(text)
            if not isinstance(parsed, dict):
                raise ValueError("metadata document is not a JSON object")
            _write_atomic(dest, text.encode("utf-8"))
            metadata = parsed
            rec.size_bytes = len(text.encode("utf-8"))
            rec.success = True
            logger.info("Stored metadata for %s", version)
        except (requests.RequestException, ValueError, OSError) as exc:
            rec.error = str(exc)
            report.failures += 1
            logger.error("Could not fetch metadata for %s: %s", version, exc)
        self.stats.record(rec)
        return metadata

    def _download_artifact(
        self,
        artifact: Artifact,
        dest: Path,
        cancel: threading.Event | None,
    ) -> SyncRecord | None:
        """Fetch one artifact into *dest*.  Returns None if cancelled mid-download."""
        rec = SyncRecord(url=artifact.url, destination=str(dest))
        try:
            logger.info("Downloading %s -> %s (%s bytes)", artifact.url, dest, artifact.size)
            result = self._downloader.fetch_artifact(
                artifact.url,
                expected_size=artifact.size,
                expected_sha1=artifact.sha1,
                cancel=cancel,
            )
            if not result.completed:
                logger.info("Discarding incomplete download of %s", artifact.url)
                return None
            _write_atomic(dest, bytes(result.data))
            rec.size_bytes = result.size
            rec.success = True
            logger.info("Stored %s (%d bytes)", dest, rec.size_bytes)
        except IntegrityError as exc:
            rec.error = str(exc)
            logger.error("Integrity check failed for %s: %s", artifact.url, exc)
        except (requests.RequestException, OSError) as exc:
            rec.error = str(exc)
            logger.error("Download failed for %s: %s", artifact.url, exc)
        self.stats.record(rec)
        return rec
