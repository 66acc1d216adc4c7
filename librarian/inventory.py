"""Inventory model for Librarian.

Parses a launcher manifest document into an immutable :class:`Inventory`
of :class:`VersionDescriptor` entries.  Equality of descriptors is spelled
out field by field because change detection depends on exactly which
fields take part in it.
"""

from __future__ import annotations

import enum
import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath

# Characters that are not allowed in a folder name on any supported platform
_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


class ManifestError(ValueError):
    """Raised when a manifest document cannot be parsed into an Inventory."""


class BuildType(enum.Enum):
    """The kind of build a catalog entry represents."""

    UNKNOWN = "unknown"
    RELEASE = "release"
    SNAPSHOT = "snapshot"
    ALPHA = "old_alpha"
    BETA = "old_beta"

    @classmethod
    def parse(cls, value: str) -> BuildType:
        """Map a manifest ``type`` string to a BuildType (UNKNOWN if unrecognised)."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def folder_name(self) -> str:
        """Return the library folder used for this build type."""
        return self.name.capitalize()


def _parse_time(value: str) -> datetime:
    """Parse an ISO-8601 manifest timestamp into an aware datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, eq=False)
class VersionDescriptor:
    """One entry of the manifest's ``versions`` list.

    Two descriptors are equal iff ``id``, ``build_type``, ``metadata_url``,
    ``publication_time`` and ``upload_time`` all match.
    """

    id: str
    build_type: BuildType
    metadata_url: str
    publication_time: datetime
    upload_time: datetime

    @classmethod
    def from_json(cls, entry: dict) -> VersionDescriptor:
        """Build a descriptor from one object of the manifest ``versions`` array."""
        try:
            return cls(
                id=str(entry["id"]),
                build_type=BuildType.parse(str(entry["type"])),
                metadata_url=str(entry.get("url", "")),
                publication_time=_parse_time(str(entry["time"])),
                upload_time=_parse_time(str(entry["releaseTime"])),
            )
        except KeyError as exc:
            raise ManifestError(f"Version entry is missing field {exc}") from exc
        except (TypeError, ValueError) as exc:
            raise ManifestError(f"Invalid version entry {entry!r}: {exc}") from exc

    @property
    def library_sub_path(self) -> str:
        """Relative storage key, e.g. ``Release/1.14_2019-04-23_14-52-44``."""
        stamp = self.upload_time.astimezone(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")
        name = _INVALID_NAME_CHARS.sub("_", self.id).strip(" .") or "_"
        return str(PurePath(self.build_type.folder_name, f"{name}_{stamp}"))

    # ---- structural equality ----

    def structural_key(self) -> tuple:
        """Return the tuple of fields that defines equality.

        Timestamps take part together with their UTC offset, so the same
        instant written with a different offset counts as a change.
        """
        return (
            self.id,
            self.build_type,
            self.metadata_url,
            self.publication_time,
            self.publication_time.utcoffset(),
            self.upload_time,
            self.upload_time.utcoffset(),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionDescriptor):
            return NotImplemented
        return self.structural_key() == other.structural_key()

    def __hash__(self) -> int:
        return hash(self.structural_key())

    def __str__(self) -> str:
        return f"{self.build_type.folder_name} {self.id}"


class Inventory:
    """A parsed snapshot of the manifest taken at one poll."""

    def __init__(
        self,
        latest_release_id: str | None,
        latest_snapshot_id: str | None,
        versions: Iterable[VersionDescriptor],
        manifest: str = "",
    ):
        self._latest_release_id = latest_release_id
        self._latest_snapshot_id = latest_snapshot_id
        self._versions = tuple(versions)
        self._manifest = manifest
        self._by_id: dict[str, VersionDescriptor] = {}
        for version in self._versions:
            if version.id in self._by_id:
                raise ManifestError(f"Duplicate version id in manifest: {version.id}")
            self._by_id[version.id] = version

    @classmethod
    def empty(cls) -> Inventory:
        """Return an inventory with no versions and no latest pointers."""
        return cls(None, None, ())

    @classmethod
    def from_manifest(cls, manifest: bytes | str) -> Inventory:
        """Parse a manifest document (JSON text or UTF-8 bytes)."""
        if isinstance(manifest, bytes):
            try:
                manifest = manifest.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ManifestError(f"Manifest is not valid UTF-8: {exc}") from exc

        try:
            document = json.loads(manifest)
        except json.JSONDecodeError as exc:
            raise ManifestError(f"Manifest is not valid JSON: {exc}") from exc

        if not isinstance(document, dict) or not isinstance(document.get("versions"), list):
            raise ManifestError("Manifest has no 'versions' array")

        latest = document.get("latest") or {}
        if not isinstance(latest, dict):
            raise ManifestError("Manifest 'latest' is not an object")

        versions = []
        for entry in document["versions"]:
            if not isinstance(entry, dict):
                raise ManifestError(f"Version entry is not an object: {entry!r}")
            versions.append(VersionDescriptor.from_json(entry))

        return cls(
            latest_release_id=latest.get("release"),
            latest_snapshot_id=latest.get("snapshot"),
            versions=versions,
            manifest=manifest,
        )

    # ---- accessors ----

    @property
    def latest_release_id(self) -> str | None:
        return self._latest_release_id

    @property
    def latest_snapshot_id(self) -> str | None:
        return self._latest_snapshot_id

    @property
    def versions(self) -> tuple[VersionDescriptor, ...]:
        return self._versions

    @property
    def manifest(self) -> str:
        """The raw document this inventory was parsed from ('' if built directly)."""
        return self._manifest

    def ids(self) -> set[str]:
        return set(self._by_id)

    def version(self, version_id: str) -> VersionDescriptor | None:
        """Return the version with *version_id*, or None."""
        return self._by_id.get(version_id)

    def __len__(self) -> int:
        return len(self._versions)

    # ---- equality ----

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Inventory):
            return NotImplemented
        if self is other:
            return True
        if (
            self._latest_release_id != other._latest_release_id
            or self._latest_snapshot_id != other._latest_snapshot_id
            or len(self._versions) != len(other._versions)
        ):
            return False
        return {v.structural_key() for v in self._versions} == {
            v.structural_key() for v in other._versions
        }

    def __hash__(self) -> int:
        return hash(
            (
                self._latest_release_id,
                self._latest_snapshot_id,
                frozenset(v.structural_key() for v in self._versions),
            )
        )

    def __repr__(self) -> str:
        return (
            f"Inventory(latest_release_id={self._latest_release_id!r}, "
            f"latest_snapshot_id={self._latest_snapshot_id!r}, versions={len(self._versions)})"
        )
