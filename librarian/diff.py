"""Change detection between two manifest inventories."""

from __future__ import annotations

from dataclasses import dataclass

from librarian.inventory import BuildType, Inventory, VersionDescriptor


@dataclass(frozen=True)
class InventoryDiff:
    """The structural delta from ``old_inventory`` to ``new_inventory``.

    ``new_release_id`` / ``new_snapshot_id`` are only set when the
    corresponding latest pointer changed.  The version lists keep the order
    of the inventory they were taken from.
    """

    old_inventory: Inventory
    new_inventory: Inventory
    new_release_id: str | None = None
    new_snapshot_id: str | None = None
    added_versions: tuple[VersionDescriptor, ...] = ()
    changed_versions: tuple[VersionDescriptor, ...] = ()
    removed_versions: tuple[VersionDescriptor, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (
            self.new_release_id is not None
            or self.new_snapshot_id is not None
            or self.added_versions
            or self.changed_versions
            or self.removed_versions
        )

    def new_latest_id(self, build_type: BuildType) -> str | None:
        """Return the changed latest id for *build_type* (None if unchanged or n/a)."""
        if build_type is BuildType.RELEASE:
            return self.new_release_id
        if build_type is BuildType.SNAPSHOT:
            return self.new_snapshot_id
        return None

    def summary(self) -> str:
        parts = [
            f"{len(self.added_versions)} added",
            f"{len(self.changed_versions)} changed",
            f"{len(self.removed_versions)} removed",
        ]
        if self.new_release_id is not None:
            parts.append(f"latest release {self.new_release_id}")
        if self.new_snapshot_id is not None:
            parts.append(f"latest snapshot {self.new_snapshot_id}")
        return ", ".join(parts)


def compute_diff(old: Inventory, new: Inventory) -> InventoryDiff:
    """Compute the difference between two inventories.  Never raises."""
    shared_ids = old.ids() & new.ids()

    removed = tuple(v for v in old.versions if v.id not in shared_ids)
    added = tuple(v for v in new.versions if v.id not in shared_ids)
    # A changed build type lands here too, not as remove + add
    changed = tuple(
        v
        for v in new.versions
        if v.id in shared_ids and v.structural_key() != old.version(v.id).structural_key()
    )

    return InventoryDiff(
        old_inventory=old,
        new_inventory=new,
        new_release_id=(
            new.latest_release_id
            if new.latest_release_id != old.latest_release_id
            else None
        ),
        new_snapshot_id=(
            new.latest_snapshot_id
            if new.latest_snapshot_id != old.latest_snapshot_id
            else None
        ),
        added_versions=added,
        changed_versions=changed,
        removed_versions=removed,
    )
