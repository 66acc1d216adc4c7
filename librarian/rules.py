"""Conditional actions for Librarian.

A conditional action (rule) pairs a trigger condition, evaluated against an
:class:`~librarian.diff.InventoryDiff`, with a list of shell command
templates.  Rules may depend on other rules completing earlier in the same
dispatch cycle; :func:`dispatch` resolves those chains with a work-list
fixed point.
"""

from __future__ import annotations

import enum
import logging
import os
from collections.abc import Callable, Iterable, MutableSet, Set
from dataclasses import dataclass, field

from librarian.diff import InventoryDiff
from librarian.inventory import BuildType, VersionDescriptor
from librarian.platform_utils import run_shell_command

logger = logging.getLogger(__name__)

CommandRunner = Callable[[str], int]


class TriggerType(enum.Enum):
    """The kinds of change a rule can react to."""

    LATEST = "latest"
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


# Diff-list triggers, in the order their targets are collected
_LIST_TRIGGERS = (TriggerType.ADDED, TriggerType.CHANGED, TriggerType.REMOVED)


@dataclass(frozen=True)
class ConditionalAction:
    """A user-configured rule.  Carries no per-cycle state."""

    id: int
    build_type_filter: BuildType
    trigger_types: frozenset[TriggerType]
    commands: tuple[str, ...]
    runs_before_download: bool = False
    dependent_on_ids: frozenset[int] = field(default_factory=frozenset)
    placeholder_id: str | None = None
    placeholder_path: str | None = None

    def __str__(self) -> str:
        triggers = "|".join(sorted(t.value for t in self.trigger_types))
        phase = "before" if self.runs_before_download else "after"
        return f"rule #{self.id} ({triggers} {self.build_type_filter.value}, {phase} download)"


def _versions_for(diff: InventoryDiff, trigger: TriggerType) -> tuple[VersionDescriptor, ...]:
    if trigger is TriggerType.ADDED:
        return diff.added_versions
    if trigger is TriggerType.CHANGED:
        return diff.changed_versions
    if trigger is TriggerType.REMOVED:
        return diff.removed_versions
    return ()


def conditions_fulfilled(
    rule: ConditionalAction,
    diff: InventoryDiff,
    completed_ids: Set[int],
    downloads_complete: bool,
) -> bool:
    """Return True if *rule* should run for *diff* in the current pass."""
    # "before" rules only run in the pre-download pass and vice versa
    if rule.runs_before_download == downloads_complete:
        return False

    if not rule.dependent_on_ids <= completed_ids:
        return False

    if TriggerType.LATEST in rule.trigger_types:
        return diff.new_latest_id(rule.build_type_filter) is not None

    return any(
        v.build_type is rule.build_type_filter
        for trigger in _LIST_TRIGGERS
        if trigger in rule.trigger_types
        for v in _versions_for(diff, trigger)
    )


def target_versions(rule: ConditionalAction, diff: InventoryDiff) -> list[VersionDescriptor] | None:
    """
    Collect the versions *rule* acts on, ordered by upload time.

    Returns None when a latest-pointer rule names a version that is not
    listed in the new inventory.
    """
    if TriggerType.LATEST in rule.trigger_types:
        latest_id = diff.new_latest_id(rule.build_type_filter)
        if latest_id is None:
            return []
        version = diff.new_inventory.version(latest_id)
        if version is None:
            logger.warning(
                "Latest %s %r is not listed in the manifest; skipping %s",
                rule.build_type_filter.value, latest_id, rule,
            )
            return None
        return [version]

    targets: dict[str, VersionDescriptor] = {}
    for trigger in _LIST_TRIGGERS:
        if trigger not in rule.trigger_types:
            continue
        for version in _versions_for(diff, trigger):
            if version.build_type is rule.build_type_filter:
                targets.setdefault(version.id, version)

    # sorted() is stable, so equal upload times keep their first-seen order
    return sorted(targets.values(), key=lambda v: v.upload_time)


def expand_command(
    rule: ConditionalAction,
    template: str,
    version: VersionDescriptor,
    library_root: str | os.PathLike,
) -> str:
    """Substitute the rule's placeholders in *template* for *version*."""
    command = template
    if rule.placeholder_id:
        command = command.replace(rule.placeholder_id, version.id)
    if rule.placeholder_path:
        path = os.path.join(os.fspath(library_root), version.library_sub_path)
        command = command.replace(rule.placeholder_path, path)
    return command


def actions_performed(
    rule: ConditionalAction,
    diff: InventoryDiff,
    library_root: str | os.PathLike,
    run_command: CommandRunner = run_shell_command,
) -> bool:
    """
    Run every command of *rule* for every targeted version.

    Returns True iff all commands succeeded (exit code >= 0).  Stops at the
    first failing command.
    """
    versions = target_versions(rule, diff)
    if versions is None:
        return False

    for version in versions:
        for template in rule.commands:
            command = expand_command(rule, template, version, library_root)
            logger.info("Running %s for %s: %s", rule, version, command)
            exit_code = run_command(command)
            if exit_code < 0:
                logger.error(
                    "Command failed for %s (%s), exit code %d: %s",
                    rule, version, exit_code, command,
                )
                return False
            logger.info("Command finished with exit code %d", exit_code)
    return True


def dispatch(
    rules: Iterable[ConditionalAction],
    diff: InventoryDiff,
    downloads_complete: bool,
    completed_ids: MutableSet[int],
    library_root: str | os.PathLike,
    run_command: CommandRunner = run_shell_command,
) -> None:
    """
    Run all eligible rules for one pass of a dispatch cycle.

    Repeats full scans over the pending rules until a scan completes none,
    so a rule whose dependency is declared after it still fires in the same
    call.  Completed ids are added to *completed_ids*, which the caller
    shares between the before- and after-download passes.  Rules that fail
    stay pending and are not retried within this call.
    """
    pending = list(rules)
    failed: set[int] = set()

    progressed = True
    while progressed:
        progressed = False
        for rule in list(pending):
            if rule.id in failed:
                continue
            if not conditions_fulfilled(rule, diff, completed_ids, downloads_complete):
                continue

            try:
                performed = actions_performed(rule, diff, library_root, run_command)
            except Exception:
                logger.exception("Unexpected error while running %s", rule)
                performed = False

            if performed:
                completed_ids.add(rule.id)
                pending.remove(rule)
                progressed = True
                logger.info("Completed %s", rule)
            else:
                failed.add(rule.id)
                logger.warning("%s did not complete; its dependents will not run", rule)

    if pending:
        logger.debug(
            "%d rule(s) not run in the %s-download pass: %s",
            len(pending),
            "post" if downloads_complete else "pre",
            ", ".join(str(r.id) for r in pending),
        )
