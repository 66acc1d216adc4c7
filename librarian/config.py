"""Configuration management for Librarian.

Stores and retrieves settings from a JSON settings file.  Besides plain
options the file holds the list of conditional actions ("rules"), which
are validated and turned into :class:`~librarian.rules.ConditionalAction`
objects once at startup.
"""

import json
import logging
from pathlib import Path
from typing import Any

from librarian.inventory import BuildType
from librarian.platform_utils import get_log_path as _platform_log_path
from librarian.rules import ConditionalAction, TriggerType
from librarian.web import DEFAULT_MANIFEST_URL

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "settings.json"

DEFAULT_CONFIG: dict[str, Any] = {
    "library_path": "Library",  # relative paths resolve against the settings file
    "manifest_url": DEFAULT_MANIFEST_URL,
    "check_interval_seconds": 19 * 60,
    "request_timeout_seconds": 60,
    # ---- library ----
    "skip_artifacts": False,  # mirror metadata documents only
    "artifact_types": ["client", "server"],  # empty = every listed download
    "verify_artifacts": True,  # size check per pass, SHA-1 during startup validation
    "validate_library_on_startup": False,
    # ---- logging ----
    "log_level": "INFO",
    "log_to_file": True,
    "log_file": "",  # blank = platform default
    "max_log_size_mb": 10,
    "log_backup_count": 3,
    # ---- conditional actions ----
    "rules": [],
}

# Accepted spellings for a rule's build type
_BUILD_TYPE_NAMES = {
    "release": BuildType.RELEASE,
    "snapshot": BuildType.SNAPSHOT,
    "alpha": BuildType.ALPHA,
    "old_alpha": BuildType.ALPHA,
    "beta": BuildType.BETA,
    "old_beta": BuildType.BETA,
    "unknown": BuildType.UNKNOWN,
}


class ConfigError(ValueError):
    """Raised when the settings file or a rule definition is invalid."""


def _parse_rule(index: int, raw: Any) -> ConditionalAction:
    """Turn one entry of the ``rules`` list into a ConditionalAction."""
    where = f"rules[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected an object, got {type(raw).__name__}")

    build_type_name = str(raw.get("build_type", "")).strip().lower()
    if build_type_name not in _BUILD_TYPE_NAMES:
        raise ConfigError(f"{where}: unknown build_type {raw.get('build_type')!r}")

    triggers = raw.get("triggers")
    if not isinstance(triggers, list) or not triggers:
        raise ConfigError(f"{where}: 'triggers' must be a non-empty list")
    try:
        trigger_types = frozenset(TriggerType(str(t).strip().lower()) for t in triggers)
    except ValueError as exc:
        raise ConfigError(f"{where}: {exc}") from exc

    commands = raw.get("commands")
    if (
        not isinstance(commands, list)
        or not commands
        or not all(isinstance(c, str) for c in commands)
    ):
        raise ConfigError(f"{where}: 'commands' must be a non-empty list of strings")

    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(
        isinstance(d, int) and not isinstance(d, bool) for d in depends_on
    ):
        raise ConfigError(f"{where}: 'depends_on' must be a list of rule ids")

    for key in ("placeholder_id", "placeholder_path"):
        if raw.get(key) is not None and not isinstance(raw[key], str):
            raise ConfigError(f"{where}: '{key}' must be a string")

    return ConditionalAction(
        id=index,
        build_type_filter=_BUILD_TYPE_NAMES[build_type_name],
        trigger_types=trigger_types,
        commands=tuple(commands),
        runs_before_download=bool(raw.get("before_download", False)),
        dependent_on_ids=frozenset(depends_on),
        placeholder_id=raw.get("placeholder_id") or None,
        placeholder_path=raw.get("placeholder_path") or None,
    )


def load_rules(raw_rules: Any) -> list[ConditionalAction]:
    """
    Validate and build rules.  Ids are assigned in declaration order.

    Raises ConfigError for malformed entries and for dependencies on ids
    that no rule carries.
    """
    if not isinstance(raw_rules, list):
        raise ConfigError("'rules' must be a list")
    rules = [_parse_rule(i, raw) for i, raw in enumerate(raw_rules)]
    known = {rule.id for rule in rules}
    for rule in rules:
        dangling = rule.dependent_on_ids - known
        if dangling:
            raise ConfigError(
                f"rules[{rule.id}]: depends on unknown rule id(s) {sorted(dangling)}"
            )
        if rule.id in rule.dependent_on_ids:
            logger.warning("rules[%d] depends on itself and will never run", rule.id)
    return rules


class Config:
    """Settings manager backed by a JSON file."""

    def __init__(self, path: Path | str | None = None):
        """Load settings from *path* (``settings.json`` in the working directory by default)."""
        self._path = Path(path) if path else Path.cwd() / DEFAULT_SETTINGS_FILE
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """
        Load settings from disk, applying defaults for missing keys.

        A missing file is created with the defaults.  An unreadable file
        raises ConfigError.
        """
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
            except (json.JSONDecodeError, OSError) as exc:
                raise ConfigError(f"Could not read settings {self._path}: {exc}") from exc
            if not isinstance(stored, dict):
                raise ConfigError(f"Settings {self._path} must contain a JSON object")
            # Merge stored values over defaults so new keys get defaults
            self._data = {**DEFAULT_CONFIG, **stored}
            logger.info("Configuration loaded from %s", self._path)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current settings to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- accessors ----

    @property
    def library_path(self) -> Path:
        """Return the library root, resolved against the settings file's folder."""
        path = Path(self._data["library_path"] or DEFAULT_CONFIG["library_path"])
        if not path.is_absolute():
            path = self._path.parent / path
        return path

    @property
    def manifest_url(self) -> str:
        """Return the URL of the launcher manifest."""
        return self._data.get("manifest_url") or DEFAULT_MANIFEST_URL

    @property
    def check_interval(self) -> int:
        """Return the poll interval in seconds (minimum 5 s)."""
        return max(5, int(self._data["check_interval_seconds"]))

    @property
    def request_timeout(self) -> float:
        return float(self._data.get("request_timeout_seconds", 60))

    @property
    def skip_artifacts(self) -> bool:
        """Return whether only metadata documents are mirrored."""
        return bool(self._data.get("skip_artifacts", False))

    @property
    def artifact_types(self) -> list[str]:
        """Return the artifact names to mirror (empty = all)."""
        return [str(t).strip().lower() for t in self._data.get("artifact_types") or [] if str(t).strip()]

    @property
    def verify_artifacts(self) -> bool:
        """Return whether stored artifacts are checked by size (and SHA-1 when validating)."""
        return bool(self._data.get("verify_artifacts", True))

    @property
    def validate_library_on_startup(self) -> bool:
        return bool(self._data.get("validate_library_on_startup", False))

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @property
    def log_to_file(self) -> bool:
        return bool(self._data.get("log_to_file", True))

    @property
    def log_file(self) -> Path:
        """Return the log file path (platform default when unset)."""
        value = self._data.get("log_file") or ""
        return Path(value) if value else _platform_log_path()

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data.get("max_log_size_mb", 10)))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data.get("log_backup_count", 3)))

    # ---- rules ----

    def rules(self) -> list[ConditionalAction]:
        """Build the configured rules.  Raises ConfigError on invalid definitions."""
        return load_rules(self._data.get("rules", []))
