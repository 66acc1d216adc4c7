"""
Platform helpers for Librarian.

Holds the OS checks, the default locations of the application data folder
and log file, and the shell used to run rule commands:

  - Windows : ``cmd.exe /C``
  - macOS   : ``bash -c`` (``/bin/sh -c`` if bash is missing)
  - Linux   : same as macOS
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application data directory, created if needed.

    - Windows : ``%APPDATA%\\Librarian``
    - macOS   : ``~/Library/Application Support/Librarian``
    - Linux   : ``$XDG_CONFIG_HOME/Librarian`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / "Librarian"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the default path of the log file (inside the config directory)."""
    return get_config_dir() / "librarian.log"


# ---- command execution -------------------------------------------------


def _shell_argv(command: str) -> list[str]:
    """Return the argv that runs *command* in the platform shell."""
    if IS_WINDOWS:
        return [os.environ.get("COMSPEC", "cmd.exe"), "/C", command]
    shell = shutil.which("bash") or "/bin/sh"
    return [shell, "-c", command]


def run_shell_command(command: str) -> int:
    """
    Run *command* in the platform shell and wait for it to finish.

    Returns the process exit code, or ``-1`` if the process could not be
    started at all.  On POSIX a process killed by a signal also reports a
    negative code.
    """
    kwargs = {}
    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW  # type: ignore[attr-defined]
    try:
        completed = subprocess.run(_shell_argv(command), check=False, **kwargs)
    except OSError as exc:
        logger.error("Could not start command %r: %s", command, exc)
        return -1
    logger.debug("Command %r exited with %d", command, completed.returncode)
    return completed.returncode
