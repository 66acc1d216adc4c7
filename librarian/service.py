"""
Headless runner for Librarian.

Parses the command line, configures logging and runs the watcher and the
dispatch loop in the foreground until SIGINT/SIGTERM:

    python -m librarian                     use ./settings.json
    python -m librarian -s other.json       use another settings file
    python -m librarian --o                 no console output (log file only)
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import signal
import sys
import threading

from librarian import __app_name__, __version__
from librarian.config import DEFAULT_SETTINGS_FILE, Config, ConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

EXIT_OK = 0
EXIT_STARTUP_ERROR = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="librarian",
        description="Watch the launcher manifest, mirror its artifacts and run rules on changes.",
    )
    parser.add_argument(
        "-s",
        "--settings",
        default=DEFAULT_SETTINGS_FILE,
        help="path to the settings file (created with defaults if missing)",
    )
    parser.add_argument(
        "--o",
        "--no-output",
        dest="quiet",
        action="store_true",
        help="suppress console output",
    )
    parser.add_argument(
        "--version", action="version", version=f"{__app_name__} {__version__}"
    )
    return parser


def setup_logging(config: Config, console: bool = True) -> None:
    """Configure rotating file log and stderr handler."""
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT)

    if config.log_to_file:
        log_path = config.log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=config.max_log_size_mb * 1024 * 1024,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    if console:
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root_logger.addHandler(sh)


def run_foreground(librarian) -> None:
    """Run *librarian* until SIGINT/SIGTERM."""
    stop = threading.Event()

    def _handler(sig, frame):
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    librarian.start()
    logger.info("%s running (press Ctrl-C to stop)…", __app_name__)
    while not stop.wait(timeout=1):
        pass
    librarian.stop()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``librarian`` command.  Returns the exit code."""
    args = build_parser().parse_args(argv)

    try:
        config = Config(args.settings)
    except ConfigError as exc:
        print(f"{__app_name__}: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        setup_logging(config, console=not args.quiet)
    except OSError as exc:
        print(f"{__app_name__}: cannot open log file: {exc}", file=sys.stderr)
        return EXIT_STARTUP_ERROR

    # Imported here so that --version and config errors stay cheap
    from librarian.app import Librarian

    try:
        librarian = Librarian(config)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    except OSError as exc:
        logger.error("Cannot prepare library at %s: %s", config.library_path, exc)
        return EXIT_STARTUP_ERROR

    run_foreground(librarian)
    logger.info(librarian.status_summary())
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
