"""Logging setup for memledger.

Two sinks, both under ``<home>/logs``:

- ``local-<date>.log``: the ``memledger`` logger tree, for debugging.
- ``ledger-events-<date>.log``: one line per ledger event (store, revoke,
  compile, epoch). Counts and ids only, never memory content.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from memledger.utils import get_ledger_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir(home: Optional[Path] = None) -> Path:
    log_dir = (home or get_ledger_home()) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_memledger_logging(
    kernel_id: str = "default", level: str = "INFO", home: Optional[Path] = None
) -> logging.Logger:
    """Configure the ``memledger`` logger.

    Adds a file handler (and a console handler at DEBUG). Calling it
    again does not stack duplicate handlers.

    Args:
        kernel_id: Identity the session runs as (recorded once at setup)
        level: Level name, case-insensitive. Unknown names fall back to INFO.
        home: Ledger home (default: ``get_ledger_home()``)

    Returns:
        The configured ``memledger`` logger
    """
    logger = logging.getLogger("memledger")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        log_file = _log_dir(home) / f"local-{_today()}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug(f"memledger logging configured for kernel {kernel_id}")
    return logger


def log_ledger_event(
    event_type: str, details: str, kernel_id: str = "default", home: Optional[Path] = None
) -> None:
    """Append one line to the ledger event log."""
    timestamp = datetime.now(timezone.utc).isoformat()
    line = f"{timestamp} | {event_type} | kernel={kernel_id} | {details}\n"
    event_file = _log_dir(home) / f"ledger-events-{_today()}.log"
    with open(event_file, "a", encoding="utf-8") as f:
        f.write(line)


def _short(identifier: str) -> str:
    return f"{identifier[:8]}..." if len(identifier) > 8 else identifier


def log_store(
    kernel_id: str, envelope_id: str, kind: str, address: str, home: Optional[Path] = None
) -> None:
    log_ledger_event(
        "store",
        f"envelope={_short(envelope_id)}, kind={kind}, address={_short(address)}",
        kernel_id=kernel_id,
        home=home,
    )


def log_revoke(
    kernel_id: str, envelope_id: str, tombstone_id: str, reason: str, home: Optional[Path] = None
) -> None:
    log_ledger_event(
        "revoke",
        f"envelope={_short(envelope_id)}, tombstone={_short(tombstone_id)}, reason={reason}",
        kernel_id=kernel_id,
        home=home,
    )


def log_compile(
    kernel_id: str,
    intent: str,
    considered: int,
    included: int,
    denied: int,
    tokens: int,
    home: Optional[Path] = None,
) -> None:
    log_ledger_event(
        "compile",
        f"intent={intent}, considered={considered}, included={included}, "
        f"denied={denied}, tokens={tokens}",
        kernel_id=kernel_id,
        home=home,
    )


def log_epoch(
    kernel_id: str, previous_kernel_id: str, reason: Optional[str], home: Optional[Path] = None
) -> None:
    log_ledger_event(
        "epoch",
        f"previous={_short(previous_kernel_id)}, reason={reason or 'unspecified'}",
        kernel_id=kernel_id,
        home=home,
    )
