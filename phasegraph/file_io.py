"""File primitives for the JSON graph store: atomic writes and advisory locks."""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_POLL_INITIAL = 0.05
LOCK_POLL_MAX = 0.5
LOCK_POLL_FACTOR = 1.5


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def atomic_write_json(path: Path, data: Any) -> int:
    """Write *data* as JSON via a temp file + rename. Returns bytes written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    return len(payload.encode("utf-8"))


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@contextmanager
def file_lock(path: Path, timeout: float = 5.0) -> Iterator[Path]:
    """Hold the advisory ``<path>.lock`` marker for the duration of the block.

    Waits with exponential backoff while another writer holds the marker and
    raises :class:`LockTimeoutError` once *timeout* seconds have passed.
    Readers never consult the marker.
    """
    lock_path = lock_path_for(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    started = time.monotonic()
    delay = LOCK_POLL_INITIAL

    while True:
        try:
            fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            if time.monotonic() - started > timeout:
                raise LockTimeoutError(str(path), timeout) from None
            time.sleep(delay)
            delay = min(delay * LOCK_POLL_FACTOR, LOCK_POLL_MAX)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "timestamp": datetime.now(timezone.utc).isoformat()}, f)
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            logger.warning("Lock marker %s vanished before release", lock_path)
