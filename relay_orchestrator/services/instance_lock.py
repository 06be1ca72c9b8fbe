"""Single-instance guard for the relay process.

Two relays sharing one data directory would both poll Telegram (each update
handled twice) and both open every WhatsApp session (the gateway kicks the older
one, which reconnects and kicks the newer one, forever). The lock file lives in
the data directory and records the owning pid.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

LOCK_FILENAME = "relay.lock"


class RelayAlreadyRunning(RuntimeError):
    """Another relay process holds the lock on this data directory."""


@contextmanager
def acquire_instance_lock(data_dir: Path | None = None) -> Iterator[Path]:
    if data_dir is None:
        from relay_orchestrator.config import settings
        data_dir = settings.DATA_DIR

    data_dir = Path(data_dir)
    data_dir.mkdir(parents=True, exist_ok=True)
    lock_path = data_dir / LOCK_FILENAME

    fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
    locked = False
    try:
        if not _lock(fd):
            raise RelayAlreadyRunning(
                f"A relay is already running on {data_dir} (pid={_owner(lock_path)})"
            )
        locked = True
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.info("[LOCK] Acquired %s (pid=%s)", lock_path, os.getpid())
        yield lock_path
    finally:
        if locked:
            _unlock(fd)
        os.close(fd)
        if locked:
            lock_path.unlink(missing_ok=True)
            logger.info("[LOCK] Released %s", lock_path)


def _lock(fd: int) -> bool:
    if sys.platform == "win32":
        import msvcrt
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True

    import fcntl
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(fd: int) -> None:
    try:
        if sys.platform == "win32":
            import msvcrt
            os.lseek(fd, 0, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
        else:
            import fcntl
            fcntl.flock(fd, fcntl.LOCK_UN)
    except OSError as exc:
        logger.warning("[LOCK] Unlock failed: %s", exc)


def _owner(lock_path: Path) -> str:
    try:
        return lock_path.read_text().strip() or "unknown"
    except OSError:
        return "unknown"
