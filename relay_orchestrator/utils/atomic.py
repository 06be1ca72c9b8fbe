"""Atomic JSON persistence used by the document store.

Every document is written to a uniquely named sibling, flushed to disk, and then
swapped into place with ``os.replace``. A reader therefore sees either the old
document or the new one, never a torn write. Unique temp names let two documents
in the same directory be written from different worker threads at once.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write_json(
    path: Path,
    data: Any,
    *,
    indent: int = 2,
    ensure_ascii: bool = False,
) -> None:
    """Atomically replace *path* with *data* serialized as UTF-8 JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=indent, ensure_ascii=ensure_ascii, default=str)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path) -> Any:
    """Read a JSON document; raises ``FileNotFoundError`` / ``ValueError`` as-is."""
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)
