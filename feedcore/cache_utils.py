from __future__ import annotations

import json
import os
import shutil
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, data: Any, indent: int | None = None) -> None:
    """Write JSON atomically using a temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(tmp_fd, "w") as f:
            json.dump(data, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def backup_path(path: Path, generation: int) -> Path:
    return path.with_name(f"{path.name}.{generation}")


def rotate_backups(path: Path, keep: int) -> None:
    """Shift path -> path.1 -> path.2 ... keeping at most `keep` generations."""
    if keep <= 0 or not path.exists():
        return
    with suppress(OSError):
        backup_path(path, keep).unlink()
    for generation in range(keep - 1, 0, -1):
        src = backup_path(path, generation)
        if src.exists():
            with suppress(OSError):
                os.replace(src, backup_path(path, generation + 1))
    with suppress(OSError):
        shutil.copy2(path, backup_path(path, 1))
