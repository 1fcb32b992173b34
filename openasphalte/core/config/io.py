"""
Durable JSON files for config and the module registry.

Writes go through a temp file, fsync and os.replace, with a timestamped copy
of the previous file kept in backups/. A corrupt file is moved to backups/ and
replaced by its last-known-good copy when one exists.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    # "missing", "not_object", "corrupt_json:<detail>" or an OS error.
    error: Optional[str] = None
    # Parsed document when it is valid JSON but not an object.
    raw: Any = None


def _ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.gmtime())


def dumps_json(data: Dict[str, Any]) -> str:
    """Canonical on-disk rendering: sorted keys, indent 2, trailing newline."""
    return json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True) + "\n"


def read_json_file(path: str) -> ReadResult:
    if not os.path.exists(path):
        return ReadResult(ok=False, data={}, error="missing")
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        return ReadResult(ok=False, data={}, error=f"corrupt_json:{e}")
    except (OSError, UnicodeDecodeError) as e:
        return ReadResult(ok=False, data={}, error=str(e))
    if not isinstance(obj, dict):
        return ReadResult(ok=False, data={}, error="not_object", raw=obj)
    return ReadResult(ok=True, data=obj)


def backup_file(path: str, backups_dir: str, *, reason: str, max_backups: int = 10) -> Optional[str]:
    """Copy path to backups/<name>.<ts>.<reason>.json, keeping max_backups per file."""
    if not os.path.exists(path):
        return None
    os.makedirs(backups_dir, exist_ok=True)
    base = os.path.basename(path)
    out = os.path.join(backups_dir, f"{base}.{_ts()}.{reason}.json")
    try:
        shutil.copy2(path, out)
    except OSError as e:
        logger.warning("Backup of %s failed: %s", base, e)
        return None

    prefix = f"{base}."
    items = [os.path.join(backups_dir, f) for f in os.listdir(backups_dir) if f.startswith(prefix)]
    items.sort(key=os.path.getmtime, reverse=True)
    for p in items[max_backups:]:
        try:
            os.remove(p)
        except OSError as e:
            logger.debug("Old backup %s not removed: %s", p, e)
    return out


def atomic_write_json(path: str, data: Dict[str, Any], backups_dir: str, *, max_backups: int = 10) -> None:
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    backup_file(path, backups_dir, reason="prewrite", max_backups=max_backups)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dumps_json(data))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def recover_from_corrupt(path: str, backups_dir: str, last_known_good_dir: str, *, max_backups: int = 10) -> Tuple[Dict[str, Any], bool]:
    """
    Move the corrupt file aside and put the last-known-good copy in its place.
    Returns (data, recovered); data is {} when there is nothing to recover.
    """
    base = os.path.basename(path)
    if os.path.exists(path):
        os.makedirs(backups_dir, exist_ok=True)
        try:
            shutil.move(path, os.path.join(backups_dir, f"{base}.{_ts()}.corrupt.json"))
        except OSError as e:
            logger.warning("Could not move corrupt %s aside: %s", base, e)
    rr = read_json_file(os.path.join(last_known_good_dir, base))
    if not rr.ok:
        return {}, False
    atomic_write_json(path, rr.data, backups_dir, max_backups=max_backups)
    return rr.data, True


def snapshot_last_known_good(path: str, last_known_good_dir: str) -> None:
    if not os.path.isfile(path):
        return
    os.makedirs(last_known_good_dir, exist_ok=True)
    try:
        shutil.copy2(path, os.path.join(last_known_good_dir, os.path.basename(path)))
    except OSError as e:
        logger.warning("Last-known-good snapshot of %s failed: %s", os.path.basename(path), e)


def snapshot_dir_last_known_good(config_dir: str, last_known_good_dir: str) -> None:
    for name in sorted(os.listdir(config_dir)):
        if name.endswith(".json"):
            snapshot_last_known_good(os.path.join(config_dir, name), last_known_good_dir)
