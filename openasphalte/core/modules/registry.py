from __future__ import annotations

"""
Local registry of installed modules.

WHY THIS FILE EXISTS:
The registry is the single source of truth for which modules are usable right
now. It owns the persisted mapping exclusively: every mutation goes through this
object, is serialized by the writer lock and is written to disk before the
mutating call returns.
"""

import contextlib
import logging
import os
import threading
from typing import Any, Dict, Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError

from openasphalte.core.config.io import atomic_write_json, read_json_file, recover_from_corrupt, snapshot_last_known_good
from openasphalte.core.errors import NotInstalledError, ParseError
from openasphalte.core.modules.migrations import migrate_registry_raw
from openasphalte.core.modules.models import InstalledModuleRecord, ModulesRegistryFile, PendingRemoval

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """
    Many concurrent readers or one writer. The writer is reentrant for its
    owning thread, which may also read while holding it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: Optional[int] = None
        self._writer_depth = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                owned = True
            else:
                owned = False
                while self._writer is not None:
                    self._cond.wait()
                self._readers += 1
        try:
            yield
        finally:
            if not owned:
                with self._cond:
                    self._readers -= 1
                    if self._readers == 0:
                        self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
            else:
                while self._writer is not None or self._readers > 0:
                    self._cond.wait()
                self._writer = me
                self._writer_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._writer_depth -= 1
                if self._writer_depth == 0:
                    self._writer = None
                    self._cond.notify_all()


class ModuleRegistry:
    def __init__(self, *, path: str, backups_dir: str, last_known_good_dir: Optional[str] = None, max_backups: int = 10):
        self.path = str(path)
        self.backups_dir = str(backups_dir)
        self.last_known_good_dir = str(last_known_good_dir or os.path.join(self.backups_dir, "last_known_good"))
        self.max_backups = int(max_backups)
        self._lock = ReadWriteLock()
        self._data = ModulesRegistryFile()
        self.load_error: Optional[ParseError] = None

    # ---- locking ----
    def reading(self):
        return self._lock.read()

    def writing(self):
        return self._lock.write()

    # ---- persistence ----
    def load(self) -> "ModuleRegistry":
        with self.writing():
            self.load_error = None
            rr = read_json_file(self.path)
            raw: Any = {}
            readable = rr.ok
            if rr.ok:
                raw = rr.data
            elif rr.error == "not_object":
                # Releases before schema 1 stored a bare list of records.
                raw = rr.raw
                readable = True
            elif rr.error and rr.error != "missing":
                self.load_error = ParseError("Module registry is unreadable; restored last known good copy.", path=self.path, error=rr.error)
                logger.warning("Module registry unreadable (%s); attempting recovery", rr.error)
                raw, recovered = recover_from_corrupt(self.path, self.backups_dir, self.last_known_good_dir, max_backups=self.max_backups)
                logger.warning("Module registry recovery: recovered=%s", recovered)

            migrated, applied = migrate_registry_raw(raw)
            try:
                self._data = ModulesRegistryFile.model_validate(migrated)
            except PydanticValidationError as e:
                self.load_error = ParseError("Module registry has invalid entries.", path=self.path, error=str(e)[:300])
                logger.warning("Module registry invalid, keeping valid records only: %s", e)
                self._data = self._salvage(migrated)
                applied.add("salvage")
            if applied and readable:
                logger.info("Module registry migrated: %s", ", ".join(sorted(applied)))
                self.persist()
            elif readable:
                snapshot_last_known_good(self.path, self.last_known_good_dir)
        return self

    @staticmethod
    def _salvage(raw: Dict) -> ModulesRegistryFile:
        out = ModulesRegistryFile()
        for mid, rec in (raw.get("modules") or {}).items():
            try:
                out.modules[mid] = InstalledModuleRecord.model_validate(rec)
            except PydanticValidationError:
                logger.warning("Dropping invalid registry record %s", mid)
        for mid, ent in (raw.get("pending_removals") or {}).items():
            try:
                out.pending_removals[mid] = PendingRemoval.model_validate(ent)
            except PydanticValidationError:
                logger.warning("Dropping invalid pending removal %s", mid)
        return out

    def persist(self) -> None:
        with self.writing():
            atomic_write_json(self.path, self._data.model_dump(mode="json"), self.backups_dir, max_backups=self.max_backups)

    # ---- queries ----
    def get(self, identifier: str) -> Optional[InstalledModuleRecord]:
        with self.reading():
            rec = self._data.modules.get(str(identifier).lower())
            return rec.model_copy(deep=True) if rec is not None else None

    def require_active(self, identifier: str) -> InstalledModuleRecord:
        rec = self.get(identifier)
        if rec is None or rec.pending_removal:
            raise NotInstalledError(str(identifier))
        return rec

    def snapshot(self) -> ModulesRegistryFile:
        with self.reading():
            return self._data.model_copy(deep=True)

    def records(self) -> List[InstalledModuleRecord]:
        with self.reading():
            return [r.model_copy(deep=True) for r in self._data.modules.values()]

    def active_records(self) -> List[InstalledModuleRecord]:
        """Installed modules that are usable now; staged removals are filtered out."""
        return [r for r in self.records() if not r.pending_removal]

    def active_ids(self) -> List[str]:
        return [r.identifier for r in self.active_records()]

    def is_active(self, identifier: str) -> bool:
        rec = self.get(identifier)
        return rec is not None and not rec.pending_removal

    def dependents_of(self, identifier: str) -> List[str]:
        ident = str(identifier).lower()
        return sorted(r.identifier for r in self.active_records() if ident in r.dependencies)

    def pending_removals(self) -> List[PendingRemoval]:
        with self.reading():
            return [p.model_copy(deep=True) for p in self._data.pending_removals.values()]

    def get_pending(self, identifier: str) -> Optional[PendingRemoval]:
        with self.reading():
            ent = self._data.pending_removals.get(str(identifier).lower())
            return ent.model_copy(deep=True) if ent is not None else None

    # ---- mutations (each persisted immediately) ----
    def upsert(self, record: InstalledModuleRecord) -> None:
        with self.writing():
            self._data.modules[record.identifier] = record.model_copy(deep=True)
            self.persist()

    def drop(self, identifier: str) -> bool:
        ident = str(identifier).lower()
        with self.writing():
            removed = self._data.modules.pop(ident, None) is not None
            removed = (self._data.pending_removals.pop(ident, None) is not None) or removed
            if removed:
                self.persist()
            return removed

    def rename(self, old: str, new: str) -> None:
        old, new = str(old).lower(), str(new).lower()
        with self.writing():
            rec = self._data.modules.pop(old)
            self._data.modules[new] = rec.model_copy(update={"identifier": new})
            ent = self._data.pending_removals.pop(old, None)
            if ent is not None:
                self._data.pending_removals[new] = ent.model_copy(update={"identifier": new})
            self.persist()

    def mark_pending(self, identifier: str, entry: PendingRemoval) -> None:
        ident = str(identifier).lower()
        with self.writing():
            rec = self._data.modules.get(ident)
            if rec is None:
                raise NotInstalledError(ident)
            self._data.modules[ident] = rec.model_copy(update={"pending_removal": True})
            self._data.pending_removals[ident] = entry.model_copy(deep=True)
            self.persist()

    def put_pending(self, entry: PendingRemoval) -> None:
        with self.writing():
            self._data.pending_removals[entry.identifier] = entry.model_copy(deep=True)
            self.persist()

    def clear_pending(self, identifier: str, *, drop_record: bool) -> None:
        ident = str(identifier).lower()
        with self.writing():
            self._data.pending_removals.pop(ident, None)
            if drop_record:
                self._data.modules.pop(ident, None)
            else:
                rec = self._data.modules.get(ident)
                if rec is not None and rec.pending_removal:
                    self._data.modules[ident] = rec.model_copy(update={"pending_removal": False})
            self.persist()
