from __future__ import annotations

"""
Startup reconciliation.

Runs once per process, before any module is loaded. It finalizes staged
removals, repairs drift between the registry and the modules directory,
re-keys legacy identifiers and registers bundles found on disk.

Nothing in here raises: each step is isolated, failures are logged and kept in
the report, and work that cannot finish now (locked files) is left for the next
start.
"""

import logging
import os
import shutil
from typing import Callable, Dict, Mapping, Optional

from openasphalte.core.modules.discovery import STAGING_DIRNAME, BundleDiscovery, remap_legacy
from openasphalte.core.modules.models import (
    InstalledModuleRecord,
    ReconcileReport,
    SourceKind,
    iso_now,
    normalize_identifier,
)
from openasphalte.core.modules.registry import ModuleRegistry
from openasphalte.core.modules.versions import try_parse_version

logger = logging.getLogger(__name__)


class StartupReconciler:
    def __init__(
        self,
        registry: ModuleRegistry,
        modules_dir: str,
        *,
        marker: str = ".del",
        legacy_prefixes: Optional[Mapping[str, str]] = None,
        delete_file: Callable[[str], None] = os.remove,
    ):
        self.registry = registry
        self.modules_dir = str(modules_dir)
        self.marker = marker
        self.legacy_prefixes: Dict[str, str] = dict(legacy_prefixes or {})
        self._delete = delete_file

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        steps = [
            ("pending_removals", self._finalize_pending),
            ("drift_repair", self._repair_drift),
            ("legacy_ids", self._migrate_legacy),
            ("discovery", self._register_discovered),
            ("housekeeping", self._housekeeping),
        ]
        with self.registry.writing():
            for name, step in steps:
                try:
                    step(report)
                except Exception as e:
                    logger.error("Reconcile step %s failed: %s", name, e)
                    report.errors.append(f"{name}: {e}")

        if report.changed or report.deferred or report.errors:
            logger.info(
                "Reconciled modules: removed=%d deferred=%d dropped=%d repaired=%d registered=%d migrated=%d orphans=%d errors=%d",
                len(report.removed),
                len(report.deferred),
                len(report.dropped),
                len(report.repaired),
                len(report.registered),
                len(report.migrated),
                len(report.orphans_deleted),
                len(report.errors),
            )
        return report

    # ---- steps ----
    def _finalize_pending(self, report: ReconcileReport) -> None:
        for entry in self.registry.pending_removals():
            remaining = []
            deleted = []
            for rel in entry.trashed_files:
                path = os.path.join(self.modules_dir, rel)
                try:
                    self._delete(path)
                    deleted.append(rel)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.debug("Could not delete %s: %s", path, e)
                    remaining.append(rel)
            for rel in deleted:
                self._prune_empty_dirs(os.path.dirname(os.path.join(self.modules_dir, rel)))

            if remaining:
                logger.warning(
                    "Removal of %s deferred to next startup: %d file(s) still locked", entry.identifier, len(remaining)
                )
                report.deferred.append(entry.identifier)
                if len(remaining) != len(entry.trashed_files):
                    self.registry.put_pending(entry.model_copy(update={"trashed_files": remaining}))
                continue

            self.registry.clear_pending(entry.identifier, drop_record=entry.remove_record)
            if entry.remove_record:
                logger.info("Removed module %s", entry.identifier)
                report.removed.append(entry.identifier)
            else:
                report.orphans_deleted.extend(deleted)

    def _repair_drift(self, report: ReconcileReport) -> None:
        for rec in self.registry.active_records():
            if not rec.files:
                continue
            present = [f for f in rec.files if os.path.lexists(os.path.join(self.modules_dir, f))]
            if not present:
                logger.warning("Module %s has no files on disk; dropping it from the registry", rec.identifier)
                self.registry.drop(rec.identifier)
                report.dropped.append(rec.identifier)
            elif len(present) < len(rec.files):
                missing = sorted(set(rec.files) - set(present))
                logger.warning("Module %s is missing %d file(s): %s", rec.identifier, len(missing), ", ".join(missing[:5]))
                self.registry.upsert(rec.model_copy(update={"files": present}))
                report.repaired.append(rec.identifier)

    def _migrate_legacy(self, report: ReconcileReport) -> None:
        if not self.legacy_prefixes:
            return
        for rec in self.registry.records():
            new = remap_legacy(rec.identifier, self.legacy_prefixes)
            if new == rec.identifier:
                continue
            if self.registry.get(new) is None:
                self.registry.rename(rec.identifier, new)
                logger.info("Migrated legacy module id %s -> %s", rec.identifier, new)
                report.migrated[rec.identifier] = new
            else:
                logger.warning("Legacy module %s duplicates %s; dropping the legacy record", rec.identifier, new)
                self.registry.drop(rec.identifier)
                report.dropped.append(rec.identifier)

        for rec in self.registry.records():
            deps = [remap_legacy(d, self.legacy_prefixes) for d in rec.dependencies]
            if deps != rec.dependencies:
                self.registry.upsert(rec.model_copy(update={"dependencies": deps}))

    def _register_discovered(self, report: ReconcileReport) -> None:
        discovery = BundleDiscovery(modules_root=self.modules_dir, marker=self.marker, legacy_prefixes=self.legacy_prefixes)
        claimed = set()
        for rec in self.registry.records():
            claimed.add(rec.identifier)
            claimed.update(f.split("/", 1)[0] for f in rec.files)

        for dirname, bundle in discovery.scan().items():
            if dirname.lower() in claimed or dirname in claimed:
                continue
            try:
                ident = normalize_identifier(bundle.identifier)
            except ValueError as e:
                logger.warning("Skipping module bundle %s: %s", dirname, e)
                continue
            if self.registry.get(ident) is not None:
                logger.debug("Bundle %s shadows registered module %s; ignored", dirname, ident)
                continue
            if bundle.manifest_error:
                logger.warning("Module bundle %s has an unreadable manifest: %s", dirname, bundle.manifest_error)

            version = try_parse_version(bundle.version)
            record = InstalledModuleRecord(
                identifier=ident,
                version=str(version) if version else "0.0.0",
                name=bundle.name,
                files=bundle.files,
                dependencies=bundle.dependencies,
                installed_at=iso_now(),
                source=SourceKind.discovered,
                source_location=bundle.bundle_dir,
            )
            self.registry.upsert(record)
            claimed.add(ident)
            claimed.add(dirname)
            logger.info("Registered module %s %s found in %s", ident, record.version, dirname)
            report.registered.append(ident)
            if bundle.legacy_name:
                report.migrated[bundle.legacy_name] = ident

    def _housekeeping(self, report: ReconcileReport) -> None:
        staging = os.path.join(self.modules_dir, STAGING_DIRNAME)
        if os.path.isdir(staging):
            shutil.rmtree(staging, ignore_errors=True)
        if not os.path.isdir(self.modules_dir):
            return

        tracked = set()
        for entry in self.registry.pending_removals():
            tracked.update(entry.trashed_files)

        for root, dirs, files in os.walk(self.modules_dir):
            dirs[:] = [d for d in dirs if not d.startswith(".")]
            for fn in files:
                if not fn.endswith(self.marker):
                    continue
                path = os.path.join(root, fn)
                rel = os.path.relpath(path, self.modules_dir).replace("\\", "/")
                if rel in tracked:
                    continue
                try:
                    self._delete(path)
                except OSError as e:
                    logger.debug("Orphan %s not deleted: %s", rel, e)
                    continue
                report.orphans_deleted.append(rel)

    def _prune_empty_dirs(self, directory: str) -> None:
        root = os.path.realpath(self.modules_dir)
        current = os.path.realpath(directory)
        while current != root and current.startswith(root + os.sep):
            try:
                os.rmdir(current)
            except OSError:
                return
            current = os.path.dirname(current)
