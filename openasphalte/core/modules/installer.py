from __future__ import annotations

"""
Plan application: installs, upgrades and staged removals.

WHY THIS FILE EXISTS:
A running host keeps module files open, so nothing here deletes an installed
file directly. Files being replaced or removed are renamed in place to
"<path><marker>" and deleted by the startup reconciler on the next launch.

Plans are applied step by step with no rollback across steps: when a step fails,
the steps before it stay installed. The failing step itself is undone file by
file, so the registry records exactly what landed on disk.
"""

import logging
import os
import shutil
import tempfile
import threading
import zipfile
import zlib
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import requests

from openasphalte.core.config.io import dumps_json
from openasphalte.core.errors import (
    DependentStillInstalledError,
    FileLockedError,
    FileSystemError,
    ManifestMismatchError,
    ModuleManagerError,
    NetworkError,
    NotInstalledError,
    ParseError,
    ValidationError,
)
from openasphalte.core.modules.discovery import MANIFEST_FILENAME, STAGING_DIRNAME, sha256_file, to_relative
from openasphalte.core.modules.models import (
    ApplyReport,
    InstalledModuleRecord,
    ModuleDescriptor,
    PendingRemoval,
    PlanAction,
    PlanStep,
    ResolutionPlan,
    StepFailure,
    iso_now,
    requested_identifier,
)
from openasphalte.core.modules.registry import ModuleRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


def _fs_error(e: OSError, path: str) -> ModuleManagerError:
    if isinstance(e, PermissionError):
        return FileLockedError(path, error=str(e))
    return FileSystemError(f"File operation failed on {path}: {e}", path=path)


class ModuleUninstaller:
    def __init__(
        self,
        registry: ModuleRegistry,
        modules_dir: str,
        *,
        marker: str = ".del",
        rename_file: Callable[[str, str], None] = os.replace,
    ):
        self.registry = registry
        self.modules_dir = str(modules_dir)
        self.marker = marker
        self._rename = rename_file

    def stage(self, identifier: str, *, also_removing: Iterable[str] = ()) -> PendingRemoval:
        """
        Rename every file of the module to its trashed name and mark the record
        pending. The module is absent for all readers as soon as this returns.
        """
        ident = requested_identifier(identifier)
        together = {requested_identifier(i) for i in also_removing}
        with self.registry.writing():
            rec = self.registry.get(ident)
            if rec is None or rec.pending_removal:
                raise NotInstalledError(ident)
            blockers = [d for d in self.registry.dependents_of(ident) if d not in together]
            if blockers:
                raise DependentStillInstalledError(ident, blockers)

            done: List[tuple[str, str]] = []
            trashed: List[str] = []
            for rel in rec.files:
                path = os.path.join(self.modules_dir, rel)
                if not os.path.lexists(path):
                    logger.debug("Staging %s: %s already absent", ident, rel)
                    continue
                trash = path + self.marker
                try:
                    if os.path.lexists(trash):
                        os.remove(trash)
                    self._rename(path, trash)
                except OSError as e:
                    self._revert(done)
                    logger.warning("Staging removal of %s failed on %s: %s", ident, rel, e)
                    raise _fs_error(e, path) from e
                done.append((path, trash))
                trashed.append(rel + self.marker)

            earlier = self.registry.get_pending(ident)
            if earlier is not None:
                trashed = sorted(set(earlier.trashed_files) | set(trashed))
            entry = PendingRemoval(identifier=ident, trashed_files=trashed, staged_at=iso_now(), remove_record=True)
            self.registry.mark_pending(ident, entry)
            logger.info("Staged removal of %s (%d file(s)); finalized at next startup", ident, len(trashed))
            return entry

    def restore(self, identifier: str) -> InstalledModuleRecord:
        """Undo a staged removal before the next startup finalizes it."""
        ident = requested_identifier(identifier)
        with self.registry.writing():
            rec = self.registry.get(ident)
            entry = self.registry.get_pending(ident)
            if rec is None:
                raise NotInstalledError(ident)
            if not rec.pending_removal or entry is None:
                raise ValidationError(f"Module '{ident}' is not staged for removal.", identifier=ident)

            owned = {f + self.marker for f in rec.files}
            to_restore = [t for t in entry.trashed_files if t in owned]
            leftovers = [t for t in entry.trashed_files if t not in owned]
            missing = [t for t in to_restore if not os.path.lexists(os.path.join(self.modules_dir, t))]
            if missing:
                raise FileSystemError(f"Cannot restore '{ident}': trashed files are gone: {', '.join(missing)}", identifier=ident)

            done: List[tuple[str, str]] = []
            for t in to_restore:
                trash = os.path.join(self.modules_dir, t)
                path = trash[: -len(self.marker)]
                try:
                    self._rename(trash, path)
                except OSError as e:
                    self._revert(done)
                    raise _fs_error(e, trash) from e
                done.append((trash, path))

            self.registry.clear_pending(ident, drop_record=False)
            if leftovers:
                self.registry.put_pending(
                    PendingRemoval(identifier=ident, trashed_files=leftovers, staged_at=entry.staged_at, remove_record=False)
                )
            logger.info("Restored %s (%d file(s))", ident, len(done))
            return self.registry.require_active(ident)

    def _revert(self, done: List[tuple[str, str]]) -> None:
        for src, dst in reversed(done):
            try:
                self._rename(dst, src)
            except OSError as e:
                logger.error("Could not revert rename %s -> %s: %s", dst, src, e)


class ModuleInstaller:
    def __init__(
        self,
        registry: ModuleRegistry,
        modules_dir: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 60.0,
        marker: str = ".del",
        user_agent: str = "OpenAsphalte-Plugin/1.0",
        replace_file: Callable[[str, str], None] = os.replace,
        uninstaller: Optional[ModuleUninstaller] = None,
    ):
        self.registry = registry
        self.modules_dir = str(modules_dir)
        self.session = session or requests.Session()
        self.timeout_seconds = float(timeout_seconds)
        self.marker = marker
        self.user_agent = user_agent
        self._replace = replace_file
        self.uninstaller = uninstaller or ModuleUninstaller(registry, modules_dir, marker=marker)

    # ---- public API ----
    def apply(
        self,
        plan: ResolutionPlan,
        *,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ApplyReport:
        report = ApplyReport(skipped=plan.identifiers(PlanAction.SKIP))
        work = [s for s in plan.steps if s.action != PlanAction.SKIP]
        removing = set(plan.identifiers(PlanAction.REMOVE))

        with self.registry.writing():
            for idx, step in enumerate(work):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    report.not_attempted = [s.identifier for s in work[idx:]]
                    logger.info("Plan cancelled before %s", step.identifier)
                    break
                if progress is not None:
                    progress(step.identifier, idx, len(work))
                try:
                    if step.action == PlanAction.REMOVE:
                        self.uninstaller.stage(step.identifier, also_removing=removing)
                        report.removed.append(step.identifier)
                    else:
                        self.install_step(step)
                        report.succeeded.append(step.identifier)
                except ModuleManagerError as e:
                    report.failed = StepFailure(identifier=step.identifier, code=e.code, message=e.user_message)
                    report.not_attempted = [s.identifier for s in work[idx + 1 :]]
                    logger.error("%s of %s failed: %s", step.action.value, step.identifier, e.user_message)
                    break
                except OSError as e:
                    err = _fs_error(e, getattr(e, "filename", None) or step.identifier)
                    report.failed = StepFailure(identifier=step.identifier, code=err.code, message=err.user_message)
                    report.not_attempted = [s.identifier for s in work[idx + 1 :]]
                    logger.error("%s of %s failed: %s", step.action.value, step.identifier, e)
                    break

        logger.info("Plan applied: %s", report.summary())
        return report

    def install_step(self, step: PlanStep) -> InstalledModuleRecord:
        desc = step.descriptor
        if desc is None:
            raise ValidationError(f"No catalog entry to install '{step.identifier}'.", identifier=step.identifier)

        staging_root = os.path.join(self.modules_dir, STAGING_DIRNAME)
        os.makedirs(staging_root, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=f"{desc.identifier}-", dir=staging_root)
        try:
            payload = self._fetch(desc, staging)
            files = self._verify_manifest(desc, payload)
            return self._place(desc, payload, files)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    # ---- fetch ----
    def _fetch(self, desc: ModuleDescriptor, staging: str) -> str:
        uri = desc.download_uri
        if not uri:
            raise ValidationError(f"'{desc.identifier}' has no download location.", identifier=desc.identifier)
        parsed = urlparse(uri)
        payload = os.path.join(staging, "payload")
        download_dir = os.path.join(staging, "download")
        os.makedirs(download_dir, exist_ok=True)

        if parsed.scheme in {"http", "https"}:
            artifact = os.path.join(download_dir, os.path.basename(unquote(parsed.path)) or "artifact")
            self._download(uri, artifact)
        else:
            local = unquote(parsed.path) if parsed.scheme == "file" else uri
            if os.path.isdir(local):
                shutil.copytree(local, payload)
                return payload
            if not os.path.isfile(local):
                raise NetworkError(f"Artifact not found: {uri}", identifier=desc.identifier)
            artifact = os.path.join(download_dir, os.path.basename(local))
            shutil.copy2(local, artifact)

        if desc.sha256:
            actual = sha256_file(artifact)
            if actual != desc.sha256:
                raise ValidationError(
                    f"Checksum mismatch for '{desc.identifier}'.",
                    identifier=desc.identifier,
                    expected=desc.sha256,
                    actual=actual,
                )

        os.makedirs(payload, exist_ok=True)
        if zipfile.is_zipfile(artifact):
            self._extract(artifact, payload)
        else:
            os.replace(artifact, os.path.join(payload, os.path.basename(artifact)))
        return payload

    def _download(self, url: str, dest: str) -> None:
        try:
            r = self.session.get(url, stream=True, timeout=self.timeout_seconds, headers={"User-Agent": self.user_agent})
        except requests.Timeout as e:
            raise NetworkError("Timed out downloading module.", url=url) from e
        except requests.RequestException as e:
            raise NetworkError(f"Unable to download module: {e}", url=url) from e
        try:
            if r.status_code == 404:
                raise NetworkError("Module download not found (404).", url=url, status=404)
            if r.status_code == 403:
                raise NetworkError("Module download was denied (403).", url=url, status=403)
            if r.status_code >= 400:
                raise NetworkError(f"Module download failed with HTTP {r.status_code}.", url=url, status=r.status_code)
            with open(dest, "wb") as f:
                for chunk in r.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            raise NetworkError(f"Module download interrupted: {e}", url=url) from e
        finally:
            r.close()

    @staticmethod
    def _extract(zip_path: str, out: str) -> None:
        root = os.path.realpath(out)
        try:
            with zipfile.ZipFile(zip_path, "r") as z:
                for info in z.infolist():
                    target = os.path.realpath(os.path.join(out, info.filename))
                    if target != root and not target.startswith(root + os.sep):
                        raise ValidationError(f"Archive entry escapes the module directory: {info.filename}")
                z.extractall(out)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError) as e:
            raise ParseError(f"Module archive is corrupt: {e}", path=os.path.basename(zip_path)) from e

    def _verify_manifest(self, desc: ModuleDescriptor, payload: str) -> List[str]:
        """Return the files to place, relative to the payload root."""
        if desc.files:
            missing = [f for f in desc.files if not os.path.isfile(os.path.join(payload, f))]
            entries = os.listdir(payload)
            # Archives that wrap everything in one top-level folder.
            if missing and len(entries) == 1 and os.path.isdir(os.path.join(payload, entries[0])):
                inner = os.path.join(payload, entries[0])
                if all(os.path.isfile(os.path.join(inner, f)) for f in desc.files):
                    for name in os.listdir(inner):
                        os.replace(os.path.join(inner, name), os.path.join(payload, name))
                    os.rmdir(inner)
                    missing = []
            if missing:
                raise ManifestMismatchError(desc.identifier, missing)
            return list(desc.files)

        found: List[str] = []
        for root, dirs, names in os.walk(payload):
            dirs.sort()
            for n in sorted(names):
                found.append(to_relative(os.path.join(root, n), payload))
        found = [f for f in found if f != MANIFEST_FILENAME]
        if not found:
            raise ManifestMismatchError(desc.identifier, ["<any file>"])
        return found

    # ---- placement ----
    def _place(self, desc: ModuleDescriptor, payload: str, files: List[str]) -> InstalledModuleRecord:
        ident = desc.identifier
        target_dir = os.path.join(self.modules_dir, ident)
        previous = self.registry.get(ident)

        manifest_src = os.path.join(payload, MANIFEST_FILENAME)
        with open(manifest_src, "w", encoding="utf-8") as f:
            f.write(dumps_json(self._manifest(desc, files)))

        placed: List[str] = []
        moved_aside: Dict[str, str] = {}
        try:
            for rel in [f for f in files if f != MANIFEST_FILENAME] + [MANIFEST_FILENAME]:
                dst = os.path.join(target_dir, rel)
                self._place_file(os.path.join(payload, rel), dst, moved_aside)
                placed.append(dst)
        except (ModuleManagerError, OSError) as e:
            logger.warning("Placing %s failed after %d file(s); rolling back: %s", ident, len(placed), e)
            self._rollback(ident, placed, moved_aside)
            raise

        trashed = [to_relative(t, self.modules_dir) for t in moved_aside.values()]
        placed_rel = [to_relative(p, self.modules_dir) for p in placed]
        if previous is not None:
            for old in previous.files:
                if old in placed_rel:
                    continue
                path = os.path.join(self.modules_dir, old)
                if not os.path.lexists(path):
                    continue
                try:
                    if os.path.lexists(path + self.marker):
                        os.remove(path + self.marker)
                    self._replace(path, path + self.marker)
                    trashed.append(old + self.marker)
                except OSError as e:
                    logger.warning("Could not trash leftover %s of %s: %s", old, ident, e)

        record = InstalledModuleRecord(
            identifier=ident,
            version=desc.version,
            name=desc.name,
            files=placed_rel,
            dependencies=[d.identifier for d in desc.dependencies],
            installed_at=iso_now(),
            source=desc.source,
            source_location=desc.source_location or desc.download_uri,
        )

        # A staged removal of the same identifier must not drop the fresh record.
        self._track_trashed(ident, trashed, remove_record=False)
        self.registry.upsert(record)
        verb = "Upgraded" if previous is not None and not previous.pending_removal else "Installed"
        logger.info("%s %s %s (%d file(s))", verb, ident, desc.version, len(placed_rel))
        return record

    def _place_file(self, src: str, dst: str, moved_aside: Dict[str, str]) -> None:
        """
        Move src to dst. An existing dst is renamed to "<dst><marker>" first, since
        the host may hold it open; moved_aside maps dst to that name.
        """
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        if os.path.lexists(dst):
            trash = dst + self.marker
            try:
                if os.path.lexists(trash):
                    os.remove(trash)
                self._replace(dst, trash)
            except OSError as e:
                raise _fs_error(e, dst) from e
            moved_aside[dst] = trash
        try:
            self._replace(src, dst)
        except OSError as e:
            raise _fs_error(e, dst) from e

    def _rollback(self, ident: str, placed: List[str], moved_aside: Dict[str, str]) -> None:
        """
        Undo a partial placement: originals go back to their names and new files
        are trashed, so the registry entry (or its absence) still matches the disk.
        """
        leftovers: List[str] = []
        for dst in reversed(placed):
            original = moved_aside.pop(dst, None)
            try:
                if original is not None:
                    self._replace(original, dst)
                elif os.path.lexists(dst + self.marker):
                    os.remove(dst)
                else:
                    self._replace(dst, dst + self.marker)
                    leftovers.append(to_relative(dst + self.marker, self.modules_dir))
            except OSError as e:
                logger.error("Could not roll back %s: %s", dst, e)
        # Moved aside, but the new copy never landed.
        for dst, original in moved_aside.items():
            try:
                self._replace(original, dst)
            except OSError as e:
                logger.error("Could not put back %s: %s", dst, e)

        earlier = self.registry.get_pending(ident)
        self._track_trashed(ident, leftovers, remove_record=earlier.remove_record if earlier else False)

    def _track_trashed(self, ident: str, trashed: List[str], *, remove_record: bool) -> None:
        earlier = self.registry.get_pending(ident)
        if earlier is None and not trashed:
            return
        keep = sorted(set(trashed) | set(earlier.trashed_files if earlier else []))
        self.registry.put_pending(
            PendingRemoval(
                identifier=ident,
                trashed_files=keep,
                staged_at=earlier.staged_at if earlier else iso_now(),
                remove_record=remove_record,
            )
        )

    @staticmethod
    def _manifest(desc: ModuleDescriptor, files: List[str]) -> dict:
        return {
            "id": desc.identifier,
            "name": desc.name,
            "version": desc.version,
            "description": desc.description,
            "category": desc.category,
            "author": desc.author,
            "dependencies": [d.describe() for d in desc.dependencies],
            "minHostVersion": desc.min_host_version,
            "files": files,
        }
