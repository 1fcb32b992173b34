from __future__ import annotations

"""
Module manager facade.

WHY THIS FILE EXISTS:
The CLI and the host integration need one object that wires configuration,
the registry, the catalog client, the resolver, the installer and the
reconciler together. Components stay independently testable; this class only
composes them and keeps the once-per-process startup pass.
"""

import logging
import threading
from typing import Callable, Iterable, List, Optional

import requests

from openasphalte import __version__
from openasphalte.core.config.manager import ConfigManager
from openasphalte.core.modules.catalog import CatalogClient, sources_from_config
from openasphalte.core.modules.installer import ModuleInstaller, ModuleUninstaller, ProgressCallback
from openasphalte.core.modules.models import (
    ApplyReport,
    CatalogFetchResult,
    InstalledModuleRecord,
    ModuleUpdateInfo,
    PendingRemoval,
    ReconcileReport,
    ResolutionPlan,
    UpdateCheckResult,
    UpdateStatus,
)
from openasphalte.core.modules.reconciler import StartupReconciler
from openasphalte.core.modules.registry import ModuleRegistry
from openasphalte.core.modules.resolver import DependencyResolver
from openasphalte.core.modules.updates import BackgroundCheck, UpdateChecker, list_module_updates

logger = logging.getLogger(__name__)


class ModuleManager:
    def __init__(
        self,
        config_manager: ConfigManager,
        *,
        modules_dir: Optional[str] = None,
        session: Optional[requests.Session] = None,
        current_version: str = __version__,
    ):
        self.config_manager = config_manager
        cfg = config_manager.get()
        self.cfg = cfg
        self.modules_dir = str(modules_dir or config_manager.modules_dir)
        self.session = session or requests.Session()
        self.current_version = current_version

        fs = config_manager.fs
        max_backups = int((cfg.app.backups or {}).get("max_backups_per_file", 10))
        self.registry = ModuleRegistry(
            path=fs.modules_registry,
            backups_dir=fs.backups_dir,
            last_known_good_dir=fs.last_known_good_dir,
            max_backups=max_backups,
        ).load()

        marker = cfg.modules.trash_suffix
        ua = cfg.updates.user_agent
        self.catalog_client = CatalogClient(session=self.session, timeout_seconds=cfg.updates.timeout_seconds, user_agent=ua)
        self.resolver = DependencyResolver(host_version=cfg.updates.host_version or None)
        self.uninstaller = ModuleUninstaller(self.registry, self.modules_dir, marker=marker)
        self.installer = ModuleInstaller(
            self.registry,
            self.modules_dir,
            session=self.session,
            timeout_seconds=max(cfg.updates.timeout_seconds, 60.0),
            marker=marker,
            user_agent=ua,
            uninstaller=self.uninstaller,
        )
        self.reconciler = StartupReconciler(
            self.registry,
            self.modules_dir,
            marker=marker,
            legacy_prefixes=cfg.modules.legacy_prefixes,
        )
        self.update_checker = UpdateChecker(
            current_version=current_version,
            host_version=cfg.updates.host_version,
            releases_url=cfg.updates.releases_url,
            session=self.session,
            timeout_seconds=min(cfg.updates.timeout_seconds, 10.0),
            user_agent=ua,
            allowed_hosts=cfg.updates.allowed_update_hosts,
        )
        self._catalog: Optional[CatalogFetchResult] = None
        self._startup_report: Optional[ReconcileReport] = None
        self._startup_lock = threading.Lock()

    # ---- startup ----
    def startup(self) -> ReconcileReport:
        """Reconcile once; later calls return the first report."""
        with self._startup_lock:
            if self._startup_report is None:
                self._startup_report = self.reconciler.reconcile()
            return self._startup_report

    def start_update_check(self, callback: Callable[[UpdateCheckResult], None]) -> Optional[BackgroundCheck]:
        if not self.cfg.updates.check_on_startup:
            return None
        return self.update_checker.start_background(callback)

    # ---- catalog / planning ----
    def fetch_catalog(self, *, refresh: bool = False) -> CatalogFetchResult:
        if self._catalog is None or refresh:
            self._catalog = self.catalog_client.fetch(sources_from_config(self.cfg.updates))
            for f in self._catalog.failures:
                logger.warning("Catalog source unavailable: %s (%s)", f.location, f.message)
        return self._catalog

    def plan(self, install: Iterable[str] = (), *, remove: Iterable[str] = (), upgrade: bool = False) -> ResolutionPlan:
        install = list(install)
        catalog = self.fetch_catalog() if install else (self._catalog or CatalogFetchResult())
        return self.resolver.resolve(install, catalog, self.registry, remove=remove, upgrade=upgrade)

    # ---- operations ----
    def install(
        self,
        identifiers: Iterable[str],
        *,
        upgrade: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ApplyReport:
        plan = self.plan(identifiers, upgrade=upgrade)
        return self.installer.apply(plan, cancel_event=cancel_event, progress=progress)

    def uninstall(self, identifiers: Iterable[str]) -> ApplyReport:
        plan = self.plan((), remove=identifiers)
        return self.installer.apply(plan)

    def restore(self, identifier: str) -> InstalledModuleRecord:
        return self.uninstaller.restore(identifier)

    def check_for_update(self) -> UpdateCheckResult:
        result = self.update_checker.check()
        if result.status == UpdateStatus.CHECK_FAILED and self._catalog is not None and self._catalog.core is not None:
            logger.info("Release feed unavailable; using the catalog core entry")
            return self.update_checker.check_catalog(self._catalog.core)
        return result

    # ---- queries ----
    def list_updates(self) -> List[ModuleUpdateInfo]:
        return list_module_updates(self.fetch_catalog(), self.registry, host_version=self.cfg.updates.host_version)

    def list_installed(self) -> List[InstalledModuleRecord]:
        return sorted(self.registry.active_records(), key=lambda r: r.identifier)

    def list_pending(self) -> List[PendingRemoval]:
        return sorted(self.registry.pending_removals(), key=lambda p: p.identifier)
