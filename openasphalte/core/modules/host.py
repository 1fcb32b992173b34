from __future__ import annotations

"""
Host-side module loading.

Modules are built through factories registered per identifier; the host never
imports or reflects over files found on disk. Only modules that are active in
the registry are considered, so a staged removal disappears from the host as
soon as it is staged.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from openasphalte.core.modules.registry import ModuleRegistry
from openasphalte.core.modules.versions import parse_version, try_parse_version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandInfo:
    name: str
    description: str = ""
    module: str = ""


@dataclass(frozen=True)
class ModuleSummary:
    identifier: str
    name: str
    version: str


class HostModule:
    """
    Plugin capability interface.

    - initialize()     -> register commands, allocate resources
    - shutdown()       -> release everything initialize() acquired
    - list_commands()  -> commands the module exposes to the host menus
    """

    identifier: str = ""
    name: str = ""
    version: str = "0.0.0"
    dependencies: Sequence[str] = ()
    # Lower loads first among modules with no dependency between them.
    order: int = 100
    min_core_version: str = ""

    def initialize(self) -> None:
        """Called once after every dependency is initialized."""
        ...

    def shutdown(self) -> None:
        """Called once, in reverse initialization order."""
        ...

    def list_commands(self) -> List[CommandInfo]:
        return []


ModuleFactory = Callable[[], HostModule]
ChangeCallback = Callable[[str], None]


class ModuleFactoryRegistry:
    def __init__(self) -> None:
        self._factories: Dict[str, ModuleFactory] = {}

    def register(self, identifier: str, factory: ModuleFactory) -> None:
        self._factories[str(identifier).lower()] = factory

    def create(self, identifier: str) -> Optional[HostModule]:
        factory = self._factories.get(str(identifier).lower())
        return factory() if factory is not None else None

    def identifiers(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, identifier: object) -> bool:
        return str(identifier).lower() in self._factories


class ModuleHost:
    def __init__(self, registry: ModuleRegistry, factories: ModuleFactoryRegistry, *, core_version: str = "0.0.0"):
        self.registry = registry
        self.factories = factories
        self.core_version = core_version
        self._discovered: List[HostModule] = []
        self._active: List[HostModule] = []
        self._listeners: List[ChangeCallback] = []

    # ---- lifecycle ----
    def discover(self) -> List[HostModule]:
        found: Dict[str, HostModule] = {}
        for rec in self.registry.active_records():
            mod = self.factories.create(rec.identifier)
            if mod is None:
                logger.warning("No factory registered for installed module %s", rec.identifier)
                continue
            if not mod.identifier:
                mod.identifier = rec.identifier
            if mod.min_core_version and try_parse_version(mod.min_core_version):
                if parse_version(mod.min_core_version) > parse_version(self.core_version):
                    logger.warning(
                        "Module %s requires core %s (running %s); not loaded",
                        rec.identifier,
                        mod.min_core_version,
                        self.core_version,
                    )
                    continue
            found[rec.identifier] = mod

        # Drop modules whose dependencies are not loadable, until stable.
        changed = True
        while changed:
            changed = False
            for ident in sorted(found):
                missing = [d for d in _deps(found[ident]) if d not in found]
                if missing:
                    logger.warning("Module %s not loaded: missing dependencies %s", ident, ", ".join(missing))
                    del found[ident]
                    changed = True

        self._discovered = _load_order(found)
        logger.info("Discovered %d module(s)", len(self._discovered))
        self._notify("discovered")
        return list(self._discovered)

    def initialize_all(self) -> List[HostModule]:
        failed: set[str] = set()
        self._active = []
        for mod in self._discovered:
            ident = mod.identifier.lower()
            blocked = [d for d in _deps(mod) if d in failed]
            if blocked:
                logger.warning("Module %s skipped: dependency failed (%s)", ident, ", ".join(blocked))
                failed.add(ident)
                continue
            try:
                mod.initialize()
            except Exception as e:
                logger.error("Module %s failed to initialize: %s", ident, e)
                failed.add(ident)
                continue
            self._active.append(mod)
        logger.info("Initialized %d module(s)", len(self._active))
        self._notify("initialized")
        return list(self._active)

    def shutdown_all(self) -> None:
        for mod in reversed(self._active):
            try:
                mod.shutdown()
            except Exception as e:
                logger.error("Module %s failed to shut down: %s", mod.identifier, e)
        self._active = []
        self._notify("shutdown")

    # ---- host-facing queries ----
    def list_active_modules(self) -> List[ModuleSummary]:
        return [ModuleSummary(identifier=m.identifier.lower(), name=m.name or m.identifier, version=m.version) for m in self._active]

    def list_available_commands(self) -> Dict[str, List[CommandInfo]]:
        out: Dict[str, List[CommandInfo]] = {}
        for mod in self._active:
            out[mod.identifier.lower()] = list(mod.list_commands())
        return out

    def command_count(self) -> int:
        return sum(len(v) for v in self.list_available_commands().values())

    def on_modules_changed(self, callback: ChangeCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def _notify(self, phase: str) -> None:
        for cb in list(self._listeners):
            try:
                cb(phase)
            except Exception as e:
                logger.error("modules-changed listener failed: %s", e)


def _deps(mod: HostModule) -> List[str]:
    return [str(d).lower() for d in (mod.dependencies or [])]


def _load_order(found: Dict[str, HostModule]) -> List[HostModule]:
    """Dependencies first; `order` then identifier break ties."""
    out: List[HostModule] = []
    seen: set[str] = set()
    visiting: set[str] = set()

    def visit(ident: str) -> None:
        if ident in seen:
            return
        if ident in visiting:
            logger.warning("Dependency cycle involving %s; loading order is arbitrary", ident)
            return
        visiting.add(ident)
        mod = found[ident]
        for dep in sorted(_deps(mod), key=lambda d: (found[d].order, d)):
            visit(dep)
        visiting.discard(ident)
        seen.add(ident)
        out.append(mod)

    for ident in sorted(found, key=lambda i: (found[i].order, i)):
        visit(ident)
    return out
