from __future__ import annotations

"""
Dependency resolution.

The resolver turns a request (identifiers to install, identifiers to remove)
into an ordered ResolutionPlan against a catalog snapshot and a registry
snapshot. It never touches the filesystem: every error it raises aborts the
request before anything is applied.

Constraints are minimum versions ("A>=1.2"). For each identifier the highest
catalog version satisfying every constraint from its dependents is chosen; an
installed version that already satisfies them is kept (SKIP).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from openasphalte.core.errors import (
    CyclicDependencyError,
    DependentStillInstalledError,
    ModuleManagerError,
    NotInstalledError,
    UnsatisfiableDependencyError,
    ValidationError,
    VersionConflictError,
)
from openasphalte.core.modules.models import (
    CatalogFetchResult,
    InstalledModuleRecord,
    ModuleDependency,
    ModuleDescriptor,
    ModulesRegistryFile,
    PlanAction,
    PlanStep,
    ResolutionPlan,
    requested_identifier,
)
from openasphalte.core.modules.versions import is_newer, parse_version, satisfies_minimum, try_parse_version

logger = logging.getLogger(__name__)

# Constraint owner used for identifiers the caller asked for directly.
REQUESTED = "<request>"


@dataclass
class _Selection:
    action: PlanAction
    version: str
    descriptor: Optional[ModuleDescriptor]
    dependencies: List[ModuleDependency] = field(default_factory=list)


class DependencyResolver:
    def __init__(self, *, host_version: Optional[str] = None):
        self.host_version = str(parse_version(host_version)) if host_version else None

    # ---- public API ----
    def resolve(
        self,
        requested: Iterable[str],
        catalog: Union[CatalogFetchResult, Iterable[ModuleDescriptor]],
        registry,
        *,
        remove: Iterable[str] = (),
        upgrade: bool = False,
    ) -> ResolutionPlan:
        descriptors = list(catalog.modules if isinstance(catalog, CatalogFetchResult) else catalog)
        snap = registry if isinstance(registry, ModulesRegistryFile) else registry.snapshot()
        installed = {k: r for k, r in snap.modules.items() if not r.pending_removal}

        wanted = _unique(requested_identifier(i) for i in requested)
        removing = _unique(requested_identifier(i) for i in remove)
        both = sorted(set(wanted) & set(removing))
        if both:
            raise ValidationError(f"Cannot install and remove in the same request: {', '.join(both)}", identifiers=both)

        self._check_removals(removing, installed)

        ctx = _Context(descriptors, installed, self.host_version)
        selections, errors = self._select(wanted, ctx, upgrade=upgrade)
        order = self._order(wanted, selections, errors, ctx)

        selections = {k: selections[k] for k in order}
        removed_set = set(removing)
        for ident in order:
            if ident in removed_set:
                raise DependentStillInstalledError(ident, ctx.dependents(ident, selections))

        steps: List[PlanStep] = [
            PlanStep(
                identifier=ident,
                version=installed[ident].version,
                action=PlanAction.REMOVE,
                installed_version=installed[ident].version,
            )
            for ident in self._removal_order(removing, installed, ctx)
        ]
        for ident in order:
            sel = selections[ident]
            rec = installed.get(ident)
            steps.append(
                PlanStep(
                    identifier=ident,
                    version=sel.version,
                    action=sel.action,
                    installed_version=rec.version if rec else None,
                    descriptor=sel.descriptor,
                    required_by=ctx.dependents(ident, selections),
                )
            )
        plan = ResolutionPlan(steps=steps)
        logger.info(
            "Resolved plan: %s",
            ", ".join(f"{s.action.value} {s.identifier}@{s.version}" for s in plan.steps) or "(empty)",
        )
        return plan

    # ---- removal checks ----
    @staticmethod
    def _check_removals(removing: List[str], installed: Dict[str, InstalledModuleRecord]) -> None:
        for ident in removing:
            if ident not in installed:
                raise NotInstalledError(ident)
        removed_set = set(removing)
        for ident in removing:
            blockers = [
                r.identifier
                for r in installed.values()
                if r.identifier not in removed_set and ident in r.dependencies
            ]
            if blockers:
                raise DependentStillInstalledError(ident, blockers)

    @staticmethod
    def _removal_order(removing: List[str], installed: Dict[str, InstalledModuleRecord], ctx: "_Context") -> List[str]:
        """Dependents before their dependencies, restricted to the removal set."""
        removed_set = set(removing)
        post: List[str] = []
        seen: Set[str] = set()

        def visit(ident: str) -> None:
            if ident in seen:
                return
            seen.add(ident)
            deps = [d for d in installed[ident].dependencies if d in removed_set]
            for dep in sorted(deps, key=ctx.sort_key):
                visit(dep)
            post.append(ident)

        for ident in sorted(removing, key=ctx.sort_key):
            visit(ident)
        return list(reversed(post))

    # ---- version selection ----
    def _select(
        self, wanted: List[str], ctx: "_Context", *, upgrade: bool
    ) -> Tuple[Dict[str, _Selection], Dict[str, ModuleManagerError]]:
        constraints: Dict[str, Dict[str, Optional[str]]] = {}
        selections: Dict[str, _Selection] = {}
        errors: Dict[str, ModuleManagerError] = {}
        sticky: Set[str] = set()

        for ident in wanted:
            constraints.setdefault(ident, {})[REQUESTED] = None
        queue: List[str] = list(wanted)
        queued: Set[str] = set(queue)

        def contribute(owner: str, deps: List[ModuleDependency], sign: int) -> None:
            for dep in deps:
                bucket = constraints.setdefault(dep.identifier, {})
                if sign > 0:
                    bucket[owner] = dep.min_version
                else:
                    bucket.pop(owner, None)
                if dep.identifier not in queued:
                    queue.append(dep.identifier)
                    queued.add(dep.identifier)

        while queue:
            ident = queue.pop(0)
            queued.discard(ident)
            cons = constraints.get(ident) or {}
            try:
                sel = self._choose(ident, cons, ctx, force_upgrade=upgrade and ident in wanted, sticky=ident in sticky)
            except (UnsatisfiableDependencyError, VersionConflictError) as e:
                errors[ident] = e
                prev = selections.pop(ident, None)
                if prev is not None:
                    contribute(ident, prev.dependencies, -1)
                continue
            errors.pop(ident, None)

            prev = selections.get(ident)
            if prev is not None and prev.version == sel.version and prev.action == sel.action:
                continue
            if sel.action != PlanAction.SKIP:
                sticky.add(ident)
            if prev is not None:
                contribute(ident, prev.dependencies, -1)
            selections[ident] = sel
            contribute(ident, sel.dependencies, +1)
        return selections, errors

    def _choose(
        self,
        ident: str,
        cons: Dict[str, Optional[str]],
        ctx: "_Context",
        *,
        force_upgrade: bool,
        sticky: bool,
    ) -> _Selection:
        minimums = [m for m in cons.values() if m]
        rec = ctx.installed.get(ident)

        if rec is not None and not sticky and try_parse_version(rec.version) is not None:
            keeps = all(satisfies_minimum(rec.version, m) for m in minimums)
            if keeps and not force_upgrade:
                return self._skip(rec, ctx)

        candidates = ctx.candidates(ident)
        best = next((d for d in candidates if all(satisfies_minimum(d.version, m) for m in minimums)), None)

        if rec is not None and not sticky and try_parse_version(rec.version) is not None:
            keeps = all(satisfies_minimum(rec.version, m) for m in minimums)
            if keeps and (best is None or not is_newer(best.version, rec.version)):
                return self._skip(rec, ctx)

        if best is None:
            raise self._no_candidate(ident, cons, ctx)
        action = PlanAction.UPGRADE if rec is not None else PlanAction.INSTALL
        return _Selection(action=action, version=best.version, descriptor=best, dependencies=list(best.dependencies))

    @staticmethod
    def _skip(rec: InstalledModuleRecord, ctx: "_Context") -> _Selection:
        desc = ctx.exact(rec.identifier, rec.version)
        if desc is not None:
            deps = list(desc.dependencies)
        else:
            deps = [ModuleDependency(identifier=d) for d in rec.dependencies]
        return _Selection(action=PlanAction.SKIP, version=rec.version, descriptor=desc, dependencies=deps)

    def _no_candidate(self, ident: str, cons: Dict[str, Optional[str]], ctx: "_Context") -> ModuleManagerError:
        required_by = [o for o in cons if o != REQUESTED]
        if not ctx.known(ident):
            return UnsatisfiableDependencyError(ident, required_by=required_by, reason="not found in the catalog")
        if not ctx.candidates(ident):
            return UnsatisfiableDependencyError(
                ident, required_by=required_by, reason=f"no version compatible with host {self.host_version}"
            )
        bounded = sorted((o, m) for o, m in cons.items() if m)
        if len(bounded) >= 2:
            return VersionConflictError(
                ident, [f"{owner if owner != REQUESTED else 'request'} requires {ident}>={m}" for owner, m in bounded]
            )
        reason = f"requires >={bounded[0][1]}, newest available is {ctx.candidates(ident)[0].version}" if bounded else ""
        return UnsatisfiableDependencyError(ident, required_by=required_by, reason=reason)

    # ---- ordering ----
    @staticmethod
    def _order(
        wanted: List[str],
        selections: Dict[str, _Selection],
        errors: Dict[str, ModuleManagerError],
        ctx: "_Context",
    ) -> List[str]:
        """Post-order DFS with white/grey/black marks: dependencies before dependents."""
        WHITE, GREY, BLACK = 0, 1, 2
        color: Dict[str, int] = {}
        path: List[str] = []
        order: List[str] = []

        def visit(ident: str) -> None:
            state = color.get(ident, WHITE)
            if state == BLACK:
                return
            if state == GREY:
                start = path.index(ident)
                raise CyclicDependencyError(path[start:] + [ident])
            if ident in errors:
                raise errors[ident]
            color[ident] = GREY
            path.append(ident)
            children = _unique(d.identifier for d in selections[ident].dependencies)
            for child in sorted(children, key=ctx.sort_key):
                visit(child)
            path.pop()
            color[ident] = BLACK
            order.append(ident)

        for root in sorted(wanted, key=ctx.sort_key):
            visit(root)
        return order


class _Context:
    """Catalog and registry lookups shared by one resolve() call."""

    def __init__(self, descriptors: List[ModuleDescriptor], installed: Dict[str, InstalledModuleRecord], host: Optional[str]):
        self.installed = installed
        self.host = host
        self._all: Dict[str, List[ModuleDescriptor]] = {}
        self._position: Dict[str, int] = {}
        self._rank: Dict[int, int] = {}
        for pos, d in enumerate(descriptors):
            self._all.setdefault(d.identifier, []).append(d)
            self._position.setdefault(d.identifier, pos)
            self._rank[id(d)] = pos
        self._compatible: Dict[str, List[ModuleDescriptor]] = {}

    def known(self, ident: str) -> bool:
        return ident in self._all

    def exact(self, ident: str, version: str) -> Optional[ModuleDescriptor]:
        for d in self._all.get(ident, []):
            if d.version == version:
                return d
        return None

    def candidates(self, ident: str) -> List[ModuleDescriptor]:
        if ident not in self._compatible:
            found = [d for d in self._all.get(ident, []) if self._host_ok(d)]
            # Highest version first; the earliest declaration wins a tie.
            found.sort(key=lambda d: (parse_version(d.version), -self._rank[id(d)]), reverse=True)
            self._compatible[ident] = found
        return self._compatible[ident]

    def _host_ok(self, d: ModuleDescriptor) -> bool:
        if not self.host:
            return True
        if d.min_host_version and parse_version(self.host) < parse_version(d.min_host_version):
            return False
        if d.max_host_version and parse_version(self.host) > parse_version(d.max_host_version):
            return False
        return True

    def sort_key(self, ident: str) -> Tuple[int, str]:
        return (self._position.get(ident, len(self._position)), ident)

    @staticmethod
    def dependents(ident: str, selections: Dict[str, _Selection]) -> List[str]:
        return sorted(k for k, s in selections.items() if any(d.identifier == ident for d in s.dependencies))


def _unique(items: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen: Set[str] = set()
    for i in items:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out
