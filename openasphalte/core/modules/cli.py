from __future__ import annotations

"""
CLI rendering helpers for the `modules` commands.

WHY THIS FILE EXISTS:
app.py stays a thin argparse shell; these helpers give a stable, testable
rendering surface for registry, catalog, plan and report output.
"""

from typing import List, Optional

from openasphalte.core.errors import ModuleManagerError
from openasphalte.core.modules.models import (
    ApplyReport,
    CatalogFetchResult,
    InstalledModuleRecord,
    ModuleUpdateInfo,
    PendingRemoval,
    PlanAction,
    ReconcileReport,
    ResolutionPlan,
    UpdateCheckResult,
    UpdateStatus,
)


def installed_lines(records: List[InstalledModuleRecord], pending: Optional[List[PendingRemoval]] = None) -> List[str]:
    """
    Columns: identifier | version | source | installed_at
    """
    lines = ["identifier | version | source | installed_at"]
    for r in records:
        lines.append(f"{r.identifier} | {r.version} | {r.source.value} | {r.installed_at}")
    for p in pending or []:
        if p.remove_record:
            lines.append(f"{p.identifier} | - | pending removal | {p.staged_at}")
    return lines


def catalog_lines(catalog: CatalogFetchResult, installed: List[InstalledModuleRecord]) -> List[str]:
    """
    Newest version per identifier, custom sources flagged.
    Columns: identifier | latest | installed | source | name
    """
    have = {r.identifier: r.version for r in installed}
    newest = {}
    for d in catalog.modules:
        if d.identifier not in newest:
            newest[d.identifier] = d
    lines = ["identifier | latest | installed | source | name"]
    for ident, d in newest.items():
        versions = sorted((x.version for x in catalog.versions_of(ident)), key=lambda v: tuple(int(p) for p in v.split(".")))
        lines.append(f"{ident} | {versions[-1]} | {have.get(ident, '-')} | {d.source.value} | {d.display_name}")
    for f in catalog.failures:
        lines.append(f"! source failed: {f.location} ({f.code}: {f.message})")
    return lines


def plan_lines(plan: ResolutionPlan) -> List[str]:
    if plan.is_noop:
        return ["Nothing to do."]
    lines = []
    for s in plan.steps:
        if s.action == PlanAction.UPGRADE:
            lines.append(f"{s.action.value:<8} {s.identifier} {s.installed_version} -> {s.version}")
        else:
            lines.append(f"{s.action.value:<8} {s.identifier} {s.version}")
    return lines


def report_lines(report: ApplyReport) -> List[str]:
    lines = [report.summary()]
    if report.removed:
        lines.append("Staged for removal (finalized at next start): " + ", ".join(report.removed))
    if report.failed is not None:
        lines.append(f"Failed: {report.failed.identifier} ({report.failed.code}): {report.failed.message}")
    if report.not_attempted:
        lines.append("Not attempted: " + ", ".join(report.not_attempted))
    if report.cancelled:
        lines.append("Cancelled.")
    return lines


def reconcile_lines(report: ReconcileReport) -> List[str]:
    if not report.changed and not report.deferred and not report.errors:
        return ["Registry is consistent."]
    lines = []
    for label, items in (
        ("Removed", report.removed),
        ("Deferred (locked)", report.deferred),
        ("Dropped (files missing)", report.dropped),
        ("Repaired", report.repaired),
        ("Registered from disk", report.registered),
        ("Orphans deleted", report.orphans_deleted),
        ("Errors", report.errors),
    ):
        if items:
            lines.append(f"{label}: {', '.join(items)}")
    for old, new in sorted(report.migrated.items()):
        lines.append(f"Migrated: {old} -> {new}")
    return lines


def update_lines(result: UpdateCheckResult) -> List[str]:
    if result.status == UpdateStatus.UPDATE_AVAILABLE:
        lines = [f"Update available: {result.current_version} -> {result.latest_version}"]
        if result.download_url or result.release_url:
            lines.append(result.download_url or result.release_url)
        return lines
    if result.status == UpdateStatus.INCOMPATIBLE_HOST:
        return [
            f"Version {result.latest_version} requires host {result.required_host_version} "
            f"(detected {result.actual_host_version or 'unknown'})."
        ]
    if result.status == UpdateStatus.UP_TO_DATE:
        return [f"Up to date ({result.current_version})."]
    return [f"Update check failed: {result.reason}"]


def module_update_lines(updates: List[ModuleUpdateInfo]) -> List[str]:
    if not updates:
        return ["All modules are up to date."]
    lines = []
    for u in updates:
        if u.is_new_install:
            lines.append(f"new      {u.identifier} {u.new_version}")
        else:
            lines.append(f"update   {u.identifier} {u.current_version} -> {u.new_version}")
    return lines


def error_lines(err: ModuleManagerError) -> List[str]:
    lines = [f"Error ({err.code}): {err.user_message}"]
    blockers = err.context.get("blockers")
    if blockers:
        lines.append("Remove these first, or together: " + ", ".join(blockers))
    return lines
