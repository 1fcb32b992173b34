from __future__ import annotations

from typing import Any, Dict, Set, Tuple

REGISTRY_SCHEMA_VERSION = 2

# Keys written by older releases -> current keys.
_LEGACY_RECORD_KEYS = {
    "id": "identifier",
    "module_id": "identifier",
    "installedVersion": "version",
    "installedAt": "installed_at",
    "filePaths": "files",
    "pendingRemoval": "pending_removal",
    "sourceUri": "source_location",
    "isCustomSource": "source",
}


def _upgrade_record(mid: str, rec: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in rec.items():
        key = _LEGACY_RECORD_KEYS.get(k, k)
        if k == "isCustomSource":
            v = "custom" if bool(v) else "standard"
        out.setdefault(key, v)
    out["identifier"] = str(out.get("identifier") or mid)
    return out


def migrate_registry_raw(raw: Any, *, marker: str = ".del") -> Tuple[Dict[str, Any], Set[str]]:
    """
    Normalize modules_registry.json to the current layout (idempotent).

    Returns (data, applied) where applied names the migration steps that changed
    something.
    """
    applied: Set[str] = set()
    if isinstance(raw, list):
        raw = {"modules": raw}
        applied.add("list_root")
    if not isinstance(raw, dict):
        raw = {}
        applied.add("reset")
    out = dict(raw)

    modules = out.get("modules")
    if isinstance(modules, list):
        upgraded: Dict[str, Any] = {}
        for item in modules:
            if not isinstance(item, dict):
                continue
            mid = item.get("identifier") or item.get("module_id") or item.get("id")
            if mid:
                upgraded[str(mid).lower()] = dict(item)
        modules = upgraded
        applied.add("modules_list_to_dict")
    if not isinstance(modules, dict):
        modules = {}
        applied.add("modules_reset")

    normalized: Dict[str, Any] = {}
    for mid, rec in modules.items():
        if not isinstance(rec, dict):
            applied.add("drop_invalid_record")
            continue
        new = _upgrade_record(str(mid), rec)
        if new != rec:
            applied.add("record_keys")
        normalized[str(mid).lower()] = new
        if str(mid) != str(mid).lower():
            applied.add("lowercase_ids")
    out["modules"] = normalized

    pending = out.get("pending_removals")
    if not isinstance(pending, dict):
        if pending is not None:
            applied.add("pending_reset")
        pending = {}
    pending = dict(pending)
    # Records flagged pending by older releases carry no removal entry; whether
    # their files were renamed yet is unknown, so both names are listed.
    for mid, rec in normalized.items():
        if rec.get("pending_removal") and mid not in pending:
            files = [str(f) for f in rec.get("files") or []]
            pending[mid] = {
                "identifier": mid,
                "trashed_files": sorted(set(files) | {f + marker for f in files}),
                "staged_at": str(rec.get("installed_at") or ""),
                "remove_record": True,
            }
            applied.add("pending_entries")
    out["pending_removals"] = pending

    if int(out.get("schema_version") or 0) < REGISTRY_SCHEMA_VERSION:
        out["schema_version"] = REGISTRY_SCHEMA_VERSION
        applied.add("schema_version")
    return out, applied
