from __future__ import annotations

"""
Module bundle discovery (no-load scanning).

WHY THIS FILE EXISTS:
The reconciler must detect bundles that are on disk but missing from the
registry (manual copies, installs from older releases) without loading any
module code. Discovery reads only the embedded module.json manifest and
filesystem metadata.
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

MANIFEST_FILENAME = "module.json"
STAGING_DIRNAME = ".staging"


def sha256_file(path: str, *, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def to_relative(path: str, root: str) -> str:
    return os.path.relpath(path, root).replace("\\", "/")


def list_bundle_files(bundle_dir: str, *, modules_root: str, marker: str = ".del") -> List[str]:
    """
    Files under bundle_dir, relative to modules_root with POSIX separators.
    Trashed files (marker suffix) and hidden directories are excluded.
    """
    out: List[str] = []
    for root, dirs, files in os.walk(bundle_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d != "__pycache__")
        for fn in sorted(files):
            if fn.endswith(marker):
                continue
            out.append(to_relative(os.path.join(root, fn), modules_root))
    return out


def remap_legacy(identifier: str, legacy_prefixes: Mapping[str, str]) -> str:
    """'openroad.cogo' -> 'cogo' for {'openroad.': ''}; unknown prefixes pass through."""
    ident = str(identifier or "").lower()
    for old, new in legacy_prefixes.items():
        old = str(old).lower()
        if old and ident.startswith(old) and len(ident) > len(old):
            return str(new).lower() + ident[len(old):]
    return ident


def read_manifest(bundle_dir: str) -> Optional[Dict[str, Any]]:
    path = os.path.join(bundle_dir, MANIFEST_FILENAME)
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("manifest is not an object")
    return raw


@dataclass(frozen=True)
class DiscoveredBundle:
    identifier: str
    directory: str
    bundle_dir: str
    files: List[str]
    manifest: Optional[Dict[str, Any]] = None
    manifest_error: str = ""
    legacy_name: str = ""
    dependencies: List[str] = field(default_factory=list)

    @property
    def version(self) -> str:
        return str((self.manifest or {}).get("version") or "0.0.0")

    @property
    def name(self) -> str:
        return str((self.manifest or {}).get("name") or "")


class BundleDiscovery:
    def __init__(self, *, modules_root: str, marker: str = ".del", legacy_prefixes: Optional[Mapping[str, str]] = None):
        self.modules_root = str(modules_root)
        self.marker = marker
        self.legacy_prefixes = dict(legacy_prefixes or {})

    def scan(self) -> Dict[str, DiscoveredBundle]:
        """Directory name -> bundle. Directories holding only trashed files are skipped."""
        out: Dict[str, DiscoveredBundle] = {}
        if not os.path.isdir(self.modules_root):
            return out

        for name in sorted(os.listdir(self.modules_root)):
            if name.startswith(".") or name.startswith("_"):
                continue
            bundle_dir = os.path.join(self.modules_root, name)
            if not os.path.isdir(bundle_dir):
                continue
            files = list_bundle_files(bundle_dir, modules_root=self.modules_root, marker=self.marker)
            if not files:
                continue

            manifest: Optional[Dict[str, Any]] = None
            manifest_error = ""
            try:
                manifest = read_manifest(bundle_dir)
            except (OSError, ValueError) as e:
                manifest_error = str(e)[:200]

            raw_id = str((manifest or {}).get("id") or (manifest or {}).get("identifier") or name)
            identifier = remap_legacy(raw_id, self.legacy_prefixes)
            deps: List[str] = []
            for d in (manifest or {}).get("dependencies") or []:
                dep_id = d.get("id") if isinstance(d, dict) else str(d).split(">=", 1)[0]
                if dep_id:
                    deps.append(remap_legacy(str(dep_id).strip(), self.legacy_prefixes))

            out[name] = DiscoveredBundle(
                identifier=identifier,
                directory=name,
                bundle_dir=bundle_dir,
                files=files,
                manifest=manifest,
                manifest_error=manifest_error,
                legacy_name=raw_id.lower() if identifier != raw_id.lower() else "",
                dependencies=deps,
            )
        return out
