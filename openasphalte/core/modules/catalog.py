from __future__ import annotations

"""
Catalog client: fetches and merges module catalogs.

Sources are read in order, one attempt each. A failing source is reported in
CatalogFetchResult.failures and never prevents the others from being merged.
Custom sources override standard entries with the same identifier.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from pydantic import ValidationError as PydanticValidationError

from openasphalte.core.errors import ModuleManagerError, NetworkError, ParseError
from openasphalte.core.modules.models import (
    CatalogFetchResult,
    CoreRelease,
    ModuleDescriptor,
    SourceFailure,
    SourceKind,
)

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "marketplace.json"
MANIFEST_FILENAME = "module.json"


@dataclass(frozen=True)
class CatalogSource:
    location: str
    kind: SourceKind = SourceKind.standard

    @property
    def is_url(self) -> bool:
        return urlparse(self.location).scheme in {"http", "https"}


def sources_from_config(updates_cfg: Any) -> List[CatalogSource]:
    out = [CatalogSource(location=str(updates_cfg.marketplace_url), kind=SourceKind.standard)]
    for loc in updates_cfg.custom_module_sources or []:
        out.append(CatalogSource(location=str(loc), kind=SourceKind.custom))
    return out


def _first(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        if k in raw and raw[k] not in (None, ""):
            return raw[k]
    return default


def _resolve_location(uri: str, base: str) -> str:
    """Resolve a download location relative to the source it came from."""
    uri = str(uri or "").strip()
    if not uri:
        return ""
    if urlparse(uri).scheme in {"http", "https", "file"} or os.path.isabs(uri):
        return uri
    if urlparse(base).scheme in {"http", "https"}:
        return urljoin(base, uri)
    base_dir = base if os.path.isdir(base) else os.path.dirname(base)
    return os.path.normpath(os.path.join(base_dir, uri))


def parse_module_entry(raw: Dict[str, Any], *, source: CatalogSource, base: str) -> List[ModuleDescriptor]:
    """
    One catalog entry -> one descriptor per advertised version. The entry's
    "versions" history shares identifier, name and dependencies with the entry
    unless a history item overrides them.
    """
    if not isinstance(raw, dict):
        raise ValueError("module entry is not an object")
    common = {
        "identifier": _first(raw, "id", "identifier", "module_id", default=""),
        "name": str(_first(raw, "name", default="")),
        "description": str(_first(raw, "description", default="")),
        "category": str(_first(raw, "category", default="")),
        "author": str(_first(raw, "author", default="")),
        "dependencies": list(_first(raw, "dependencies", default=[]) or []),
        "files": list(_first(raw, "files", default=[]) or []),
        "source": source.kind,
        "source_location": source.location,
    }
    variants = [raw] + [v for v in (raw.get("versions") or []) if isinstance(v, dict)]
    out: List[ModuleDescriptor] = []
    seen: set[str] = set()
    for v in variants:
        desc = ModuleDescriptor.model_validate(
            {
                **common,
                "version": _first(v, "version", default=""),
                "download_uri": _resolve_location(str(_first(v, "downloadUrl", "download_uri", "download_url", default="")), base),
                "min_host_version": _first(v, "minHostVersion", "min_host_version", "minCoreVersion", default=None),
                "max_host_version": _first(v, "maxHostVersion", "max_host_version", "maxCoreVersion", default=None),
                "sha256": str(_first(v, "sha256", default="")).lower(),
                "dependencies": list(_first(v, "dependencies", default=common["dependencies"]) or []),
                "files": list(_first(v, "files", default=common["files"]) or []),
            }
        )
        if desc.version in seen:
            continue
        seen.add(desc.version)
        out.append(desc)
    return out


def parse_catalog_document(doc: Any, *, source: CatalogSource, base: str) -> Tuple[List[ModuleDescriptor], Optional[CoreRelease]]:
    if not isinstance(doc, dict):
        raise ParseError("Catalog is not an object.", location=source.location)
    modules_raw = doc.get("modules") or []
    if not isinstance(modules_raw, list):
        raise ParseError("Catalog 'modules' must be a list.", location=source.location)
    core: Optional[CoreRelease] = None
    core_raw = doc.get("core")
    try:
        if isinstance(core_raw, dict):
            core = CoreRelease(
                latest=str(_first(core_raw, "latest", default="0.0.0")),
                download_uri=str(_first(core_raw, "downloadUrl", "download_uri", default="")),
                release_notes=str(_first(core_raw, "releaseNotes", "release_notes", default="")),
                min_host_version=_first(core_raw, "minHostVersion", "min_host_version", "minAutoCADVersion", default=None),
            )
        modules: List[ModuleDescriptor] = []
        for entry in modules_raw:
            modules.extend(parse_module_entry(entry, source=source, base=base))
    except (PydanticValidationError, ValueError) as e:
        raise ParseError(f"Invalid catalog entry: {str(e)[:200]}", location=source.location) from e
    return modules, core


class CatalogClient:
    def __init__(self, *, session: Optional[requests.Session] = None, timeout_seconds: float = 30.0, user_agent: str = "OpenAsphalte-Plugin/1.0"):
        self.session = session or requests.Session()
        self.timeout_seconds = float(timeout_seconds)
        self.user_agent = user_agent

    # ---- public API ----
    def fetch(self, sources: Iterable[CatalogSource]) -> CatalogFetchResult:
        merged: List[ModuleDescriptor] = []
        core: Optional[CoreRelease] = None
        failures: List[SourceFailure] = []

        for src in sources:
            try:
                modules, src_core = self.fetch_source(src)
            except ModuleManagerError as e:
                logger.warning("Catalog source failed (%s): %s", src.location, e.user_message)
                failures.append(SourceFailure(location=src.location, code=e.code, message=e.user_message))
                continue
            if core is None and src_core is not None:
                core = src_core
            if src.kind == SourceKind.custom:
                overridden = {d.identifier for d in modules}
                merged = [d for d in merged if d.identifier not in overridden or d.source == SourceKind.custom]
            else:
                custom_ids = {d.identifier for d in merged if d.source == SourceKind.custom}
                modules = [d for d in modules if d.identifier not in custom_ids]
            merged.extend(modules)

        indexed = [d.model_copy(update={"declaration_index": i}) for i, d in enumerate(merged)]
        return CatalogFetchResult(modules=indexed, core=core, failures=failures)

    def fetch_source(self, src: CatalogSource) -> Tuple[List[ModuleDescriptor], Optional[CoreRelease]]:
        if src.is_url:
            url = src.location
            if not url.lower().endswith(".json"):
                url = url.rstrip("/") + "/" + CATALOG_FILENAME
            return parse_catalog_document(self._get_json(url), source=src, base=url)

        path = src.location
        if urlparse(path).scheme == "file":
            path = urlparse(path).path
        if os.path.isdir(path):
            doc_path = os.path.join(path, CATALOG_FILENAME)
            if os.path.isfile(doc_path):
                return parse_catalog_document(self._read_json(doc_path), source=src, base=doc_path)
            return self._scan_local_bundles(path, src), None
        if os.path.isfile(path):
            return parse_catalog_document(self._read_json(path), source=src, base=path)
        raise NetworkError(f"Catalog source not found: {src.location}", location=src.location)

    # ---- internals ----
    def _get_json(self, url: str) -> Any:
        try:
            r = self.session.get(url, timeout=self.timeout_seconds, headers={"User-Agent": self.user_agent})
        except requests.Timeout as e:
            raise NetworkError("Timed out waiting for the catalog server.", location=url) from e
        except requests.RequestException as e:
            raise NetworkError(f"Unable to contact the catalog server: {e}", location=url) from e
        if r.status_code == 404:
            raise NetworkError("Module catalog not found (404).", location=url, status=404)
        if r.status_code == 403:
            raise NetworkError("Access to the module catalog was denied (403).", location=url, status=403)
        if r.status_code >= 400:
            raise NetworkError(f"Catalog server returned HTTP {r.status_code}.", location=url, status=r.status_code)
        try:
            return r.json()
        except ValueError as e:
            raise ParseError(f"Catalog is not valid JSON: {e}", location=url) from e

    @staticmethod
    def _read_json(path: str) -> Any:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ParseError(f"Catalog is not valid JSON: {e}", location=path) from e
        except OSError as e:
            raise NetworkError(f"Unable to read catalog: {e}", location=path) from e

    def _scan_local_bundles(self, folder: str, src: CatalogSource) -> List[ModuleDescriptor]:
        """
        No marketplace.json: build a catalog from bundle directories that embed a
        module.json manifest. Each bundle is installed by copying its directory.
        """
        out: List[ModuleDescriptor] = []
        for name in sorted(os.listdir(folder)):
            bundle = os.path.join(folder, name)
            manifest_path = os.path.join(bundle, MANIFEST_FILENAME)
            if name.startswith(".") or not os.path.isfile(manifest_path):
                continue
            try:
                raw = self._read_json(manifest_path)
                if isinstance(raw, dict):
                    raw = {**raw, "downloadUrl": bundle}
                out.extend(parse_module_entry(raw, source=src, base=bundle))
                logger.debug("Found local module bundle %s", bundle)
            except (ModuleManagerError, PydanticValidationError, ValueError) as e:
                logger.warning("Failed to read module manifest from '%s': %s", manifest_path, e)
        if not out:
            raise ParseError("No catalog or module bundles found.", location=src.location)
        return out
