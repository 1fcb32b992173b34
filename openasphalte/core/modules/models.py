from __future__ import annotations

"""
Module catalog, registry and plan models.

Catalog models are immutable snapshots of what a source advertised. Registry
models are the persisted record of what is installed; they ignore unknown keys
and default missing ones so older and newer registry files stay readable.
"""

import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from openasphalte.core.errors import ValidationError
from openasphalte.core.modules.versions import normalize_version, try_parse_version

_ID_RE = re.compile(r"[a-zA-Z0-9][a-zA-Z0-9._-]{0,127}")
_DEP_RE = re.compile(r"^\s*([a-zA-Z0-9][a-zA-Z0-9._-]*)\s*(?:>=\s*([^\s]+))?\s*$")


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def normalize_identifier(v: Any) -> str:
    s = str(v or "").strip().lower()
    if not _ID_RE.fullmatch(s):
        raise ValueError(f"invalid module identifier: {v!r}")
    return s


def requested_identifier(v: Any) -> str:
    """normalize_identifier for identifiers typed by a user."""
    try:
        return normalize_identifier(v)
    except ValueError as e:
        raise ValidationError(f"Invalid module identifier: {v!r}", identifier=str(v)) from e


class SourceKind(str, Enum):
    standard = "standard"
    custom = "custom"
    discovered = "discovered"


# ---- Catalog ----
class ModuleDependency(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    identifier: str
    min_version: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_raw(cls, v: Any) -> Any:
        if isinstance(v, str):
            m = _DEP_RE.match(v)
            if not m:
                raise ValueError(f"invalid dependency: {v!r}")
            return {"identifier": m.group(1), "min_version": m.group(2)}
        if isinstance(v, dict):
            out = dict(v)
            if "identifier" not in out:
                out["identifier"] = out.get("id") or out.get("module_id") or ""
            if "min_version" not in out:
                out["min_version"] = out.get("minVersion") or out.get("version") or None
            return out
        return v

    @field_validator("identifier")
    @classmethod
    def _id(cls, v: str) -> str:
        return normalize_identifier(v)

    @field_validator("min_version")
    @classmethod
    def _min(cls, v: Optional[str]) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        return normalize_version(v)

    def describe(self) -> str:
        return f"{self.identifier}>={self.min_version}" if self.min_version else self.identifier


class ModuleDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    identifier: str
    name: str = ""
    description: str = ""
    version: str
    category: str = ""
    author: str = ""
    dependencies: List[ModuleDependency] = Field(default_factory=list)
    download_uri: str = ""
    files: List[str] = Field(default_factory=list)
    min_host_version: Optional[str] = None
    max_host_version: Optional[str] = None
    sha256: str = ""
    source: SourceKind = SourceKind.standard
    source_location: str = ""
    declaration_index: int = 0

    @field_validator("identifier")
    @classmethod
    def _id(cls, v: str) -> str:
        return normalize_identifier(v)

    @field_validator("version")
    @classmethod
    def _version(cls, v: str) -> str:
        return normalize_version(v)

    @field_validator("min_host_version", "max_host_version", mode="before")
    @classmethod
    def _host(cls, v: Any) -> Optional[str]:
        if v is None or str(v).strip() == "":
            return None
        parsed = try_parse_version(v)
        if parsed is None:
            raise ValueError(f"invalid host version: {v!r}")
        return str(parsed)

    @field_validator("files", mode="before")
    @classmethod
    def _files(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        out: List[str] = []
        for item in v:
            rel = str(item or "").replace("\\", "/").strip().lstrip("/")
            if not rel:
                continue
            if rel == ".." or rel.startswith("../") or "/../" in rel:
                raise ValueError(f"file path escapes module directory: {item!r}")
            out.append(rel)
        return out

    @property
    def display_name(self) -> str:
        return self.name or self.identifier

    @property
    def is_custom(self) -> bool:
        return self.source == SourceKind.custom


class CoreRelease(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    latest: str = "0.0.0"
    download_uri: str = ""
    release_notes: str = ""
    min_host_version: Optional[str] = None


class SourceFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    location: str
    code: str
    message: str


class CatalogFetchResult(BaseModel):
    modules: List[ModuleDescriptor] = Field(default_factory=list)
    core: Optional[CoreRelease] = None
    failures: List[SourceFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.modules) or self.core is not None

    def versions_of(self, identifier: str) -> List[ModuleDescriptor]:
        return [d for d in self.modules if d.identifier == identifier]


# ---- Registry (persisted) ----
class InstalledModuleRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    identifier: str
    version: str = "0.0.0"
    name: str = ""
    files: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    installed_at: str = ""
    source: SourceKind = SourceKind.standard
    source_location: str = ""
    pending_removal: bool = False

    @field_validator("identifier")
    @classmethod
    def _id(cls, v: str) -> str:
        return normalize_identifier(v)


class PendingRemoval(BaseModel):
    model_config = ConfigDict(extra="ignore")

    identifier: str
    trashed_files: List[str] = Field(default_factory=list)
    staged_at: str = ""
    remove_record: bool = True


class ModulesRegistryFile(BaseModel):
    """
    Stored in config/modules_registry.json.
    """

    model_config = ConfigDict(extra="ignore")

    schema_version: int = Field(default=2, ge=1)
    modules: Dict[str, InstalledModuleRecord] = Field(default_factory=dict)
    pending_removals: Dict[str, PendingRemoval] = Field(default_factory=dict)


# ---- Resolution ----
class PlanAction(str, Enum):
    INSTALL = "install"
    UPGRADE = "upgrade"
    SKIP = "skip"
    REMOVE = "remove"


class PlanStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    version: str
    action: PlanAction
    installed_version: Optional[str] = None
    descriptor: Optional[ModuleDescriptor] = None
    required_by: List[str] = Field(default_factory=list)


class ResolutionPlan(BaseModel):
    steps: List[PlanStep] = Field(default_factory=list)

    def identifiers(self, action: Optional[PlanAction] = None) -> List[str]:
        return [s.identifier for s in self.steps if action is None or s.action == action]

    def installs(self) -> List[PlanStep]:
        return [s for s in self.steps if s.action in {PlanAction.INSTALL, PlanAction.UPGRADE}]

    def removals(self) -> List[PlanStep]:
        return [s for s in self.steps if s.action == PlanAction.REMOVE]

    @property
    def is_noop(self) -> bool:
        return all(s.action == PlanAction.SKIP for s in self.steps)


# ---- Application outcomes ----
class StepFailure(BaseModel):
    identifier: str
    code: str
    message: str


class ApplyReport(BaseModel):
    succeeded: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    failed: Optional[StepFailure] = None
    not_attempted: List[str] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failed is None and not self.not_attempted

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.removed) + len(self.not_attempted) + (1 if self.failed else 0)

    def summary(self) -> str:
        done = len(self.succeeded) + len(self.removed)
        return f"{done} of {self.total} succeeded"


class ReconcileReport(BaseModel):
    removed: List[str] = Field(default_factory=list)
    deferred: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    repaired: List[str] = Field(default_factory=list)
    registered: List[str] = Field(default_factory=list)
    migrated: Dict[str, str] = Field(default_factory=dict)
    orphans_deleted: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.dropped or self.repaired or self.registered or self.migrated or self.orphans_deleted)


# ---- Update checks ----
class UpdateStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    INCOMPATIBLE_HOST = "incompatible_host"
    CHECK_FAILED = "check_failed"


class UpdateCheckResult(BaseModel):
    status: UpdateStatus
    current_version: str = ""
    latest_version: str = ""
    required_host_version: str = ""
    actual_host_version: str = ""
    reason: str = ""
    release_url: str = ""
    download_url: str = ""
    release_notes: str = ""


class ModuleUpdateInfo(BaseModel):
    identifier: str
    current_version: Optional[str] = None
    new_version: str
    is_new_install: bool = False
