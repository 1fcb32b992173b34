from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class ModuleManagerError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return self.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": dict(self.context or {}),
        }


# ---- Transport / format ----
class NetworkError(ModuleManagerError):
    def __init__(self, user_message: str = "Unable to reach the server.", **ctx: Any):
        super().__init__("network_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ParseError(ModuleManagerError):
    def __init__(self, user_message: str = "Malformed document.", **ctx: Any):
        super().__init__("parse_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class ConfigError(ModuleManagerError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ValidationError(ModuleManagerError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Resolution (raised before any filesystem mutation) ----
class UnsatisfiableDependencyError(ModuleManagerError):
    def __init__(self, identifier: str, *, required_by: Iterable[str] = (), reason: str = ""):
        req = sorted({str(r) for r in required_by})
        msg = f"No installable version of '{identifier}'"
        if req:
            msg += f" (required by {', '.join(req)})"
        if reason:
            msg += f": {reason}"
        super().__init__(
            "unsatisfiable_dependency",
            msg,
            severity=Severity.WARN,
            recoverable=True,
            context={"identifier": identifier, "required_by": req, "reason": reason},
        )

    @property
    def identifier(self) -> str:
        return str(self.context.get("identifier") or "")


class VersionConflictError(ModuleManagerError):
    def __init__(self, identifier: str, constraints: Sequence[str]):
        cons = [str(c) for c in constraints]
        super().__init__(
            "version_conflict",
            f"No single version of '{identifier}' satisfies: {'; '.join(cons)}",
            severity=Severity.WARN,
            recoverable=True,
            context={"identifier": identifier, "constraints": cons},
        )

    @property
    def identifier(self) -> str:
        return str(self.context.get("identifier") or "")

    @property
    def constraints(self) -> List[str]:
        return list(self.context.get("constraints") or [])


class CyclicDependencyError(ModuleManagerError):
    def __init__(self, cycle: Sequence[str]):
        seq = [str(c) for c in cycle]
        super().__init__(
            "cyclic_dependency",
            "Dependency cycle: " + " -> ".join(seq),
            severity=Severity.WARN,
            recoverable=True,
            context={"cycle": seq},
        )

    @property
    def cycle(self) -> List[str]:
        return list(self.context.get("cycle") or [])


class DependentStillInstalledError(ModuleManagerError):
    def __init__(self, identifier: str, blockers: Iterable[str]):
        blk = sorted({str(b) for b in blockers})
        super().__init__(
            "dependent_still_installed",
            f"'{identifier}' is still required by: {', '.join(blk)}",
            severity=Severity.WARN,
            recoverable=True,
            context={"identifier": identifier, "blockers": blk},
        )

    @property
    def identifier(self) -> str:
        return str(self.context.get("identifier") or "")

    @property
    def blockers(self) -> List[str]:
        return list(self.context.get("blockers") or [])


class NotInstalledError(ModuleManagerError):
    def __init__(self, identifier: str):
        super().__init__(
            "not_installed",
            f"Module '{identifier}' is not installed.",
            severity=Severity.WARN,
            recoverable=False,
            context={"identifier": identifier},
        )


class IncompatibleHostError(ModuleManagerError):
    def __init__(self, required: str, actual: str, **ctx: Any):
        super().__init__(
            "incompatible_host",
            f"Requires host version {required} (detected {actual}).",
            severity=Severity.WARN,
            recoverable=False,
            context={"required": required, "actual": actual, **ctx},
        )


# ---- Plan application ----
class FileSystemError(ModuleManagerError):
    def __init__(self, user_message: str = "File operation failed.", **ctx: Any):
        super().__init__("filesystem_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class FileLockedError(ModuleManagerError):
    def __init__(self, path: str, **ctx: Any):
        super().__init__(
            "file_locked",
            f"File is locked by another process: {path}",
            severity=Severity.WARN,
            recoverable=True,
            context={"path": path, **ctx},
        )


class ManifestMismatchError(ModuleManagerError):
    def __init__(self, identifier: str, missing: Sequence[str]):
        miss = [str(m) for m in missing]
        super().__init__(
            "manifest_mismatch",
            f"Artifact for '{identifier}' is missing files: {', '.join(miss[:10])}",
            severity=Severity.ERROR,
            recoverable=True,
            context={"identifier": identifier, "missing": miss},
        )
