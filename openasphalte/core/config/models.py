from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

MARKETPLACE_URL = "https://raw.githubusercontent.com/OpenAsphaltePlugin/OpenAsphalte/main/docs/marketplace.json"
RELEASES_URL = "https://api.github.com/repos/OpenAsphaltePlugin/OpenAsphalte/releases/latest"


class AppFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    created_at: str = "1970-01-01T00:00:00Z"
    backups: Dict[str, Any] = Field(default_factory=lambda: {"max_backups_per_file": 10})


class UpdatesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    marketplace_url: str = MARKETPLACE_URL
    releases_url: str = RELEASES_URL
    custom_module_sources: List[str] = Field(default_factory=list)
    check_on_startup: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    # Detected at runtime by the host integration; empty means "unknown, assume compatible".
    host_version: str = ""
    user_agent: str = "OpenAsphalte-Plugin/1.0"
    # Update links shown to the user must be https on one of these hosts.
    allowed_update_hosts: List[str] = Field(default_factory=lambda: ["github.com", "gitlab.com", "bitbucket.org"])

    @field_validator("custom_module_sources", mode="before")
    @classmethod
    def _norm_sources(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x or "").strip()]
        return []


class ModulesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    modules_dir: str = "modules"
    trash_suffix: str = Field(default=".del", min_length=2)
    # historical identifier prefix -> current prefix
    legacy_prefixes: Dict[str, str] = Field(default_factory=lambda: {"openroad.": ""})

    @field_validator("trash_suffix")
    @classmethod
    def _suffix_dot(cls, v: str) -> str:
        v = str(v or "").strip()
        if not v.startswith("."):
            raise ValueError("trash_suffix must start with '.'")
        return v


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    app: AppFileConfig
    updates: UpdatesConfig
    modules: ModulesConfig
