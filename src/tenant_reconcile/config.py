from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def _require_guid(value: str, label: str) -> str:
    value = value.strip()
    if not GUID_PATTERN.match(value):
        raise ValueError(f"{label} must be a GUID, got {value!r}")
    return value


class SecretRef(BaseModel):
    """Reference to a secret source without storing the secret in code.

    The client secret is normally created by the tenant setup tooling and handed
    over through an environment variable. Inline values are accepted for local
    development only.
    """

    env: Optional[str] = Field(
        default=None, description="Environment variable name containing the secret"
    )
    value: Optional[str] = Field(
        default=None,
        description="Inline value (use only for local development; avoid in production)",
    )

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            env_value = os.getenv(self.env)
            if env_value:
                return env_value
            raise ConfigError(f"Environment variable {self.env} is not set")
        if self.value:
            return self.value
        raise ConfigError("No secret reference provided for resolution")


class TenantConfig(BaseModel):
    tenant_id: str
    domain: str = Field(description="Principal-name domain of users in this tenant")
    display_name: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant_id(cls, value: str) -> str:
        return _require_guid(value, "tenant_id")

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("domain must not be blank")
        return value


class ReconcileConfig(BaseModel):
    source: TenantConfig
    destination: TenantConfig
    client_id: str
    client_secret: SecretRef
    attributes: List[str]
    graph_base_url: str = Field(
        default="https://graph.microsoft.com",
        description="Graph endpoint. Override for national clouds if needed.",
    )
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="AAD authority host",
    )
    scopes: List[str] = Field(
        default_factory=lambda: ["https://graph.microsoft.com/.default"]
    )
    log_path: Optional[Path] = None
    checkpoint_path: Optional[Path] = None
    export_path: Optional[Path] = Field(
        default=None,
        description="Flagged-user CSV path. The operator is asked at end of run when unset.",
    )
    checkpoint_interval: int = Field(default=5, ge=1)
    max_retries: int = Field(
        default=0,
        ge=0,
        description="Retries for throttled or failed Graph calls. Off unless set.",
    )
    timeout: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=999, ge=1, le=999)

    model_config = ConfigDict(extra="forbid")

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, value: str) -> str:
        return _require_guid(value, "client_id")

    @field_validator("attributes")
    @classmethod
    def dedupe_attributes(cls, value: List[str]) -> List[str]:
        seen: Dict[str, None] = {}
        for name in value:
            name = name.strip()
            if name:
                seen.setdefault(name, None)
        if not seen:
            raise ValueError("At least one attribute must be compared")
        return list(seen)

    @field_validator("scopes")
    @classmethod
    def ensure_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one scope must be provided")
        return value

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ReconcileConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with config_path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read configuration {config_path}: {exc}") from exc

        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "ReconcileConfig":
        try:
            return cls(**raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

    def with_overrides(self, **overrides: Any) -> "ReconcileConfig":
        """Return a copy with the non-empty command-line overrides applied."""
        update = {key: value for key, value in overrides.items() if value is not None}
        if not update:
            return self
        return self.model_copy(update=update)
