"""Pydantic models for the desired-state document.

Example document:
    {
      "groups": {
        "devs": {"members": ["alice"]}
      },
      "persons": {
        "alice": {"displayName": "Alice", "mailAddresses": ["alice@example.com"]}
      },
      "systems": {
        "oauth2": {
          "grafana": {
            "displayName": "Grafana",
            "originUrl": "https://grafana.example.com/login/generic_oauth/",
            "originLanding": "https://grafana.example.com/",
            "basicSecretFile": "${SECRETS_DIR}/grafana",
            "scopeMaps": {"devs": ["openid", "profile", "email"]},
            "claimMaps": {
              "groups": {"joinType": "array", "valuesByGroup": {"devs": ["editor"]}}
            }
          }
        }
      }
    }
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from idm.provision.errors import ValidationError

# Pattern for ${VAR} and ${VAR:-default} interpolation
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")

JoinType = Literal["ssv", "csv", "array"]


class EntityKind(str, Enum):
    """Kinds of directory entries managed by this tool."""

    GROUP = "group"
    PERSON = "person"
    OAUTH2 = "oauth2"

    @property
    def endpoint(self) -> str:
        return f"/v1/{self.value}"

    @property
    def rank(self) -> int:
        """Tie-break order used when sorting operations."""
        return {EntityKind.PERSON: 0, EntityKind.GROUP: 1, EntityKind.OAUTH2: 2}[self]

    @property
    def trackable(self) -> bool:
        """Whether entities of this kind can be tracking-group members."""
        return self is not EntityKind.OAUTH2


def _resolve_env_str(s: str) -> str:
    """Resolve environment variable placeholders in a string."""
    def repl(m: re.Match[str]) -> str:
        var = m.group(1)
        default = m.group(3)
        val = os.getenv(var)
        if val is None or val == "":
            return default if default is not None else ""
        return val

    # Resolve repeatedly until stable (handles nested defaults)
    prev = None
    cur = s
    for _ in range(5):
        if cur == prev:
            break
        prev = cur
        cur = _ENV_PATTERN.sub(repl, cur)
    return cur


def _resolve_env(value: Any) -> Any:
    """Recursively resolve environment variables in a data structure."""
    if isinstance(value, str):
        return _resolve_env_str(value)
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    return value


def _check_lowercase(value: str, what: str) -> str:
    if value != value.lower():
        raise ValueError(f"{what} '{value}' must be lowercase")
    return value


_DOCUMENT_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="forbid",
    frozen=True,
)


class _Entity(BaseModel):
    model_config = _DOCUMENT_CONFIG

    present: bool = True


class Group(_Entity):
    """A group. ``members`` replaces the live member list."""

    members: list[str] = Field(default_factory=list)

    @field_validator("members")
    @classmethod
    def members_lowercase(cls, v: list[str]) -> list[str]:
        for member in v:
            _check_lowercase(member, "member reference")
        return v


class Person(_Entity):
    """A person. Absent optional attributes are purged on the live entry."""

    display_name: str
    legal_name: str | None = None
    mail_addresses: list[str] | None = None


class ClaimMap(BaseModel):
    """Group-conditioned claim values joined with ``join_type``."""

    model_config = _DOCUMENT_CONFIG

    join_type: JoinType
    values_by_group: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("values_by_group")
    @classmethod
    def groups_lowercase(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for group in v:
            _check_lowercase(group, "claim map group")
        return v


class OAuth2System(_Entity):
    """An OAuth2 resource server registration."""

    public: bool = False
    display_name: str
    origin_url: list[str]
    origin_landing: str
    basic_secret_file: Path | None = None
    image_file: Path | None = None
    enable_localhost_redirects: bool = False
    enable_legacy_crypto: bool = False
    allow_insecure_client_disable_pkce: bool = False
    prefer_short_username: bool = False
    scope_maps: dict[str, list[str]] = Field(default_factory=dict)
    supplementary_scope_maps: dict[str, list[str]] = Field(default_factory=dict)
    claim_maps: dict[str, ClaimMap] = Field(default_factory=dict)
    remove_orphaned_claim_maps: bool = True

    @field_validator("origin_url", mode="before")
    @classmethod
    def origin_url_as_list(cls, v: Any) -> Any:
        """Accept a single URL or a list of URLs."""
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("origin_url")
    @classmethod
    def origin_url_terminated(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one origin URL is required")
        for url in v:
            if not url.endswith("/"):
                raise ValueError(f"origin URL '{url}' must end with '/'")
        return v

    @field_validator("scope_maps", "supplementary_scope_maps")
    @classmethod
    def scope_map_groups_lowercase(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for group in v:
            _check_lowercase(group, "scope map group")
        return v

    @model_validator(mode="after")
    def check_client_type(self) -> "OAuth2System":
        if self.public:
            if self.basic_secret_file is not None:
                raise ValueError("basicSecretFile cannot be set on a public client")
            if self.allow_insecure_client_disable_pkce:
                raise ValueError(
                    "allowInsecureClientDisablePkce cannot be set on a public client"
                )
        elif self.enable_localhost_redirects:
            raise ValueError(
                "enableLocalhostRedirects can only be set on a public client"
            )
        return self


class Systems(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    oauth2: dict[str, OAuth2System] = Field(default_factory=dict)


class DesiredState(BaseModel):
    """Top-level desired-state document."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    groups: dict[str, Group] = Field(default_factory=dict)
    persons: dict[str, Person] = Field(default_factory=dict)
    systems: Systems = Field(default_factory=Systems)

    @field_validator("groups", "persons")
    @classmethod
    def names_lowercase(cls, v: dict[str, Any]) -> dict[str, Any]:
        for name in v:
            _check_lowercase(name, "entity name")
        return v

    @model_validator(mode="after")
    def names_unique_across_kinds(self) -> "DesiredState":
        for name in self.systems.oauth2:
            _check_lowercase(name, "entity name")

        seen: dict[str, list[str]] = {}
        for kind, names in (
            ("group", self.groups),
            ("person", self.persons),
            ("oauth2", self.systems.oauth2),
        ):
            for name in names:
                seen.setdefault(name, []).append(kind)

        clashes = sorted(f"{n} is used as {', '.join(k)}" for n, k in seen.items() if len(k) > 1)
        if clashes:
            raise ValueError("entity names must be unique: " + "; ".join(clashes))
        return self

    @classmethod
    def from_data(cls, data: Any) -> "DesiredState":
        """Validate an already-parsed document."""
        if not isinstance(data, dict):
            raise ValidationError("State document must be a mapping")
        try:
            return cls.model_validate(_resolve_env(data))
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid state document",
                errors=[
                    f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                    for err in e.errors()
                ],
            ) from e

    @classmethod
    def from_file(cls, path: str | Path) -> "DesiredState":
        """Load a JSON (or YAML) state file with env var interpolation."""
        p = Path(path)
        if not p.exists():
            raise ValidationError(f"State file not found: {path}")

        try:
            raw = yaml.safe_load(p.read_text())
        except yaml.YAMLError as e:
            raise ValidationError(f"Failed to parse state file {path}: {e}") from e

        return cls.from_data(raw)

    def entities(self, kind: EntityKind) -> dict[str, _Entity]:
        if kind is EntityKind.GROUP:
            return dict(self.groups)
        if kind is EntityKind.PERSON:
            return dict(self.persons)
        return dict(self.systems.oauth2)

    def kind_of(self, name: str) -> EntityKind | None:
        """Kind of the entity declared under ``name``, if any."""
        for kind in EntityKind:
            if name in self.entities(kind):
                return kind
        return None

    def is_present(self, name: str) -> bool:
        kind = self.kind_of(name)
        return kind is not None and self.entities(kind)[name].present
