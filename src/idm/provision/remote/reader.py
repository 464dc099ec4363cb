"""Read the current directory state.

Entries are returned by the admin API as ``{"attrs": {name: [values]}}``.
References are SPNs (``name@domain``) and are reduced to the bare name here,
so the diff engine can compare them with names from the document.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from idm.provision.errors import FatalError
from idm.provision.state.models import EntityKind

logger = logging.getLogger(__name__)

PUBLIC_CLASS = "oauth2_resource_server_public"

# Claim map join delimiter as stored remotely -> join type in the document
JOIN_DELIMITERS = {" ": "ssv", ",": "csv", ";": "array"}
DEFAULT_JOIN = "array"


class StateSource(Protocol):
    async def list_entities(self, kind: EntityKind) -> list[dict[str, Any]]: ...


@dataclass
class RemoteEntity:
    name: str
    uuid: str


@dataclass
class RemoteGroup(RemoteEntity):
    members: set[str] = field(default_factory=set)


@dataclass
class RemotePerson(RemoteEntity):
    display_name: str = ""
    legal_name: str | None = None
    mail_addresses: set[str] = field(default_factory=set)


@dataclass
class RemoteClaimMap:
    join_type: str = DEFAULT_JOIN
    values_by_group: dict[str, set[str]] = field(default_factory=dict)


@dataclass
class RemoteOAuth2(RemoteEntity):
    public: bool = False
    display_name: str = ""
    origin_urls: set[str] = field(default_factory=set)
    origin_landing: str = ""
    enable_localhost_redirects: bool = False
    enable_legacy_crypto: bool = False
    allow_insecure_client_disable_pkce: bool = False
    prefer_short_username: bool = False
    scope_maps: dict[str, set[str]] = field(default_factory=dict)
    supplementary_scope_maps: dict[str, set[str]] = field(default_factory=dict)
    claim_maps: dict[str, RemoteClaimMap] = field(default_factory=dict)

    def claim_pairs(self) -> set[tuple[str, str]]:
        return {
            (claim, group)
            for claim, claim_map in self.claim_maps.items()
            for group in claim_map.values_by_group
        }


@dataclass
class CurrentState:
    """Current state of the directory.

    Contains every entry of the managed kinds, including unmanaged ones.
    ``tracked`` holds the members of the tracking group, which itself is
    kept out of ``groups``.
    """

    groups: dict[str, RemoteGroup] = field(default_factory=dict)
    persons: dict[str, RemotePerson] = field(default_factory=dict)
    oauth2: dict[str, RemoteOAuth2] = field(default_factory=dict)
    tracked: set[str] = field(default_factory=set)
    tracking_group_exists: bool = False

    def entities(self, kind: EntityKind) -> dict[str, RemoteEntity]:
        if kind is EntityKind.GROUP:
            return self.groups
        if kind is EntityKind.PERSON:
            return self.persons
        return self.oauth2

    def kind_of(self, name: str) -> EntityKind | None:
        for kind in EntityKind:
            if name in self.entities(kind):
                return kind
        return None

    def exists(self, kind: EntityKind, name: str) -> bool:
        return name in self.entities(kind)


def strip_domain(value: str) -> str:
    """Reduce an SPN such as ``alice@idm.example.com`` to ``alice``."""
    return value.split("@", 1)[0]


def _attr(entity: dict[str, Any], attr: str, where: str) -> list[str]:
    attrs = entity.get("attrs")
    if not isinstance(attrs, dict):
        raise FatalError(f"Invalid entity in {where}: missing attrs")
    values = attrs.get(attr)
    if values is None:
        return []
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        raise FatalError(f"Invalid attr value for {attr} of {where}: {values!r}")
    return values


def _single(entity: dict[str, Any], attr: str, where: str) -> str | None:
    values = _attr(entity, attr, where)
    return values[0] if values else None


def _flag(entity: dict[str, Any], attr: str, where: str) -> bool:
    return (_single(entity, attr, where) or "false").lower() == "true"


def parse_scope_map(value: str) -> tuple[str, set[str]]:
    """Parse ``group@domain: {"openid", "profile"}``."""
    group, sep, scopes = value.partition(": ")
    if not sep:
        raise FatalError(f"Invalid scope map value: {value!r}")
    inner = scopes.strip().removeprefix("{").removesuffix("}")
    return strip_domain(group), {s.strip().strip('"') for s in inner.split(",") if s.strip()}


def parse_claim_map(value: str) -> tuple[str, str, str, set[str]]:
    """Parse ``claim:group@domain:<delimiter>:"v1,v2"``.

    Returns (claim, group, join type, values).
    """
    parts = value.split(":", 3)
    if len(parts) != 4:
        raise FatalError(f"Invalid claim map value: {value!r}")
    claim, group, delimiter, raw = parts
    values = {v for v in raw.strip('"').split(",") if v}
    return claim, strip_domain(group), JOIN_DELIMITERS.get(delimiter, DEFAULT_JOIN), values


def _parse_group(entity: dict[str, Any]) -> RemoteGroup:
    name = _single(entity, "name", EntityKind.GROUP.endpoint)
    where = f"{EntityKind.GROUP.endpoint}/{name}"
    return RemoteGroup(
        name=name,
        uuid=_single(entity, "uuid", where) or "",
        members={strip_domain(m) for m in _attr(entity, "member", where)},
    )


def _parse_person(entity: dict[str, Any]) -> RemotePerson:
    name = _single(entity, "name", EntityKind.PERSON.endpoint)
    where = f"{EntityKind.PERSON.endpoint}/{name}"
    return RemotePerson(
        name=name,
        uuid=_single(entity, "uuid", where) or "",
        display_name=_single(entity, "displayname", where) or "",
        legal_name=_single(entity, "legalname", where),
        mail_addresses=set(_attr(entity, "mail", where)),
    )


def _parse_oauth2(entity: dict[str, Any]) -> RemoteOAuth2:
    name = _single(entity, "name", EntityKind.OAUTH2.endpoint)
    where = f"{EntityKind.OAUTH2.endpoint}/{name}"

    claim_maps: dict[str, RemoteClaimMap] = {}
    for value in _attr(entity, "oauth2_rs_claim_map", where):
        claim, group, join_type, values = parse_claim_map(value)
        claim_map = claim_maps.setdefault(claim, RemoteClaimMap(join_type=join_type))
        claim_map.values_by_group[group] = values

    return RemoteOAuth2(
        name=name,
        uuid=_single(entity, "uuid", where) or "",
        public=PUBLIC_CLASS in _attr(entity, "class", where),
        display_name=_single(entity, "displayname", where) or "",
        origin_urls=set(_attr(entity, "oauth2_rs_origin", where)),
        origin_landing=_single(entity, "oauth2_rs_origin_landing", where) or "",
        enable_localhost_redirects=_flag(entity, "oauth2_allow_localhost_redirect", where),
        enable_legacy_crypto=_flag(entity, "oauth2_jwt_legacy_crypto_enable", where),
        allow_insecure_client_disable_pkce=_flag(
            entity, "oauth2_allow_insecure_client_disable_pkce", where
        ),
        prefer_short_username=_flag(entity, "oauth2_prefer_short_username", where),
        scope_maps=dict(
            parse_scope_map(v) for v in _attr(entity, "oauth2_rs_scope_map", where)
        ),
        supplementary_scope_maps=dict(
            parse_scope_map(v) for v in _attr(entity, "oauth2_rs_sup_scope_map", where)
        ),
        claim_maps=claim_maps,
    )


_PARSERS = {
    EntityKind.GROUP: _parse_group,
    EntityKind.PERSON: _parse_person,
    EntityKind.OAUTH2: _parse_oauth2,
}


async def _read_kind(source: StateSource, kind: EntityKind) -> dict[str, Any]:
    entities: dict[str, Any] = {}
    for raw in await source.list_entities(kind):
        parsed = _PARSERS[kind](raw)
        if parsed.name:
            entities[parsed.name] = parsed
    logger.debug("Read %d %s entries", len(entities), kind.value)
    return entities


async def fetch_current_state(source: StateSource, tracking_group: str) -> CurrentState:
    """Fetch the current state of all managed kinds concurrently.

    Every kind is read regardless of the document: orphans and the live
    references to them can belong to any kind.
    """
    ordered = list(EntityKind)
    results = await asyncio.gather(*(_read_kind(source, kind) for kind in ordered))

    state = CurrentState()
    for kind, entities in zip(ordered, results):
        state.entities(kind).update(entities)

    tracking = state.groups.pop(tracking_group, None)
    if tracking is not None:
        state.tracking_group_exists = True
        state.tracked = set(tracking.members)

    return state
