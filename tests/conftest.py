"""Pytest configuration and fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from idm.provision.config import DEFAULT_TRACKING_GROUP
from idm.provision.engine import SyncPlan, SyncResult, apply_sync_plan, compute_sync_plan
from idm.provision.errors import ApiError, NotFoundError
from idm.provision.remote import CurrentState, fetch_current_state
from idm.provision.state import DesiredState, EntityKind

DOMAIN = "idm.example.com"

JOIN_DELIMITERS = {"ssv": " ", "csv": ",", "array": ";"}


def spn(name: str) -> str:
    return f"{name}@{DOMAIN}"


@dataclass
class FakeOAuth2:
    public: bool
    attrs: dict[str, list[str]] = field(default_factory=dict)
    scope_maps: dict[str, list[str]] = field(default_factory=dict)
    sup_scope_maps: dict[str, list[str]] = field(default_factory=dict)
    # claim -> (join type, group -> values)
    claim_maps: dict[str, tuple[str, dict[str, list[str]]]] = field(default_factory=dict)
    basic_secret: str | None = None
    image: bytes | None = None


class FakeDirectory:
    """In-memory identity provider implementing the admin client interface.

    Entries are rendered the way the admin API returns them. References to
    missing entries are rejected, and in strict mode so is deleting an entry
    that is still referenced.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict
        self.groups: dict[str, set[str]] = {}
        self.persons: dict[str, dict[str, list[str]]] = {}
        self.oauth2: dict[str, FakeOAuth2] = {}
        self.calls: list[tuple[str, ...]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self._uuid = 0

    # -- setup helpers --------------------------------------------------------

    def add_group(self, name: str, members=(), tracked: bool = False) -> None:
        self.groups[name] = set(members)
        if tracked:
            self.track(name)

    def add_person(self, name: str, display_name: str | None = None, tracked: bool = False, **attrs) -> None:
        self.persons[name] = {"displayname": [display_name or name.title()], **attrs}
        if tracked:
            self.track(name)

    def add_oauth2(self, name: str, public: bool = False, **kwargs) -> FakeOAuth2:
        rs = FakeOAuth2(
            public=public,
            attrs={
                "displayname": [kwargs.pop("display_name", name.title())],
                "oauth2_rs_origin": list(kwargs.pop("origin_url", [f"https://{name}.example.com/"])),
                "oauth2_rs_origin_landing": [kwargs.pop("origin_landing", f"https://{name}.example.com/")],
            },
            **kwargs,
        )
        self.oauth2[name] = rs
        return rs

    def track(self, *names: str) -> None:
        self.groups.setdefault(DEFAULT_TRACKING_GROUP, set()).update(names)

    @property
    def tracked(self) -> set[str]:
        return set(self.groups.get(DEFAULT_TRACKING_GROUP, set()))

    def fail(self, method: str, name: str, error: Exception) -> None:
        self.failures[(method, name)] = error

    @property
    def writes(self) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] not in ("authenticate", "list_entities")]

    # -- internals ------------------------------------------------------------

    def _record(self, method: str, name: str, *args: Any) -> None:
        self.calls.append((method, name, *args))
        error = self.failures.get((method, name))
        if error is not None:
            raise error

    def _kind_of(self, name: str) -> EntityKind | None:
        if name in self.groups:
            return EntityKind.GROUP
        if name in self.persons:
            return EntityKind.PERSON
        if name in self.oauth2:
            return EntityKind.OAUTH2
        return None

    def _require(self, name: str, kinds: tuple[EntityKind, ...]) -> None:
        if self._kind_of(name) not in kinds:
            raise ApiError(f"no such entry: {name}", status_code=400)

    def _require_members(self, members) -> None:
        for member in members:
            self._require(member, (EntityKind.GROUP, EntityKind.PERSON))

    def _rs(self, name: str) -> FakeOAuth2:
        if name not in self.oauth2:
            raise NotFoundError(f"oauth2 {name} not found", status_code=404)
        return self.oauth2[name]

    def _references(self, name: str) -> list[str]:
        refs = [g for g, members in self.groups.items() if name in members and g != DEFAULT_TRACKING_GROUP]
        for rs_name, rs in self.oauth2.items():
            if name in rs.scope_maps or name in rs.sup_scope_maps:
                refs.append(rs_name)
            if any(name in values for _, values in rs.claim_maps.values()):
                refs.append(rs_name)
        return refs

    def _next_uuid(self) -> str:
        self._uuid += 1
        return f"00000000-0000-0000-0000-{self._uuid:012d}"

    def _render_group(self, name: str) -> dict[str, Any]:
        return {
            "attrs": {
                "name": [name],
                "uuid": [self._next_uuid()],
                "member": sorted(spn(m) for m in self.groups[name]),
            }
        }

    def _render_person(self, name: str) -> dict[str, Any]:
        return {"attrs": {"name": [name], "uuid": [self._next_uuid()], **self.persons[name]}}

    def _render_oauth2(self, name: str) -> dict[str, Any]:
        rs = self.oauth2[name]
        klass = "oauth2_resource_server_public" if rs.public else "oauth2_resource_server_basic"

        def scope_map(group: str, scopes: list[str]) -> str:
            inner = ", ".join(f'"{s}"' for s in sorted(scopes))
            return f"{spn(group)}: {{{inner}}}"

        claim_maps = []
        for claim, (join_type, by_group) in sorted(rs.claim_maps.items()):
            for group, values in sorted(by_group.items()):
                delimiter = JOIN_DELIMITERS[join_type]
                claim_maps.append(f'{claim}:{spn(group)}:{delimiter}:"{",".join(sorted(values))}"')

        attrs = {
            "name": [name],
            "uuid": [self._next_uuid()],
            "class": ["object", "oauth2_resource_server", klass],
            **rs.attrs,
            "oauth2_rs_scope_map": [scope_map(g, s) for g, s in sorted(rs.scope_maps.items())],
            "oauth2_rs_sup_scope_map": [scope_map(g, s) for g, s in sorted(rs.sup_scope_maps.items())],
            "oauth2_rs_claim_map": claim_maps,
        }
        return {"attrs": attrs}

    # -- admin client interface ----------------------------------------------

    async def authenticate(self) -> dict[str, Any]:
        self.calls.append(("authenticate", ""))
        return {"name": "idm_admin"}

    async def list_entities(self, kind: EntityKind) -> list[dict[str, Any]]:
        self.calls.append(("list_entities", kind.value))
        if kind is EntityKind.GROUP:
            return [self._render_group(n) for n in sorted(self.groups)]
        if kind is EntityKind.PERSON:
            return [self._render_person(n) for n in sorted(self.persons)]
        return [self._render_oauth2(n) for n in sorted(self.oauth2)]

    async def create_entity(self, kind: EntityKind, attrs: dict[str, list[str]], public: bool = False) -> None:
        name = attrs["name"][0]
        self._record("create_entity", name, kind.value)
        existing = self._kind_of(name)
        if existing is kind:
            return
        if existing is not None:
            raise ApiError(f"name {name} already in use", status_code=400)

        if kind is EntityKind.GROUP:
            self._require_members(attrs.get("member", []))
            self.groups[name] = set(attrs.get("member", []))
        elif kind is EntityKind.PERSON:
            self.persons[name] = {k: list(v) for k, v in attrs.items() if k != "name"}
        else:
            self.oauth2[name] = FakeOAuth2(
                public=public, attrs={k: list(v) for k, v in attrs.items() if k != "name"}
            )

    async def delete_entity(self, kind: EntityKind, name: str) -> None:
        self._record("delete_entity", name, kind.value)
        if self._kind_of(name) is not kind:
            return
        if self.strict and kind is not EntityKind.OAUTH2:
            refs = self._references(name)
            if refs:
                raise ApiError(f"{name} is still referenced by {refs}", status_code=400)
        self.entities(kind).pop(name)
        # referential integrity
        for members in self.groups.values():
            members.discard(name)
        for rs in self.oauth2.values():
            rs.scope_maps.pop(name, None)
            rs.sup_scope_maps.pop(name, None)
            for _, by_group in rs.claim_maps.values():
                by_group.pop(name, None)

    def entities(self, kind: EntityKind) -> dict[str, Any]:
        return {EntityKind.GROUP: self.groups, EntityKind.PERSON: self.persons, EntityKind.OAUTH2: self.oauth2}[kind]

    async def set_attr(self, kind: EntityKind, name: str, attr: str, values: list[str]) -> None:
        self._record("set_attr", name, attr, tuple(values))
        if kind is EntityKind.GROUP:
            if name not in self.groups:
                raise NotFoundError(f"group {name} not found", status_code=404)
            if attr == "member":
                self._require_members(values)
                self.groups[name] = set(values)
            return
        if name not in self.persons:
            raise NotFoundError(f"person {name} not found", status_code=404)
        if values:
            self.persons[name][attr] = list(values)
        else:
            self.persons[name].pop(attr, None)

    async def remove_attr_values(self, kind: EntityKind, name: str, attr: str, values: list[str]) -> None:
        self._record("remove_attr_values", name, attr, tuple(values))
        if kind is EntityKind.GROUP and name in self.groups and attr == "member":
            self.groups[name] -= set(values)

    async def patch_oauth2(self, name: str, attrs: dict[str, list[str]]) -> None:
        self._record("patch_oauth2", name, *sorted(attrs))
        self._rs(name).attrs.update({k: list(v) for k, v in attrs.items()})

    async def set_scope_map(self, name: str, group: str, scopes: list[str], supplementary: bool = False) -> None:
        self._record("set_sup_scope_map" if supplementary else "set_scope_map", name, group, tuple(scopes))
        rs = self._rs(name)
        self._require(group, (EntityKind.GROUP,))
        (rs.sup_scope_maps if supplementary else rs.scope_maps)[group] = list(scopes)

    async def delete_scope_map(self, name: str, group: str, supplementary: bool = False) -> None:
        self._record("delete_sup_scope_map" if supplementary else "delete_scope_map", name, group)
        if name in self.oauth2:
            rs = self.oauth2[name]
            (rs.sup_scope_maps if supplementary else rs.scope_maps).pop(group, None)

    async def set_claim_map(self, name: str, claim: str, group: str, values: list[str]) -> None:
        self._record("set_claim_map", name, claim, group, tuple(values))
        rs = self._rs(name)
        self._require(group, (EntityKind.GROUP,))
        join_type, by_group = rs.claim_maps.setdefault(claim, ("array", {}))
        by_group[group] = list(values)

    async def delete_claim_map(self, name: str, claim: str, group: str) -> None:
        self._record("delete_claim_map", name, claim, group)
        rs = self.oauth2.get(name)
        if rs is None or claim not in rs.claim_maps:
            return
        _, by_group = rs.claim_maps[claim]
        by_group.pop(group, None)
        if not by_group:
            del rs.claim_maps[claim]

    async def set_claim_map_join(self, name: str, claim: str, join_type: str) -> None:
        self._record("set_claim_map_join", name, claim, join_type)
        rs = self._rs(name)
        _, by_group = rs.claim_maps.get(claim, ("array", {}))
        rs.claim_maps[claim] = (join_type, by_group)

    async def set_basic_secret(self, name: str, secret_file: Path) -> None:
        self._record("set_basic_secret", name)
        self._rs(name).basic_secret = secret_file.read_text().strip()

    async def upload_image(self, name: str, image_file: Path) -> None:
        self._record("upload_image", name)
        self._rs(name).image = image_file.read_bytes()


class Provisioner:
    """Runs plan computation and application against a fake directory."""

    def __init__(self, directory: FakeDirectory):
        self.directory = directory

    async def read(self) -> CurrentState:
        return await fetch_current_state(self.directory, DEFAULT_TRACKING_GROUP)

    async def plan(self, document: dict[str, Any], **kwargs: Any) -> SyncPlan:
        desired = DesiredState.from_data(document)
        current = await self.read()
        return compute_sync_plan(desired, current, tracking_group=DEFAULT_TRACKING_GROUP, **kwargs)

    async def sync(self, document: dict[str, Any], max_workers: int = 4, **kwargs: Any) -> tuple[SyncPlan, SyncResult]:
        desired = DesiredState.from_data(document)
        current = await self.read()
        plan = compute_sync_plan(desired, current, tracking_group=DEFAULT_TRACKING_GROUP, **kwargs)
        result = await apply_sync_plan(
            self.directory,
            plan,
            current,
            tracking_group=DEFAULT_TRACKING_GROUP,
            max_workers=max_workers,
        )
        return plan, result


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def provisioner(directory: FakeDirectory) -> Provisioner:
    return Provisioner(directory)


@pytest.fixture
def end_to_end_document() -> dict[str, Any]:
    return {
        "groups": {"devs": {"members": ["alice"]}},
        "persons": {"alice": {"displayName": "Alice"}},
    }
