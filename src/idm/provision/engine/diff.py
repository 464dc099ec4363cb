"""Diff desired state against current state.

Produces unordered operations per entity plus the set of orphans to delete.
Ordering and reference checks happen in ``ordering``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from idm.provision.engine.plan import OpKind, Operation, Reference
from idm.provision.errors import PlanError
from idm.provision.remote.reader import (
    DEFAULT_JOIN,
    CurrentState,
    RemoteGroup,
    RemoteOAuth2,
    RemotePerson,
)
from idm.provision.state.models import (
    DesiredState,
    EntityKind,
    Group,
    OAuth2System,
    Person,
)

logger = logging.getLogger(__name__)

MEMBER_KINDS = frozenset({EntityKind.GROUP, EntityKind.PERSON})
GROUP_KIND = frozenset({EntityKind.GROUP})


@dataclass
class Changes:
    """Unordered result of a diff."""

    creates: list[Operation] = field(default_factory=list)
    recreate_deletes: list[Operation] = field(default_factory=list)
    updates: list[Operation] = field(default_factory=list)
    deletions: list[tuple[EntityKind, str]] = field(default_factory=list)
    orphans_kept: list[tuple[EntityKind, str]] = field(default_factory=list)
    unmanaged_oauth2: list[str] = field(default_factory=list)
    # Declared entities that exist but are missing from the tracking group
    adopted: list[tuple[EntityKind, str]] = field(default_factory=list)


def _flag(value: bool) -> tuple[str, ...]:
    return ("true",) if value else ("false",)


def _diff_group(name: str, group: Group, live: RemoteGroup | None) -> list[Operation]:
    members = sorted(set(group.members))
    needs = tuple(Reference(m, MEMBER_KINDS, "member") for m in members)

    if live is None:
        attrs = {"name": [name]}
        if members:
            attrs["member"] = members
        return [Operation(OpKind.CREATE, EntityKind.GROUP, name, attrs=attrs, needs=needs)]

    if set(members) != live.members:
        return [
            Operation(
                OpKind.SET_ATTR,
                EntityKind.GROUP,
                name,
                attr="member",
                values=tuple(members),
                needs=needs,
            )
        ]
    return []


def _diff_person(name: str, person: Person, live: RemotePerson | None) -> list[Operation]:
    legal_name = (person.legal_name,) if person.legal_name else ()
    mail = sorted(set(person.mail_addresses or []))

    if live is None:
        attrs = {"name": [name], "displayname": [person.display_name]}
        if legal_name:
            attrs["legalname"] = list(legal_name)
        if mail:
            attrs["mail"] = mail
        return [Operation(OpKind.CREATE, EntityKind.PERSON, name, attrs=attrs)]

    ops = []
    if person.display_name != live.display_name:
        ops.append(
            Operation(
                OpKind.SET_ATTR,
                EntityKind.PERSON,
                name,
                attr="displayname",
                values=(person.display_name,),
            )
        )
    if (person.legal_name or None) != live.legal_name:
        ops.append(
            Operation(
                OpKind.SET_ATTR, EntityKind.PERSON, name, attr="legalname", values=legal_name
            )
        )
    if set(mail) != live.mail_addresses:
        ops.append(
            Operation(
                OpKind.SET_ATTR, EntityKind.PERSON, name, attr="mail", values=tuple(mail)
            )
        )
    return ops


def _fresh_oauth2(name: str, rs: OAuth2System) -> RemoteOAuth2:
    """State of a resource server right after it has been created."""
    return RemoteOAuth2(
        name=name,
        uuid="",
        public=rs.public,
        display_name=rs.display_name,
        origin_urls=set(rs.origin_url),
        origin_landing=rs.origin_landing,
    )


def _diff_oauth2_attrs(name: str, rs: OAuth2System, live: RemoteOAuth2) -> list[Operation]:
    def patch(attr: str, values: tuple[str, ...]) -> Operation:
        return Operation(OpKind.PATCH_OAUTH2, EntityKind.OAUTH2, name, attr=attr, values=values)

    ops = []
    if rs.display_name != live.display_name:
        ops.append(patch("displayname", (rs.display_name,)))
    if rs.origin_landing != live.origin_landing:
        ops.append(patch("oauth2_rs_origin_landing", (rs.origin_landing,)))
    if set(rs.origin_url) != live.origin_urls:
        ops.append(patch("oauth2_rs_origin", tuple(rs.origin_url)))

    flags = [
        ("oauth2_jwt_legacy_crypto_enable", rs.enable_legacy_crypto, live.enable_legacy_crypto),
        ("oauth2_prefer_short_username", rs.prefer_short_username, live.prefer_short_username),
    ]
    if rs.public:
        flags.append(
            (
                "oauth2_allow_localhost_redirect",
                rs.enable_localhost_redirects,
                live.enable_localhost_redirects,
            )
        )
    else:
        flags.append(
            (
                "oauth2_allow_insecure_client_disable_pkce",
                rs.allow_insecure_client_disable_pkce,
                live.allow_insecure_client_disable_pkce,
            )
        )
    for attr, desired, current in flags:
        if desired != current:
            ops.append(patch(attr, _flag(desired)))

    return ops


def _diff_scope_maps(
    name: str,
    desired: dict[str, list[str]],
    live: dict[str, set[str]],
    supplementary: bool,
) -> list[Operation]:
    """Scope maps replace the whole live map; supplementary maps only touch listed keys."""
    set_kind = OpKind.SET_SUP_SCOPE_MAP if supplementary else OpKind.SET_SCOPE_MAP
    delete_kind = OpKind.DELETE_SUP_SCOPE_MAP if supplementary else OpKind.DELETE_SCOPE_MAP
    role = "supplementary scope map" if supplementary else "scope map"

    ops = []
    for group in sorted(desired):
        scopes = set(desired[group])
        if not scopes:
            if group in live:
                ops.append(Operation(delete_kind, EntityKind.OAUTH2, name, key=group))
        elif live.get(group) != scopes:
            ops.append(
                Operation(
                    set_kind,
                    EntityKind.OAUTH2,
                    name,
                    key=group,
                    values=tuple(sorted(scopes)),
                    needs=(Reference(group, GROUP_KIND, role),),
                )
            )

    if not supplementary:
        for group in sorted(set(live) - set(desired)):
            ops.append(Operation(delete_kind, EntityKind.OAUTH2, name, key=group))

    return ops


def _diff_claim_maps(name: str, rs: OAuth2System, live: RemoteOAuth2) -> list[Operation]:
    ops = []
    for claim in sorted(rs.claim_maps):
        claim_map = rs.claim_maps[claim]
        live_map = live.claim_maps.get(claim)
        live_values = live_map.values_by_group if live_map else {}

        for group in sorted(claim_map.values_by_group):
            values = set(claim_map.values_by_group[group])
            if not values:
                if group in live_values:
                    ops.append(
                        Operation(
                            OpKind.DELETE_CLAIM_MAP,
                            EntityKind.OAUTH2,
                            name,
                            key=claim,
                            subkey=group,
                        )
                    )
            elif live_values.get(group) != values:
                ops.append(
                    Operation(
                        OpKind.SET_CLAIM_MAP,
                        EntityKind.OAUTH2,
                        name,
                        key=claim,
                        subkey=group,
                        values=tuple(sorted(values)),
                        needs=(Reference(group, GROUP_KIND, "claim map"),),
                    )
                )

        has_values = live_map is not None or any(claim_map.values_by_group.values())
        live_join = live_map.join_type if live_map else DEFAULT_JOIN
        if has_values and claim_map.join_type != live_join:
            ops.append(
                Operation(
                    OpKind.SET_CLAIM_JOIN,
                    EntityKind.OAUTH2,
                    name,
                    key=claim,
                    values=(claim_map.join_type,),
                )
            )

    # Groups missing inside a declared claim are left alone; removing one
    # takes an explicit empty list.
    if rs.remove_orphaned_claim_maps:
        orphaned = {(c, g) for c, g in live.claim_pairs() if c not in rs.claim_maps}
        for claim, group in sorted(orphaned):
            ops.append(
                Operation(
                    OpKind.DELETE_CLAIM_MAP, EntityKind.OAUTH2, name, key=claim, subkey=group
                )
            )

    return ops


def _diff_oauth2(
    name: str, rs: OAuth2System, live: RemoteOAuth2 | None, changes: Changes
) -> None:
    recreate = live is not None and live.public != rs.public
    if recreate:
        logger.info(
            "oauth2 %s changes client type (public=%s), it will be recreated", name, rs.public
        )
        changes.recreate_deletes.append(
            Operation(OpKind.DELETE, EntityKind.OAUTH2, name, recreate=True)
        )

    if live is None or recreate:
        changes.creates.append(
            Operation(
                OpKind.CREATE,
                EntityKind.OAUTH2,
                name,
                attrs={
                    "name": [name],
                    "oauth2_rs_origin": list(rs.origin_url),
                    "oauth2_rs_origin_landing": [rs.origin_landing],
                    "displayname": [rs.display_name],
                },
                public=rs.public,
                recreate=recreate,
            )
        )
        live = _fresh_oauth2(name, rs)

    changes.updates.extend(_diff_oauth2_attrs(name, rs, live))
    changes.updates.extend(_diff_scope_maps(name, rs.scope_maps, live.scope_maps, False))
    changes.updates.extend(
        _diff_scope_maps(
            name, rs.supplementary_scope_maps, live.supplementary_scope_maps, True
        )
    )
    changes.updates.extend(_diff_claim_maps(name, rs, live))

    if rs.basic_secret_file is not None:
        changes.updates.append(
            Operation(
                OpKind.SET_BASIC_SECRET, EntityKind.OAUTH2, name, path=rs.basic_secret_file
            )
        )
    if rs.image_file is not None:
        changes.updates.append(
            Operation(OpKind.UPLOAD_IMAGE, EntityKind.OAUTH2, name, path=rs.image_file)
        )


def _check_name_available(
    kind: EntityKind, name: str, current: CurrentState, tracking_group: str
) -> None:
    if name == tracking_group:
        raise PlanError(f"'{name}' is reserved for the tracking group")

    existing = current.kind_of(name)
    if existing is not None and existing is not kind:
        raise PlanError(
            f"Cannot create {kind.value} '{name}' because the name is already "
            f"in use by a {existing.value}"
        )


def diff_states(
    desired: DesiredState,
    current: CurrentState,
    *,
    tracking_group: str,
    auto_remove: bool = True,
    managed_oauth2_prefix: str | None = None,
) -> Changes:
    """Compute the changes needed to converge ``current`` to ``desired``."""
    changes = Changes()

    for name in sorted(desired.groups):
        group = desired.groups[name]
        if not group.present:
            continue
        live = current.groups.get(name)
        if live is None:
            _check_name_available(EntityKind.GROUP, name, current, tracking_group)
        elif name not in current.tracked:
            changes.adopted.append((EntityKind.GROUP, name))
        ops = _diff_group(name, group, live)
        (changes.creates if live is None else changes.updates).extend(ops)

    for name in sorted(desired.persons):
        person = desired.persons[name]
        if not person.present:
            continue
        live = current.persons.get(name)
        if live is None:
            _check_name_available(EntityKind.PERSON, name, current, tracking_group)
        elif name not in current.tracked:
            changes.adopted.append((EntityKind.PERSON, name))
        ops = _diff_person(name, person, live)
        (changes.creates if live is None else changes.updates).extend(ops)

    for name in sorted(desired.systems.oauth2):
        rs = desired.systems.oauth2[name]
        if not rs.present:
            continue
        live = current.oauth2.get(name)
        if live is None:
            _check_name_available(EntityKind.OAUTH2, name, current, tracking_group)
        _diff_oauth2(name, rs, live, changes)

    # Orphans: tracked entries absent from the document
    for kind in (EntityKind.GROUP, EntityKind.PERSON):
        declared = desired.entities(kind)
        for name in sorted(current.entities(kind)):
            if name in declared or name not in current.tracked:
                continue
            if auto_remove:
                changes.deletions.append((kind, name))
            else:
                changes.orphans_kept.append((kind, name))

    # Resource servers cannot be tracked, so orphans are found by existence
    for name in sorted(current.oauth2):
        if name in desired.systems.oauth2:
            continue
        if managed_oauth2_prefix and name.startswith(managed_oauth2_prefix):
            if auto_remove:
                changes.deletions.append((EntityKind.OAUTH2, name))
            else:
                changes.orphans_kept.append((EntityKind.OAUTH2, name))
        else:
            changes.unmanaged_oauth2.append(name)

    logger.debug(
        "Diff: %d creates, %d updates, %d deletions",
        len(changes.creates),
        len(changes.updates),
        len(changes.deletions),
    )
    return changes
