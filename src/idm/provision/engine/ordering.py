"""Order diffed changes into an executable plan.

Existence and attributes are handled as two separate graphs. Only existence
is ordered topologically: an entity must exist before anything references it.
Membership and scope-map content may be mutually referential, so group
creates that sit on a membership cycle are created bare and get their members
in a separate write once every group on the cycle exists.

Plan layout:
    1. deletes of resource servers being recreated with another client type
    2. creates, referenced entities first
    3. deferred membership writes
    4. attribute updates
    5. detaches retracting references to entities about to be deleted
    6. deletes, referencing entities first
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable

from idm.provision.engine.diff import GROUP_KIND, MEMBER_KINDS, Changes
from idm.provision.engine.plan import OpKind, Operation, Reference, SyncPlan
from idm.provision.errors import PlanError
from idm.provision.remote.reader import CurrentState
from idm.provision.state.models import DesiredState, EntityKind

logger = logging.getLogger(__name__)

Key = tuple[EntityKind, str]

_DELETE_RANK = {EntityKind.OAUTH2: 0, EntityKind.GROUP: 1, EntityKind.PERSON: 2}


def _kahn(
    nodes: Iterable[Key],
    edges: dict[Key, set[Key]],
    sort_key: Callable[[Key], Hashable],
) -> tuple[list[Key], list[Key]]:
    """Topologically sort ``nodes``; ``edges[n]`` must come before ``n``.

    Returns (ordered, stuck) where ``stuck`` are nodes on or behind a cycle.
    """
    pending = {n: set(edges.get(n, ())) for n in nodes}
    ordered: list[Key] = []
    while True:
        ready = sorted((n for n, deps in pending.items() if not deps), key=sort_key)
        if not ready:
            break
        node = ready[0]
        ordered.append(node)
        del pending[node]
        for deps in pending.values():
            deps.discard(node)
    return ordered, sorted(pending, key=sort_key)


def _by_rank(key: Key) -> tuple[int, str]:
    return key[0].rank, key[1]


class _Orderer:
    def __init__(self, changes: Changes, desired: DesiredState, current: CurrentState):
        self.changes = changes
        self.desired = desired
        self.current = current
        self.created: dict[Key, Operation] = {op.target: op for op in changes.creates}
        self.deleting: set[Key] = set(changes.deletions)
        self.requires: dict[int, list[Operation]] = {}

    def require(self, op: Operation, *prerequisites: Operation | None) -> None:
        deps = self.requires.setdefault(id(op), [])
        deps.extend(p for p in prerequisites if p is not None and p is not op)

    # -------------------------------------------------------------------------
    # References
    # -------------------------------------------------------------------------

    def resolve(self, ref: Reference, referrer: str) -> Operation | None:
        """Check that ``ref`` exists by apply time.

        Returns the create operation if the entity is created in this run.
        """
        for kind in ref.kinds:
            if (kind, ref.name) in self.created:
                return self.created[(kind, ref.name)]

        # An existing entity stays even if declared absent
        for kind in ref.kinds:
            if self.current.exists(kind, ref.name):
                if (kind, ref.name) in self.deleting:
                    raise PlanError(
                        f"{referrer} references {ref.role} '{ref.name}' "
                        f"which is scheduled for deletion"
                    )
                return None

        declared = self.desired.kind_of(ref.name)
        if declared is not None and not self.desired.is_present(ref.name):
            raise PlanError(
                f"{referrer} references {ref.role} '{ref.name}' "
                f"which is declared absent (present: false)"
            )

        actual = declared or self.current.kind_of(ref.name)
        if actual is not None and actual not in ref.kinds:
            expected = " or ".join(sorted(k.value for k in ref.kinds))
            raise PlanError(
                f"{referrer} references {ref.role} '{ref.name}' which is a "
                f"{actual.value}, expected {expected}"
            )

        raise PlanError(f"{referrer} references unknown {ref.role} '{ref.name}'")

    def check_document_references(self) -> None:
        """Every reference in the document must exist by apply time.

        Checked on the document rather than on the operations so that an
        unchanged membership pointing at a doomed entity is caught too.
        """
        for name, group in sorted(self.desired.groups.items()):
            if group.present:
                for member in group.members:
                    self.resolve(Reference(member, MEMBER_KINDS, "member"), f"group '{name}'")

        for name, rs in sorted(self.desired.systems.oauth2.items()):
            if not rs.present:
                continue
            referrer = f"oauth2 '{name}'"
            for role, maps in (
                ("scope map", rs.scope_maps),
                ("supplementary scope map", rs.supplementary_scope_maps),
            ):
                for group, scopes in maps.items():
                    if scopes:
                        self.resolve(Reference(group, GROUP_KIND, role), referrer)
            for claim_map in rs.claim_maps.values():
                for group, values in claim_map.values_by_group.items():
                    if values:
                        self.resolve(Reference(group, GROUP_KIND, "claim map"), referrer)

    def link_needs(self, op: Operation) -> None:
        self.require(op, self.created.get(op.target))
        for ref in op.needs:
            self.require(op, self.resolve(ref, op.describe()))

    # -------------------------------------------------------------------------
    # Creates
    # -------------------------------------------------------------------------

    def order_creates(self) -> tuple[list[Operation], list[Operation]]:
        """Order creates so that embedded members exist first.

        Returns (creates, deferred membership writes).
        """
        edges: dict[Key, set[Key]] = {}
        for key, op in self.created.items():
            edges[key] = {
                dep.target
                for ref in op.needs
                if (dep := self.resolve(ref, op.describe())) is not None
            }

        ordered, stuck = _kahn(self.created, edges, _by_rank)

        deferred = []
        for key in stuck:
            op = self.created[key]
            members = op.attrs.pop("member", None)
            if members:
                logger.debug("Deferring members of %s (membership cycle)", op.describe())
                deferred.append(
                    Operation(
                        OpKind.SET_ATTR,
                        op.entity,
                        op.name,
                        attr="member",
                        values=tuple(members),
                        needs=op.needs,
                    )
                )
                op.needs = ()

        creates = [self.created[k] for k in ordered + stuck]
        for op in creates:
            self.link_needs(op)
        for op in self.changes.recreate_deletes:
            self.require(self.created[op.target], op)
        for op in deferred:
            self.link_needs(op)
        return creates, deferred

    # -------------------------------------------------------------------------
    # Deletes
    # -------------------------------------------------------------------------

    def _covering_update(self, target: Key, predicate: Callable[[Operation], bool]):
        for op in self.changes.updates:
            if op.target == target and predicate(op):
                return op
        return None

    def detach(self) -> tuple[list[Operation], dict[Key, list[Operation]]]:
        """Retract references to every entity about to be deleted.

        An update that already drops the reference stands in for the detach.
        Returns (detach operations, operations each delete depends on).
        """
        detaches: list[Operation] = []
        retractions: dict[Key, list[Operation]] = {key: [] for key in self.deleting}
        recreated = {op.name for op in self.changes.recreate_deletes}

        for kind, name in sorted(self.deleting, key=_by_rank):
            retract = retractions[(kind, name)]
            if kind is EntityKind.OAUTH2:
                continue

            for group_name in sorted(self.current.groups):
                group = self.current.groups[group_name]
                if group_name == name or name not in group.members:
                    continue
                covering = self._covering_update(
                    (EntityKind.GROUP, group_name),
                    lambda op: op.attr == "member" and name not in op.values,
                )
                if covering is None:
                    covering = Operation(
                        OpKind.DETACH, EntityKind.GROUP, group_name, attr="member", key=name
                    )
                    detaches.append(covering)
                retract.append(covering)

            if kind is not EntityKind.GROUP:
                continue

            for rs_name in sorted(self.current.oauth2):
                if rs_name in recreated:
                    continue
                rs = self.current.oauth2[rs_name]
                target = (EntityKind.OAUTH2, rs_name)
                for attr, live_map, delete_kind in (
                    ("scope_map", rs.scope_maps, OpKind.DELETE_SCOPE_MAP),
                    ("supplementary_scope_map", rs.supplementary_scope_maps, OpKind.DELETE_SUP_SCOPE_MAP),
                ):
                    if name not in live_map:
                        continue
                    covering = self._covering_update(
                        target, lambda op: op.kind is delete_kind and op.key == name
                    )
                    if covering is None:
                        covering = Operation(
                            OpKind.DETACH, EntityKind.OAUTH2, rs_name, attr=attr, key=name
                        )
                        detaches.append(covering)
                    retract.append(covering)

                for claim, group_name in sorted(rs.claim_pairs()):
                    if group_name != name:
                        continue
                    covering = self._covering_update(
                        target,
                        lambda op: op.kind is OpKind.DELETE_CLAIM_MAP
                        and op.key == claim
                        and op.subkey == name,
                    )
                    if covering is None:
                        covering = Operation(
                            OpKind.DETACH,
                            EntityKind.OAUTH2,
                            rs_name,
                            attr="claim_map",
                            key=claim,
                            subkey=name,
                        )
                        detaches.append(covering)
                    retract.append(covering)

        return detaches, retractions

    def order_deletes(self, retractions: dict[Key, list[Operation]]) -> list[Operation]:
        """Delete referencing entities before the entities they reference."""
        # edges[n]: deletion candidates referencing n, which go first
        edges: dict[Key, set[Key]] = {key: set() for key in self.deleting}
        for kind, name in self.deleting:
            if kind is not EntityKind.GROUP:
                continue
            for member in self.current.groups[name].members:
                for member_kind in MEMBER_KINDS:
                    key = (member_kind, member)
                    if key in edges and member != name:
                        edges[key].add((kind, name))

        def delete_rank(key: Key) -> tuple[int, str]:
            return _DELETE_RANK[key[0]], key[1]

        ordered, stuck = _kahn(self.deleting, edges, delete_rank)
        deletes = []
        for key in ordered + stuck:
            op = Operation(OpKind.DELETE, key[0], key[1])
            self.require(op, *retractions[key])
            deletes.append(op)
        return deletes

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def build(self) -> SyncPlan:
        self.check_document_references()

        creates, deferred = self.order_creates()

        updates = sorted(
            self.changes.updates,
            key=lambda op: (op.entity.rank, op.name),
        )
        for op in updates:
            self.link_needs(op)

        detaches, retractions = self.detach()
        deletes = self.order_deletes(retractions)

        operations = [
            *self.changes.recreate_deletes,
            *creates,
            *deferred,
            *updates,
            *detaches,
            *deletes,
        ]

        last_by_target: dict[Key, Operation] = {}
        for op_id, op in enumerate(operations):
            op.op_id = op_id
            previous = last_by_target.get(op.target)
            if previous is not None:
                op.after.add(previous.op_id)
            last_by_target[op.target] = op

        for op in operations:
            op.requires = {dep.op_id for dep in self.requires.get(id(op), [])}

        return SyncPlan(
            operations=operations,
            orphans_kept=list(self.changes.orphans_kept),
            unmanaged_oauth2=list(self.changes.unmanaged_oauth2),
            adopted=list(self.changes.adopted),
        )


def order_changes(
    changes: Changes, desired: DesiredState, current: CurrentState
) -> SyncPlan:
    """Turn unordered changes into an ordered, dependency-annotated plan.

    Raises PlanError if a reference cannot exist by apply time.
    """
    plan = _Orderer(changes, desired, current).build()
    logger.debug("Ordered plan with %d operations", len(plan.operations))
    return plan
