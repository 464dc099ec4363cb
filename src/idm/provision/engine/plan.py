"""Operations, plans and results.

A plan is an ordered list of operations. Each operation is a single atomic
remote call. ``requires`` lists operations that must have succeeded before an
operation may run; ``after`` lists operations that must merely have finished
(used to keep all writes to one entity sequential).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from idm.provision.state.models import EntityKind


class OpKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    SET_ATTR = "set_attr"
    PATCH_OAUTH2 = "patch_oauth2"
    SET_SCOPE_MAP = "set_scope_map"
    DELETE_SCOPE_MAP = "delete_scope_map"
    SET_SUP_SCOPE_MAP = "set_sup_scope_map"
    DELETE_SUP_SCOPE_MAP = "delete_sup_scope_map"
    SET_CLAIM_MAP = "set_claim_map"
    DELETE_CLAIM_MAP = "delete_claim_map"
    SET_CLAIM_JOIN = "set_claim_join"
    SET_BASIC_SECRET = "set_basic_secret"
    UPLOAD_IMAGE = "upload_image"
    DETACH = "detach"


# Written on every run that specifies them, never diffed.
WRITE_ONLY_KINDS = frozenset({OpKind.SET_BASIC_SECRET, OpKind.UPLOAD_IMAGE})


@dataclass(frozen=True)
class Reference:
    """An entity that must exist before an operation can be applied."""

    name: str
    kinds: frozenset[EntityKind]
    role: str  # "member", "scope map", ...


@dataclass
class Operation:
    """A single remote write.

    Attributes:
        kind:    What the operation does.
        entity:  Kind of the entity being written.
        name:    Name of the entity being written.
        attr:    Attribute for SET_ATTR/PATCH_OAUTH2, referencing attribute for DETACH.
        key:     Scope-map group, claim name, or the detached entity.
        subkey:  Claim-map group.
        values:  Values written.
        attrs:   Payload of CREATE.
        public:  Client type of an OAuth2 CREATE.
        path:    Source file of write-only attachments.
        needs:   Entities that must exist when this operation runs.
        recreate: CREATE/DELETE pair replacing a resource server of the wrong type.
    """

    kind: OpKind
    entity: EntityKind
    name: str
    attr: str | None = None
    key: str | None = None
    subkey: str | None = None
    values: tuple[str, ...] = ()
    attrs: dict[str, list[str]] = field(default_factory=dict)
    public: bool = False
    path: Path | None = None
    needs: tuple[Reference, ...] = ()
    recreate: bool = False

    # Assigned by the orderer
    op_id: int = -1
    requires: set[int] = field(default_factory=set)
    after: set[int] = field(default_factory=set)

    @property
    def write_only(self) -> bool:
        return self.kind in WRITE_ONLY_KINDS

    @property
    def target(self) -> tuple[EntityKind, str]:
        return self.entity, self.name

    def describe(self) -> str:
        """Human-readable one-line description."""
        entity = f"{self.entity.value} {self.name}"
        values = ", ".join(self.values)
        kind = self.kind

        if kind is OpKind.CREATE:
            members = self.attrs.get("member")
            if members:
                return f"create {entity} (members: {', '.join(members)})"
            return f"create {entity}"
        if kind is OpKind.DELETE:
            return f"delete {entity}"
        if kind in (OpKind.SET_ATTR, OpKind.PATCH_OAUTH2):
            return f"set {entity} {self.attr}: [{values}]"
        if kind is OpKind.SET_SCOPE_MAP:
            return f"set {entity} scope map {self.key}: [{values}]"
        if kind is OpKind.DELETE_SCOPE_MAP:
            return f"delete {entity} scope map {self.key}"
        if kind is OpKind.SET_SUP_SCOPE_MAP:
            return f"set {entity} supplementary scope map {self.key}: [{values}]"
        if kind is OpKind.DELETE_SUP_SCOPE_MAP:
            return f"delete {entity} supplementary scope map {self.key}"
        if kind is OpKind.SET_CLAIM_MAP:
            return f"set {entity} claim map {self.key}/{self.subkey}: [{values}]"
        if kind is OpKind.DELETE_CLAIM_MAP:
            return f"delete {entity} claim map {self.key}/{self.subkey}"
        if kind is OpKind.SET_CLAIM_JOIN:
            return f"set {entity} claim map {self.key} join: {values}"
        if kind is OpKind.SET_BASIC_SECRET:
            return f"upload {entity} basic secret"
        if kind is OpKind.UPLOAD_IMAGE:
            return f"upload {entity} image"
        if kind is OpKind.DETACH:
            if self.attr == "claim_map":
                return f"detach {self.subkey} from {entity} claim map {self.key}"
            if self.attr == "member":
                return f"detach {self.key} from {entity} membership"
            return f"detach {self.key} from {entity} {self.attr.replace('_', ' ')}"
        return f"{kind.value} {entity}"


@dataclass
class SyncPlan:
    """Ordered plan of operations to converge the directory."""

    operations: list[Operation] = field(default_factory=list)

    # Entities the plan would delete, kept because auto-removal is disabled
    orphans_kept: list[tuple[EntityKind, str]] = field(default_factory=list)

    # Resource servers absent from the document that this tool does not manage
    unmanaged_oauth2: list[str] = field(default_factory=list)

    # Existing declared entities added to the tracking group by this run
    adopted: list[tuple[EntityKind, str]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        """Check if there are any diffed changes to apply."""
        return bool(self.adopted) or any(not op.write_only for op in self.operations)

    def describe(self) -> list[str]:
        return [op.describe() for op in self.operations]

    def summary(self) -> str:
        """Get a human-readable summary of the plan."""
        lines = []

        symbols = {OpKind.CREATE: "+", OpKind.DELETE: "-", OpKind.DETACH: "-"}
        if self.operations:
            lines.append(f"Operations: {len(self.operations)}")
            for op in self.operations:
                lines.append(f"  {symbols.get(op.kind, '~')} {op.describe()}")

        if self.adopted:
            lines.append(f"Adopting into tracking group: {len(self.adopted)}")
            for kind, name in self.adopted:
                lines.append(f"  * {kind.value} {name}")

        if self.orphans_kept:
            lines.append(
                f"Orphans (kept because of --no-auto-remove): {len(self.orphans_kept)}"
            )
            for kind, name in self.orphans_kept:
                lines.append(f"  ? {kind.value} {name}")

        if self.unmanaged_oauth2:
            lines.append(f"Unmanaged oauth2 resource servers: {len(self.unmanaged_oauth2)}")
            for name in self.unmanaged_oauth2:
                lines.append(f"  ? {name}")

        if not self.has_changes:
            lines.append("No changes needed - directory is in sync")

        return "\n".join(lines)


class OpStatus(str, Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class OperationResult:
    operation: Operation
    status: OpStatus
    error: str | None = None
    duration_ms: float = 0.0


@dataclass
class SyncResult:
    """Result of applying a sync plan."""

    results: list[OperationResult] = field(default_factory=list)
    tracked: set[str] = field(default_factory=set)
    tracking_updated: bool = False
    errors: list[str] = field(default_factory=list)

    def _with_status(self, status: OpStatus) -> list[OperationResult]:
        return [r for r in self.results if r.status is status]

    @property
    def applied(self) -> list[OperationResult]:
        return self._with_status(OpStatus.APPLIED)

    @property
    def failed(self) -> list[OperationResult]:
        return self._with_status(OpStatus.FAILED)

    @property
    def skipped(self) -> list[OperationResult]:
        return self._with_status(OpStatus.SKIPPED)

    @property
    def success(self) -> bool:
        """Check if the run fully converged."""
        return not self.errors and not self.failed and not self.skipped

    def summary(self) -> str:
        """Get a human-readable summary of the result."""
        lines = []

        if self.applied:
            lines.append(f"Applied {len(self.applied)} operations")
        if self.tracking_updated:
            lines.append(f"Tracking group now has {len(self.tracked)} members")

        if self.failed:
            lines.append(f"Failed: {len(self.failed)}")
            for r in self.failed:
                lines.append(f"  ! {r.operation.describe()}: {r.error}")

        if self.skipped:
            lines.append(f"Skipped (prerequisite failed): {len(self.skipped)}")
            for r in self.skipped:
                lines.append(f"  ? {r.operation.describe()}")

        if self.errors:
            lines.append(f"Errors: {len(self.errors)}")
            for err in self.errors:
                lines.append(f"  ! {err}")

        if not lines:
            lines.append("No changes applied")

        return "\n".join(lines)
