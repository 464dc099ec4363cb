"""Orphan tracking through the membership of a dedicated group."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from idm.provision.engine.plan import OperationResult, OpKind, OpStatus
from idm.provision.remote.client import IdmAdminClient
from idm.provision.state.models import EntityKind

logger = logging.getLogger(__name__)


class OrphanTracker:
    """Keeps the tracking group membership in step with applied operations.

    Membership changes are collected while the plan runs and written with a
    single membership replace in ``flush``.
    """

    def __init__(self, group_name: str, tracked: set[str], exists: bool):
        self.group_name = group_name
        self._initial = set(tracked)
        self._members = set(tracked)
        self._exists = exists

    @property
    def members(self) -> set[str]:
        return set(self._members)

    @property
    def dirty(self) -> bool:
        return self._members != self._initial

    def adopt(self, names: Iterable[str]) -> None:
        """Track declared entities that already exist.

        Covers entities created by an earlier run whose tracking write was
        lost. Membership is only ever removed by deleting the entity.
        """
        self._members.update(names)

    def record(self, result: OperationResult) -> None:
        """Account for the outcome of one operation."""
        op = result.operation
        if result.status is not OpStatus.APPLIED or not op.entity.trackable:
            return
        if op.kind is OpKind.CREATE:
            self._members.add(op.name)
        elif op.kind is OpKind.DELETE:
            self._members.discard(op.name)

    async def flush(self, client: IdmAdminClient) -> bool:
        """Write the membership if it changed.

        Returns whether a write happened.
        """
        if not self.dirty:
            return False

        members = sorted(self._members)
        if not self._exists:
            logger.info("Creating tracking group %s", self.group_name)
            attrs = {"name": [self.group_name]}
            if members:
                attrs["member"] = members
            await client.create_entity(EntityKind.GROUP, attrs)
            self._exists = True
        else:
            await client.set_attr(EntityKind.GROUP, self.group_name, "member", members)

        logger.info("Tracking group %s now has %d members", self.group_name, len(members))
        self._initial = set(self._members)
        return True
