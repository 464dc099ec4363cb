"""Compute and apply a sync plan."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from idm.provision.engine.diff import diff_states
from idm.provision.engine.executor import apply_plan
from idm.provision.engine.ordering import order_changes
from idm.provision.engine.plan import SyncPlan, SyncResult
from idm.provision.engine.tracking import OrphanTracker
from idm.provision.errors import ApiError, FatalError
from idm.provision.remote.client import IdmAdminClient
from idm.provision.remote.reader import CurrentState
from idm.provision.state.models import DesiredState

if TYPE_CHECKING:
    from idm.provision.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


def compute_sync_plan(
    desired: DesiredState,
    current: CurrentState,
    *,
    tracking_group: str,
    auto_remove: bool = True,
    managed_oauth2_prefix: str | None = None,
) -> SyncPlan:
    """Compute the ordered plan converging ``current`` to ``desired``.

    Args:
        desired: Validated desired-state document
        current: Current state read from the directory
        tracking_group: Name of the group recording entities created by this tool
        auto_remove: If False, orphans are reported instead of deleted
        managed_oauth2_prefix: Resource servers with this prefix are eligible
            for orphan removal

    Raises:
        PlanError: If the desired state cannot be reached
    """
    changes = diff_states(
        desired,
        current,
        tracking_group=tracking_group,
        auto_remove=auto_remove,
        managed_oauth2_prefix=managed_oauth2_prefix,
    )
    return order_changes(changes, desired, current)


async def apply_sync_plan(
    client: IdmAdminClient,
    plan: SyncPlan,
    current: CurrentState,
    *,
    tracking_group: str,
    max_workers: int = 4,
    audit: AuditLogger | None = None,
) -> SyncResult:
    """Apply a sync plan, then write the tracking group membership.

    Raises:
        FatalError: If the run was aborted. The tracking group is still
            written, best effort, with the creates applied so far.
    """
    tracker = OrphanTracker(
        tracking_group, current.tracked, current.tracking_group_exists
    )
    tracker.adopt(name for _, name in plan.adopted)

    try:
        result = await apply_plan(
            client, plan, max_workers=max_workers, tracker=tracker, audit=audit
        )
    except FatalError:
        try:
            await tracker.flush(client)
        except ApiError as e:
            logger.error(
                "Failed to update tracking group %s after abort: %s", tracking_group, e
            )
        raise

    try:
        result.tracking_updated = await tracker.flush(client)
    except FatalError:
        raise
    except ApiError as e:
        logger.error("Failed to update tracking group %s: %s", tracking_group, e)
        result.errors.append(f"Failed to update tracking group {tracking_group}: {e}")
    result.tracked = tracker.members

    if audit is not None:
        audit.log_run(result)

    return result
