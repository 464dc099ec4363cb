"""Apply an ordered plan.

Operations run as soon as every operation they depend on has finished, up to
``max_workers`` at a time. An operation whose prerequisite did not apply is
skipped, and so is everything that depends on it. Failures of independent
operations do not stop the run; a ``FatalError`` aborts it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from idm.provision.engine.plan import (
    OperationResult,
    Operation,
    OpKind,
    OpStatus,
    SyncPlan,
    SyncResult,
)
from idm.provision.engine.tracking import OrphanTracker
from idm.provision.errors import ApiError, FatalError
from idm.provision.remote.client import IdmAdminClient
from idm.provision.state.models import EntityKind

if TYPE_CHECKING:
    from idm.provision.audit.logger import AuditLogger

logger = logging.getLogger(__name__)


async def apply_operation(client: IdmAdminClient, op: Operation) -> None:
    """Issue the remote call for a single operation."""
    kind = op.kind

    if kind is OpKind.CREATE:
        await client.create_entity(op.entity, op.attrs, public=op.public)
    elif kind is OpKind.DELETE:
        await client.delete_entity(op.entity, op.name)
    elif kind is OpKind.SET_ATTR:
        await client.set_attr(op.entity, op.name, op.attr, list(op.values))
    elif kind is OpKind.PATCH_OAUTH2:
        await client.patch_oauth2(op.name, {op.attr: list(op.values)})
    elif kind in (OpKind.SET_SCOPE_MAP, OpKind.SET_SUP_SCOPE_MAP):
        await client.set_scope_map(
            op.name,
            op.key,
            list(op.values),
            supplementary=kind is OpKind.SET_SUP_SCOPE_MAP,
        )
    elif kind in (OpKind.DELETE_SCOPE_MAP, OpKind.DELETE_SUP_SCOPE_MAP):
        await client.delete_scope_map(
            op.name, op.key, supplementary=kind is OpKind.DELETE_SUP_SCOPE_MAP
        )
    elif kind is OpKind.SET_CLAIM_MAP:
        await client.set_claim_map(op.name, op.key, op.subkey, list(op.values))
    elif kind is OpKind.DELETE_CLAIM_MAP:
        await client.delete_claim_map(op.name, op.key, op.subkey)
    elif kind is OpKind.SET_CLAIM_JOIN:
        await client.set_claim_map_join(op.name, op.key, op.values[0])
    elif kind is OpKind.SET_BASIC_SECRET:
        await client.set_basic_secret(op.name, op.path)
    elif kind is OpKind.UPLOAD_IMAGE:
        await client.upload_image(op.name, op.path)
    elif kind is OpKind.DETACH:
        await _detach(client, op)
    else:
        raise ValueError(f"Unsupported operation: {kind}")


async def _detach(client: IdmAdminClient, op: Operation) -> None:
    if op.attr == "member":
        await client.remove_attr_values(EntityKind.GROUP, op.name, "member", [op.key])
    elif op.attr == "claim_map":
        await client.delete_claim_map(op.name, op.key, op.subkey)
    else:
        await client.delete_scope_map(
            op.name, op.key, supplementary=op.attr == "supplementary_scope_map"
        )


async def apply_plan(
    client: IdmAdminClient,
    plan: SyncPlan,
    *,
    max_workers: int = 4,
    tracker: OrphanTracker | None = None,
    audit: AuditLogger | None = None,
) -> SyncResult:
    """Apply ``plan`` and collect one result per operation.

    Raises FatalError if an operation fails fatally. Operations already
    running are cancelled; the tracker keeps what was recorded so far.
    """
    result = SyncResult()
    if not plan.operations:
        return result

    semaphore = asyncio.Semaphore(max_workers)
    done = {op.op_id: asyncio.Event() for op in plan.operations}
    outcomes: dict[int, OperationResult] = {}

    def finish(op_result: OperationResult) -> None:
        outcomes[op_result.operation.op_id] = op_result
        if tracker is not None:
            tracker.record(op_result)
        if audit is not None:
            audit.log_operation(op_result)
        done[op_result.operation.op_id].set()

    async def run(op: Operation) -> None:
        for dep in sorted(op.requires | op.after):
            await done[dep].wait()

        failed = sorted(
            dep for dep in op.requires if outcomes[dep].status is not OpStatus.APPLIED
        )
        if failed:
            reason = f"prerequisite operation {failed[0]} did not apply"
            logger.warning("Skipping %s: %s", op.describe(), reason)
            finish(OperationResult(op, OpStatus.SKIPPED, error=reason))
            return

        async with semaphore:
            start = time.perf_counter()
            try:
                await apply_operation(client, op)
            except FatalError:
                raise
            except ApiError as e:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.error("Failed to %s: %s", op.describe(), e)
                finish(OperationResult(op, OpStatus.FAILED, str(e), duration_ms))
                return
            duration_ms = (time.perf_counter() - start) * 1000

        logger.info("Applied: %s", op.describe())
        finish(OperationResult(op, OpStatus.APPLIED, duration_ms=duration_ms))

    tasks = [asyncio.create_task(run(op)) for op in plan.operations]
    try:
        await asyncio.gather(*tasks)
    except FatalError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    result.results = [outcomes[op.op_id] for op in plan.operations]
    return result
