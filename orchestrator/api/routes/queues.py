"""
Operator queue routes: inspect, pause / resume, retry / remove, clean.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, status

from orchestrator.api.auth import CurrentOperator
from orchestrator.api.dependencies import Registry
from orchestrator.broker.base import ItemState, QueueCounts
from orchestrator.constants import API_V1_PREFIX, RECENT_ITEMS_DEFAULT, RECENT_ITEMS_MAX, QueueName
from orchestrator.types.api import (
    ActionResponse,
    CleanRequest,
    CleanResponse,
    FleetResponse,
    QueueCountsResponse,
    QueueDetailResponse,
    QueueItemResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/queues", tags=["Queues"])


def _counts(counts: QueueCounts) -> QueueCountsResponse:
    return QueueCountsResponse(**counts.to_dict())


@router.get(
    "",
    response_model=FleetResponse,
    summary="Queue overview",
    description="Per-queue item counts and totals across every queue.",
)
async def list_queues(operator: CurrentOperator, registry: Registry) -> FleetResponse:
    per_queue, totals = await registry.get_fleet_counts()
    return FleetResponse(
        queues={name: _counts(counts) for name, counts in per_queue.items()},
        totals=_counts(totals),
    )


@router.post(
    "/clean",
    response_model=CleanResponse,
    summary="Clean settled items",
    description="Remove completed and failed items past their grace period from every queue.",
)
async def clean_queues(
    operator: CurrentOperator,
    registry: Registry,
    request: CleanRequest | None = None,
) -> CleanResponse:
    request = request or CleanRequest()
    result = await registry.clean_all_queues(
        completed_grace_ms=request.completed_grace_ms,
        failed_grace_ms=request.failed_grace_ms,
        limit=request.limit,
    )
    logger.info(
        "Queues cleaned by operator",
        extra={"operator": operator.subject, "total_removed": result["total_removed"]},
    )
    return CleanResponse(**result)


@router.get(
    "/{queue}",
    response_model=QueueDetailResponse,
    summary="Queue detail",
    description="Counts, paused flag and the most recent items of one queue.",
)
async def get_queue(
    queue: QueueName,
    operator: CurrentOperator,
    registry: Registry,
    state: ItemState | None = Query(default=None, alias="status", description="Only list items in this state"),
    limit: int = Query(default=RECENT_ITEMS_DEFAULT, ge=1, le=RECENT_ITEMS_MAX),
) -> QueueDetailResponse:
    counts = await registry.get_queue_counts(queue)
    states = [state] if state else [ItemState.WAITING, ItemState.ACTIVE, ItemState.FAILED]
    items = {}
    for listed_state in states:
        listed = await registry.list_items(queue, listed_state, limit)
        items[listed_state.value] = [QueueItemResponse(**item.to_summary()) for item in listed]

    return QueueDetailResponse(
        name=queue.value,
        counts=_counts(counts),
        paused=counts.paused,
        items=items,
    )


@router.post(
    "/{queue}/pause",
    response_model=ActionResponse,
    summary="Pause a queue",
)
async def pause_queue(queue: QueueName, operator: CurrentOperator, registry: Registry) -> ActionResponse:
    await registry.pause_queue(queue)
    logger.warning("Queue paused by operator", extra={"operator": operator.subject, "queue": queue.value})
    return ActionResponse(message=f"Queue {queue.value} paused")


@router.post(
    "/{queue}/resume",
    response_model=ActionResponse,
    summary="Resume a queue",
)
async def resume_queue(queue: QueueName, operator: CurrentOperator, registry: Registry) -> ActionResponse:
    await registry.resume_queue(queue)
    logger.info("Queue resumed by operator", extra={"operator": operator.subject, "queue": queue.value})
    return ActionResponse(message=f"Queue {queue.value} resumed")


@router.post(
    "/{queue}/items/{item_id}/retry",
    response_model=ActionResponse,
    summary="Retry a failed item",
)
async def retry_item(
    queue: QueueName,
    item_id: str,
    operator: CurrentOperator,
    registry: Registry,
) -> ActionResponse:
    """
    Send a failed item back to waiting with its attempts reset.

    Raises:
        HTTPException: 404 if the item does not exist, 409 if it is not failed.
    """
    if not await registry.retry_item(queue, item_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return ActionResponse(message=f"Item {queue.value}:{item_id} queued for retry")


@router.delete(
    "/{queue}/items/{item_id}",
    response_model=ActionResponse,
    summary="Remove an item",
)
async def remove_item(
    queue: QueueName,
    item_id: str,
    operator: CurrentOperator,
    registry: Registry,
) -> ActionResponse:
    """
    Delete an item that is not active.

    Raises:
        HTTPException: 404 if the item does not exist, 409 if it is active.
    """
    if not await registry.remove_item(queue, item_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return ActionResponse(message=f"Item {queue.value}:{item_id} removed")
