"""
Order Status Aggregator

Pure mapping from an order's item statuses to the coarse status shown to
the customer. The checks run in a fixed precedence:

    cancelled > rejected > all-served > any-advanced > received

so an order with some SERVED and some REJECTED items reads REJECTED.

Batch clustering groups an order's items into "checkout clicks" by
creation time. There is no batch id on the wire, so items created within
one second of a group's anchor are assumed to belong together.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from tableside.models import DisplayOrder, OrderBatch
from tableside.schemas import (
    ADVANCED_ITEM_STATUSES,
    DisplayStatus,
    ItemStatus,
    Order,
    OrderItem,
    OrderStatus,
    TimelineStep,
)

BATCH_WINDOW = timedelta(seconds=1)
DEFAULT_REJECTION_REASON = "Not available"

__all__ = [
    "BATCH_WINDOW",
    "DisplayOrder",
    "aggregate_order",
    "aggregate_items",
    "rejection_summary",
    "group_into_batches",
]


def rejection_summary(items: Iterable[OrderItem]) -> Optional[str]:
    """'<name>: <reason>' for every rejected item, joined by '; '."""
    parts = [
        f"{item.name}: {item.rejection_reason or DEFAULT_REJECTION_REASON}"
        for item in items
        if item.status == ItemStatus.REJECTED
    ]
    return "; ".join(parts) if parts else None


def aggregate_items(
    items: Sequence[OrderItem],
    order_status: Optional[OrderStatus] = None,
) -> DisplayOrder:
    """
    Derive the display status of a list of items.

    Args:
        items: Items of an order (or of one batch)
        order_status: Order-level status, if the server sent one

    Returns:
        DisplayOrder: status, timeline step and rejection reason
    """
    if order_status == OrderStatus.CANCELLED:
        return DisplayOrder(status=DisplayStatus.CANCELLED)

    reason = rejection_summary(items)
    if reason is not None:
        return DisplayOrder(status=DisplayStatus.REJECTED, rejection_reason=reason)

    # Individually cancelled items no longer take part in the progression
    live = [item for item in items if item.status != ItemStatus.CANCELLED]
    if items and not live:
        return DisplayOrder(status=DisplayStatus.CANCELLED)

    if live and all(item.status == ItemStatus.SERVED for item in live):
        if order_status == OrderStatus.COMPLETED:
            return DisplayOrder(
                status=DisplayStatus.COMPLETED, current_step=TimelineStep.READY
            )
        return DisplayOrder(status=DisplayStatus.READY, current_step=TimelineStep.READY)

    if any(item.status in ADVANCED_ITEM_STATUSES for item in live):
        return DisplayOrder(
            status=DisplayStatus.PREPARING, current_step=TimelineStep.PREPARING
        )

    return DisplayOrder(status=DisplayStatus.RECEIVED, current_step=TimelineStep.RECEIVED)


def aggregate_order(order: Order) -> DisplayOrder:
    """Display status of a whole order."""
    return aggregate_items(order.items, order.status)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def group_into_batches(
    items: Sequence[OrderItem],
    window: timedelta = BATCH_WINDOW,
) -> list[OrderBatch]:
    """
    Cluster items into checkout batches, newest batch first.

    Items are sorted newest-first; an item joins the most recent group
    when it lies within `window` of that group's anchor (the group's first,
    newest item), otherwise it opens a new group.
    """
    ordered = sorted(items, key=lambda item: _as_utc(item.created_at), reverse=True)

    groups: list[tuple[datetime, list[OrderItem]]] = []
    for item in ordered:
        created = _as_utc(item.created_at)
        if groups and abs(groups[-1][0] - created) < window:
            groups[-1][1].append(item)
        else:
            groups.append((created, [item]))

    return [
        OrderBatch(anchor=anchor, items=tuple(members), display=aggregate_items(members))
        for anchor, members in groups
    ]
