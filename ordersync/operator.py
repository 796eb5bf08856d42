"""
Operator actions on mirrored orders.

These are the writes made from the warehouse view, outside the sync path:
acknowledging a highlighted order and pushing a status change back to
WooCommerce.
"""
from typing import Any, Dict, Optional

from ordersync.events import EventBus, SyncEvent
from ordersync.exceptions import ValidationError
from ordersync.models import LocalStatus, StatusUpdate
from ordersync.observability import get_logger
from ordersync.reconciler import map_local_status

logger = get_logger(__name__)

VALID_STATUSES = {status.value for status in LocalStatus}


class OperatorActions:
    """
    Usage:
        actions = OperatorActions(store, client, events)
        await actions.mark_interacted(501)
        await actions.push_status(501, "shipped", reason="Handed to courier")
    """

    def __init__(self, store, client, events: Optional[EventBus] = None):
        self.store = store
        self.client = client
        self.events = events

    async def mark_interacted(self, external_id: int) -> bool:
        """Clear the highlight once an operator has opened or handled the order."""
        cleared = await self.store.clear_highlight(external_id)
        if cleared:
            logger.info(f"Highlight cleared by operator for order {external_id}")
        return cleared

    async def push_status(
        self,
        external_id: int,
        status: str,
        reason: Optional[str] = None,
        tracking_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Set a local status and push the matching status to WooCommerce.

        The local write happens first so the warehouse view reflects the
        operator's decision even if the remote update fails; the remote
        error is raised to the caller. The remote_status shadow is only
        refreshed from the status WooCommerce returns.

        Raises:
            ValidationError: unknown status or unknown order
            UpstreamError: the remote update failed
        """
        if status not in VALID_STATUSES:
            raise ValidationError("status", f"must be one of {sorted(VALID_STATUSES)}", status)

        order = await self.store.get_by_external_id(external_id)
        if order is None:
            raise ValidationError("external_id", "order not found", external_id)

        # remote_status stays at the last observed value until WooCommerce confirms
        remote_status = map_local_status(status)
        await self.store.update_status(StatusUpdate(
            external_id=external_id,
            status=status,
            remote_status=None,
            tracking_number=tracking_number,
        ))
        await self.store.clear_highlight(external_id)

        payload: Dict[str, Any] = {"status": remote_status}
        if tracking_number:
            payload["meta_data"] = [{"key": "_tracking_number", "value": tracking_number}]
        remote = await self.client.update_order(external_id, payload)
        if isinstance(remote, dict) and remote.get("status"):
            await self.store.touch(external_id, str(remote["status"]))

        if reason:
            await self.client.add_order_note(external_id, f"Status set to {status}: {reason}")

        logger.info(
            f"Order {external_id} status {order.status} -> {status} pushed as {remote_status}",
            extra={"external_id": external_id}
        )
        if self.events is not None:
            await self.events.emit(
                SyncEvent.ORDERS_STATUS_CHANGED,
                {"count": 1, "external_ids": [external_id], "by": "operator"},
                source="operator",
            )
        return remote
