"""
Status reconciliation between the local mirror and WooCommerce.

The remote vocabulary is mapped through a fixed table. Unmapped values
pass through verbatim so an unknown status shows up instead of being
coerced into a familiar one.
"""
from typing import Dict, Iterable, List, Optional, Tuple

from ordersync.models import LocalOrder, LocalStatus, RemoteOrder, StatusUpdate
from ordersync.observability import get_logger

logger = get_logger(__name__)


REMOTE_TO_LOCAL_STATUS: Dict[str, str] = {
    "pending": LocalStatus.PENDING.value,
    "processing": LocalStatus.PROCESSING.value,
    "on-hold": LocalStatus.ON_HOLD.value,
    "shipped": LocalStatus.SHIPPED.value,
    "completed": LocalStatus.DELIVERED.value,
    "cancelled": LocalStatus.CANCELLED.value,
    "refunded": LocalStatus.REFUNDED.value,
}

LOCAL_TO_REMOTE_STATUS: Dict[str, str] = {
    LocalStatus.DELIVERED.value: "completed",
}


def map_remote_status(remote_status: Optional[str]) -> str:
    """Remote status to local taxonomy; unknown values pass through."""
    if not remote_status:
        return LocalStatus.PENDING.value
    return REMOTE_TO_LOCAL_STATUS.get(remote_status, remote_status)


def map_local_status(local_status: str) -> str:
    """Local status to the value WooCommerce expects."""
    return LOCAL_TO_REMOTE_STATUS.get(local_status, local_status)


def build_status_update(remote: RemoteOrder) -> StatusUpdate:
    status = map_remote_status(remote.status)
    update = StatusUpdate(
        external_id=remote.id,
        status=status,
        remote_status=remote.status,
    )
    if status == LocalStatus.SHIPPED.value:
        update.shipping_method = remote.shipping_method
        update.tracking_number = remote.tracking_number
        update.carrier_policy_id = remote.carrier_policy_id
    return update


class StatusReconciler:
    """Writes local status changes, and the remote status shadow, through the store."""

    def __init__(self, store, reporter=None):
        self.store = store
        self.reporter = reporter

    async def reconcile(self, local: LocalOrder, remote: RemoteOrder) -> bool:
        """
        Bring one local order in line with its remote snapshot.

        The shadow `remote_status` is refreshed either way. Returns True
        only when the mapped local status changed.
        """
        update = build_status_update(remote)
        update.external_id = local.external_id

        if update.status == local.status:
            await self.store.touch(local.external_id, remote.status)
            local.remote_status = remote.status
            return False

        logger.info(
            f"Order {local.external_id} status {local.status} -> {update.status}",
            extra={"external_id": local.external_id, "remote_status": remote.status}
        )
        await self.store.update_status(update)
        local.status = update.status
        local.remote_status = remote.status
        return True

    async def reconcile_many(
        self,
        pairs: Iterable[Tuple[LocalOrder, RemoteOrder]],
    ) -> List[int]:
        """
        Reconcile many orders with one bulk write.

        Returns the external ids whose local status changed.
        """
        pairs = list(pairs)
        updates: List[StatusUpdate] = []
        changed: List[int] = []

        for local, remote in pairs:
            update = build_status_update(remote)
            update.external_id = local.external_id
            updates.append(update)
            if update.status != local.status:
                changed.append(local.external_id)

        if updates:
            await self.store.bulk_update_status(updates)
            for (local, remote), update in zip(pairs, updates):
                local.status = update.status
                local.remote_status = remote.status
            logger.info(
                f"Reconciled {len(updates)} orders, {len(changed)} changed",
                extra={"changed": len(changed)}
            )
        return changed
