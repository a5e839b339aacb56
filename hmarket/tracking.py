"""
Per-order tracking history: what happened and when, for customer-facing views.
Entries are only ever appended; nothing here edits or removes one.
"""
from hmarket.models import Order, TrackingEntry
from hmarket.store import OrderStore


class TrackingLog:
    def __init__(self, store: OrderStore):
        self._store = store

    def add(self, order: Order, entry: TrackingEntry) -> TrackingEntry:
        """
        Append entry to an order being written. Timestamps never go backwards:
        an entry older than the last one takes the last one's timestamp.
        """
        history = order.delivery.tracking_history
        if history and entry.timestamp < history[-1].timestamp:
            entry = entry.model_copy(update={"timestamp": history[-1].timestamp})
        history.append(entry)
        return entry

    async def append(self, order_id: str, entry: TrackingEntry) -> TrackingEntry:
        """Standalone append (a note without a status change). Persists immediately."""
        order = await self._store.get_by_id(order_id)
        added = self.add(order, entry)
        await self._store.save(order)
        return added

    async def list(self, order_id: str) -> list[TrackingEntry]:
        order = await self._store.get_by_id(order_id)
        return sorted(order.delivery.tracking_history, key=lambda e: e.timestamp)
