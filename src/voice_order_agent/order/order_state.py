"""
In-progress order state.

Holds the user's order lines and the single merge rule shared by manual
selection and voice reconciliation.
"""

from __future__ import annotations

import threading
from enum import Enum

from voice_order_agent.order.schemas import NO_QUANTITY, OrderItem, QuantityLabel, normalize_quantity


class OrderChange(str, Enum):
    """Effect of applying a quantity to one catalog item."""

    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    UNCHANGED = "unchanged"

    @property
    def is_change(self) -> bool:
        return self is not OrderChange.UNCHANGED


class OrderState:
    """
    Thread-safe set of order lines keyed by catalog id.

    All mutation goes through apply_quantity(); there is no other writer, so a
    manual tap racing a voice reconciliation cannot lose an update or create a
    duplicate line.
    """

    def __init__(self, items: list[OrderItem] | None = None) -> None:
        self._lock = threading.Lock()
        # dict preserves insertion order, which is the order lines were added.
        self._items: dict[int, QuantityLabel] = {}
        for item in items or []:
            self._items[item.catalog_id] = item.quantity

    def apply_quantity(
        self,
        catalog_id: int,
        quantity: QuantityLabel | str | None,
    ) -> OrderChange:
        """
        Merge one (catalog id, quantity) pair into the order.

        Adds the line if absent, replaces the quantity if it differs, and
        removes the line entirely when the quantity is the empty sentinel.

        Args:
            catalog_id: Catalog identifier of the vegetable.
            quantity: New quantity, or "" / None to remove.

        Returns:
            What the merge did.

        Raises:
            ValueError: If the quantity is outside the closed enumeration.
        """
        new_quantity = normalize_quantity(quantity)

        with self._lock:
            current = self._items.get(catalog_id)
            if new_quantity is None:
                if current is None:
                    return OrderChange.UNCHANGED
                del self._items[catalog_id]
                return OrderChange.REMOVED
            if current is None:
                self._items[catalog_id] = new_quantity
                return OrderChange.ADDED
            if current == new_quantity:
                return OrderChange.UNCHANGED
            self._items[catalog_id] = new_quantity
            return OrderChange.UPDATED

    def get_quantity(self, catalog_id: int) -> str:
        """Current quantity label for an item, or "" if it is not ordered."""
        with self._lock:
            current = self._items.get(catalog_id)
        return current.value if current is not None else NO_QUANTITY

    @property
    def items(self) -> list[OrderItem]:
        """Snapshot of the order lines in the order they were added."""
        with self._lock:
            return [OrderItem(catalog_id=cid, quantity=qty) for cid, qty in self._items.items()]

    def as_dict(self) -> dict[int, str]:
        with self._lock:
            return {cid: qty.value for cid, qty in self._items.items()}

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
