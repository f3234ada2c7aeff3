"""
Order quantity reconciler.

Merges parsed voice items into the shared order state using the same merge
rule as manual selection, and marks changed items as confirmed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from voice_order_agent.errors import UnresolvableVegetableName
from voice_order_agent.order.order_state import OrderChange, OrderState
from voice_order_agent.order.pulse import ConfirmationPulseScheduler
from voice_order_agent.order.schemas import (
    DEFAULT_QUANTITY,
    NO_QUANTITY,
    CatalogEntry,
    ParsedOrderItem,
    QuantityLabel,
    normalize_quantity,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciledItem:
    """One item that resolved to a catalog entry and was merged."""

    catalog_id: int
    quantity: str
    change: OrderChange
    spoken_name: str


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation pass."""

    applied: list[ReconciledItem] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    used_fallback: bool = False

    @property
    def changed_ids(self) -> list[int]:
        return [item.catalog_id for item in self.applied if item.change.is_change]


def resolve_vegetable_name(raw_name: str, catalog: Sequence[CatalogEntry]) -> CatalogEntry:
    """
    Resolve a spoken vegetable name to a catalog entry.

    Case-insensitive exact match on any language's name is tried first. Failing
    that, substring containment in either direction is accepted. In both passes
    the first entry in catalog order wins; there is no scoring.

    Raises:
        UnresolvableVegetableName: If nothing matches.
    """
    needle = (raw_name or "").strip().casefold()
    if not needle:
        raise UnresolvableVegetableName(raw_name)

    for entry in catalog:
        if any(name.strip().casefold() == needle for name in entry.all_names()):
            return entry

    for entry in catalog:
        for name in entry.all_names():
            candidate = name.strip().casefold()
            if candidate in needle or needle in candidate:
                return entry

    raise UnresolvableVegetableName(raw_name)


class OrderQuantityReconciler:
    """
    Applies quantity changes to the shared order.

    update_quantity() is the one entry point for both manual taps and voice
    results, so the two paths always agree on the resulting order.
    """

    def __init__(self, order: OrderState, pulses: ConfirmationPulseScheduler) -> None:
        self._order = order
        self._pulses = pulses

    @property
    def order(self) -> OrderState:
        return self._order

    @property
    def pulses(self) -> ConfirmationPulseScheduler:
        return self._pulses

    def update_quantity(self, catalog_id: int, quantity: QuantityLabel | str | None) -> OrderChange:
        """
        Merge a quantity into the order and pulse the item if it was set.

        Removals and no-ops never pulse.
        """
        new_quantity = normalize_quantity(quantity)
        change = self._order.apply_quantity(catalog_id, new_quantity)
        if change in (OrderChange.ADDED, OrderChange.UPDATED):
            self._pulses.pulse(catalog_id)
        if change.is_change:
            logger.info(
                "[ORDER] %s catalog_id=%s quantity=%s",
                change.value,
                catalog_id,
                new_quantity.value if new_quantity else "-",
            )
        return change

    def reconcile(
        self,
        items: Sequence[ParsedOrderItem],
        catalog: Sequence[CatalogEntry],
    ) -> ReconciliationResult:
        """
        Merge parser output into the order.

        Names that match no catalog entry are skipped and reported in the
        result; voice transcription is lossy, so this is not an error.
        """
        result = ReconciliationResult()
        for item in items:
            try:
                entry = resolve_vegetable_name(item.vegetable_name_raw, catalog)
            except UnresolvableVegetableName as e:
                logger.info(f"[ORDER] skipped unresolvable name: {e}")
                result.unresolved.append(item.vegetable_name_raw)
                continue

            change = self.update_quantity(entry.catalog_id, item.quantity)
            result.applied.append(
                ReconciledItem(
                    catalog_id=entry.catalog_id,
                    quantity=item.quantity.value if isinstance(item.quantity, QuantityLabel) else NO_QUANTITY,
                    change=change,
                    spoken_name=item.vegetable_name_raw,
                )
            )
        return result

    def reconcile_fallback(
        self,
        transcript: str,
        catalog: Sequence[CatalogEntry],
    ) -> ReconciliationResult:
        """
        Approximate pass used when the parser is unavailable.

        Every catalog entry whose name appears in the transcript is set to the
        default whole-unit quantity. Never raises.
        """
        result = ReconciliationResult(used_fallback=True)
        text = (transcript or "").casefold()
        if not text.strip():
            return result

        for entry in catalog:
            try:
                matched = next(
                    (name for name in entry.all_names() if name.strip().casefold() in text),
                    None,
                )
                if matched is None:
                    continue
                change = self.update_quantity(entry.catalog_id, DEFAULT_QUANTITY)
            except Exception as e:
                logger.warning(f"[ORDER] fallback skipped catalog_id={entry.catalog_id}: {e}")
                continue

            result.applied.append(
                ReconciledItem(
                    catalog_id=entry.catalog_id,
                    quantity=DEFAULT_QUANTITY.value,
                    change=change,
                    spoken_name=matched,
                )
            )

        logger.info(
            "[ORDER] fallback matched %d item(s) from transcript", len(result.applied)
        )
        return result
