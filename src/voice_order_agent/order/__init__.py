"""
Order module: catalog schemas, in-progress order state, and voice reconciliation.
"""

from voice_order_agent.order.order_state import OrderChange, OrderState
from voice_order_agent.order.pulse import ConfirmationPulseScheduler
from voice_order_agent.order.reconciler import (
    OrderQuantityReconciler,
    ReconciledItem,
    ReconciliationResult,
    resolve_vegetable_name,
)
from voice_order_agent.order.schemas import (
    DEFAULT_QUANTITY,
    NO_QUANTITY,
    CatalogEntry,
    Language,
    OrderItem,
    ParsedOrderItem,
    QuantityLabel,
    VoiceOrderPayload,
)

__all__ = [
    "CatalogEntry",
    "ConfirmationPulseScheduler",
    "DEFAULT_QUANTITY",
    "Language",
    "NO_QUANTITY",
    "OrderChange",
    "OrderItem",
    "OrderQuantityReconciler",
    "OrderState",
    "ParsedOrderItem",
    "QuantityLabel",
    "ReconciledItem",
    "ReconciliationResult",
    "VoiceOrderPayload",
    "resolve_vegetable_name",
]
