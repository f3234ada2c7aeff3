"""
Agents module: LLM-backed helpers used after a voice session ends.
"""

from voice_order_agent.agents.order_parser import ORDER_ITEMS_SCHEMA, OrderParser, OrderParserBase

__all__ = [
    "ORDER_ITEMS_SCHEMA",
    "OrderParser",
    "OrderParserBase",
]
