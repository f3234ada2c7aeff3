"""
External service adapters.
"""

from voice_order_agent.services.store_client import StoreClient, StoreClientBase

__all__ = ["StoreClient", "StoreClientBase"]
