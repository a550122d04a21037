"""Platform adapters: one implementation of the adapter contract per marketplace."""

from omnisync.adapters.base import (
    InventoryLevel,
    NormalizedOrder,
    NormalizedOrderItem,
    OrderFilter,
    Page,
    PlatformAdapter,
)
from omnisync.adapters.registry import ADAPTERS, AdapterFactory, adapter_class

__all__ = [
    "ADAPTERS",
    "AdapterFactory",
    "InventoryLevel",
    "NormalizedOrder",
    "NormalizedOrderItem",
    "OrderFilter",
    "Page",
    "PlatformAdapter",
    "adapter_class",
]
