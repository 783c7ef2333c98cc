# DID inventory lifecycle

from did_core.inventory.base import (
    Ddi,
    DdiStore,
    DidOrder,
    DidOrderStore,
    InventoryStatus,
    OrderStatus,
    SuspensionAction,
    SuspensionLog,
    SuspensionLogStore,
)
from did_core.inventory.state_machine import InventoryStateMachine

__all__ = [
    "Ddi",
    "DdiStore",
    "DidOrder",
    "DidOrderStore",
    "InventoryStatus",
    "OrderStatus",
    "SuspensionAction",
    "SuspensionLog",
    "SuspensionLogStore",
    "InventoryStateMachine",
]
