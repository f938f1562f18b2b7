"""Database models"""
from shopfloor.models.product import Product, ProductType
from shopfloor.models.bom import BOMItem
from shopfloor.models.inventory import InventoryLot, InventoryReservation, InventoryTransaction
from shopfloor.models.work_center import Machine, MachineAllocation
from shopfloor.models.work_order import WorkOrder, ProductionRecord

__all__ = [
    # Item master
    "Product",
    "ProductType",
    "BOMItem",
    # Inventory
    "InventoryLot",
    "InventoryReservation",
    "InventoryTransaction",
    # Capacity
    "Machine",
    "MachineAllocation",
    # Production
    "WorkOrder",
    "ProductionRecord",
]
