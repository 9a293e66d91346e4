from .catalog import Supplier, Product, ProductVariant, Location
from .stock import StockLevel, StockMovement, CostLayer, Batch, make_level_key
from .purchasing import PurchaseOrder, PurchaseOrderItem, PurchaseOrderPayment
from .counts import CycleCount, CycleCountLine
from .settings import InventorySettings
from .audit import InventoryAuditLog
from .documents import DocumentSequence

__all__ = [
    'Supplier', 'Product', 'ProductVariant', 'Location',
    'StockLevel', 'StockMovement', 'CostLayer', 'Batch', 'make_level_key',
    'PurchaseOrder', 'PurchaseOrderItem', 'PurchaseOrderPayment',
    'CycleCount', 'CycleCountLine',
    'InventorySettings',
    'InventoryAuditLog',
    'DocumentSequence',
]
