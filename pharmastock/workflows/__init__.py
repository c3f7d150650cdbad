"""Workflows module."""
from .catalog import Catalog
from .lot_inventory import LotInventory, StockReadCache
from .sale import AllocationEngine
from .returns import ReturnReintegrationEngine
from .inventory_count import InventoryReconciliationEngine
from .replenishment import ReplenishmentForecaster
from .alerts import AlertEvaluator

__all__ = [
    'Catalog', 'LotInventory', 'StockReadCache', 'AllocationEngine', 'ReturnReintegrationEngine',
    'InventoryReconciliationEngine', 'ReplenishmentForecaster', 'AlertEvaluator',
]
