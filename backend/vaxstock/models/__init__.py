from .geography import Region, Commune, District, HealthCenter
from .vaccines import Vaccine
from .people import User, Child, ChildVaccination, VisitRecord
from .stock import StockLot, AggregateStock, StockReservation
from .transfers import PendingStockTransfer, PendingStockTransferLot, StockTransfer, StockTransferLot
from .events import EventLog

__all__ = [
    'Region', 'Commune', 'District', 'HealthCenter',
    'Vaccine',
    'User', 'Child', 'ChildVaccination', 'VisitRecord',
    'StockLot', 'AggregateStock', 'StockReservation',
    'PendingStockTransfer', 'PendingStockTransferLot', 'StockTransfer', 'StockTransferLot',
    'EventLog',
]
