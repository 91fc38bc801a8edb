from .base import CurrentUser, tx
from .audit import add_operation_log
from .billing import BillingLedger
from .catalog import CatalogService
from .counting import CountingSession
from .inbound import InboundService
from .inspection import InspectionSession
from .intake import IntakeResolver
from .inventory import InventoryService
from .outbound import OutboundService

__all__ = [
    "CurrentUser",
    "tx",
    "add_operation_log",
    "BillingLedger",
    "CatalogService",
    "CountingSession",
    "InboundService",
    "InspectionSession",
    "IntakeResolver",
    "InventoryService",
    "OutboundService",
]
