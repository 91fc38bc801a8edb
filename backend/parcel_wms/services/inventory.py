import logging
import re
from collections import defaultdict
from datetime import datetime

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from .. import models
from ..config import settings
from ..errors import StockInsufficient
from .base import Service

logger = logging.getLogger(__name__)


def inventory_id(client: str, sku: str, location: str) -> str:
    return re.sub(r"\s+", "_", f"{client}_{sku}_{location}")


class InventoryService(Service):
    """On-hand balances keyed by client, SKU and shelf location.

    Quantity changes are issued as ``qty = qty + delta`` statements so two
    sessions touching the same row cannot overwrite each other's snapshot.
    None of the methods commit; callers own the transaction.
    """

    def _bump(self, inv_id: str, delta: int) -> int | None:
        result = self.db.execute(
            update(models.InventoryRecord)
            .where(models.InventoryRecord.id == inv_id)
            .values(qty=models.InventoryRecord.qty + delta, updated_at=datetime.now())
        )
        if result.rowcount == 0:
            return None
        return self.db.scalar(select(models.InventoryRecord.qty).where(models.InventoryRecord.id == inv_id))

    def increment(self, client: str, sku: str, location: str, delta: int) -> int:
        inv_id = inventory_id(client, sku, location)
        new_qty = self._bump(inv_id, delta)
        if new_qty is not None:
            return new_qty
        try:
            with self.db.begin_nested():
                self.db.execute(
                    insert(models.InventoryRecord).values(
                        id=inv_id, client=client, sku=sku, location=location, qty=delta, updated_at=datetime.now()
                    )
                )
        except IntegrityError:
            # another session created the row after our update missed it
            logger.info("inventory %s created concurrently, retrying as update", inv_id)
            return self._bump(inv_id, delta)
        return delta

    def first_record(self, client: str, sku: str) -> models.InventoryRecord | None:
        return self.db.scalar(
            select(models.InventoryRecord)
            .where(models.InventoryRecord.client == client)
            .where(models.InventoryRecord.sku == sku)
            .order_by(models.InventoryRecord.id)
            .limit(1)
        )

    def deduct(self, client: str, sku: str, qty: int) -> int | None:
        """Take ``qty`` off the first stock row holding this client's SKU.

        Returns the new quantity, or None when the client holds no row for the SKU.
        """
        record = self.first_record(client, sku)
        if not record:
            logger.warning("no inventory row for client=%s sku=%s, %s units not deducted", client, sku, qty)
            return None
        if settings.reject_negative_inventory and record.qty < qty:
            raise StockInsufficient(f"库存不足: {sku} 现有 {record.qty}", sku=sku, available=record.qty, required=qty)
        new_qty = self._bump(record.id, -qty)
        if new_qty < 0:
            logger.warning("inventory %s went negative: %s", record.id, new_qty)
        return new_qty

    def stock_by_sku(self, client: str) -> dict[str, int]:
        totals: dict[str, int] = defaultdict(int)
        rows = self.db.execute(
            select(models.InventoryRecord.sku, models.InventoryRecord.qty).where(models.InventoryRecord.client == client)
        ).all()
        for sku, qty in rows:
            totals[sku] += qty or 0
        return dict(totals)

    def list_records(self, client: str | None = None, sku: str | None = None) -> list[models.InventoryRecord]:
        client = self.client_scope(client)
        stmt = select(models.InventoryRecord).order_by(models.InventoryRecord.client, models.InventoryRecord.sku)
        if client:
            stmt = stmt.where(models.InventoryRecord.client == client)
        if sku:
            stmt = stmt.where(models.InventoryRecord.sku.ilike(f"%{sku}%"))
        return list(self.db.scalars(stmt).all())
