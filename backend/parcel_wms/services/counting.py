"""Counting a received package: line items in, inventory and order totals out."""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from .. import models
from ..config import settings
from ..errors import CatalogMissing, ConfirmationRequired, InvalidState, NotFound, ValidationFailed
from .audit import add_operation_log
from .base import CurrentUser, Service, atomic
from .catalog import CatalogService
from .inventory import InventoryService

logger = logging.getLogger(__name__)

RETURN_TYPES = {"NEW", "INSPECT"}
PRE_COUNT_ORDER_STATUSES = {"IN_TRANSIT", "ARRIVED", "RECEIVED"}


@dataclass
class ProductDraft:
    name: str
    category: str


def is_lpn(code: str | None) -> bool:
    return bool(code) and code.upper().startswith(settings.lpn_prefix.upper())


class CountingSession(Service):
    def __init__(self, db, user: CurrentUser, package: models.Package, order: models.InboundOrder | None = None):
        super().__init__(db, user)
        self.package = package
        self.order = order
        self.items: list[models.Item] = list(
            db.scalars(select(models.Item).where(models.Item.package_id == package.id).order_by(models.Item.id)).all()
        )
        self.finished = False

    @classmethod
    def load(cls, db, user: CurrentUser, package_id: int, confirm: bool = False) -> "CountingSession":
        """Open a package for counting; one already counted needs ``confirm`` to be reopened."""
        package = db.get(models.Package, package_id)
        if not package:
            raise NotFound("包裹不存在")
        if package.status != "PENDING" and not confirm:
            raise ConfirmationRequired(
                f"这个包裹状态是 {package.status}，确定要重新清点吗？",
                package_id=package.id,
                status=package.status,
            )
        order = db.get(models.InboundOrder, package.inbound_order_id) if package.inbound_order_id else None
        return cls(db, user, package, order)

    def _check_open(self):
        if self.finished:
            raise InvalidState("清点已完成，请扫描下一个包裹")

    def add_item(
        self,
        sku: str | None = None,
        lpn: str | None = None,
        qty: int = 1,
        remark: str | None = None,
        return_type: str = "NEW",
        new_product: ProductDraft | None = None,
    ) -> models.Item:
        self._check_open()
        sku = (sku or "").strip()
        lpn = (lpn or "").strip() or None
        if not sku and not lpn:
            raise ValidationFailed("SKU 或 LPN 必填")
        if qty <= 0:
            raise ValidationFailed("数量必须大于 0")
        if return_type not in RETURN_TYPES:
            raise ValidationFailed(f"未知退货类型 {return_type}")

        client = self.package.client
        catalog = CatalogService(self.db, self.user)
        with atomic(self.db):
            if lpn:
                # LPN units always go through inspection before their real SKU is known
                return_type = "INSPECT"
                if is_lpn(lpn) or not sku:
                    sku = settings.pending_qc_sku
                    catalog.ensure_pending_qc(client)
            if not catalog.find_product(client, sku):
                if new_product is None:
                    raise CatalogMissing(sku, client)
                catalog.register_temp_product(client, sku, new_product.name, new_product.category)

            item = models.Item(
                package_id=self.package.id,
                tracking_no=self.package.tracking_no,
                sku=sku,
                lpn=lpn,
                qty=qty,
                remark=remark,
                return_type=return_type,
            )
            self.db.add(item)
            self.db.flush()
            if lpn:
                add_operation_log(
                    self.db, "inbound_lpns", lpn, "MAP_SKU", self.user, {"sku": sku, "pkg": self.package.tracking_no}
                )
        self.items.append(item)
        return item

    def delete_item(self, item_id: int, confirm: bool = False) -> None:
        self._check_open()
        item = next((i for i in self.items if i.id == item_id), None)
        if not item:
            raise NotFound("商品行不存在")
        if item.counted:
            raise InvalidState("该商品行已入库，不能删除", item_id=item_id)
        if not confirm:
            raise ConfirmationRequired("确认删除?", item_id=item_id)
        with atomic(self.db):
            self.db.delete(item)
        self.items = [i for i in self.items if i.id != item_id]

    def _sync_order(self, receipt: str | None, booked: list[models.Item]):
        order = self.order
        if order.status in PRE_COUNT_ORDER_STATUSES:
            order.status = "COUNTED"
        order.updated_at = datetime.now()
        if receipt:
            tag = f"Receipt: {receipt}"
            current = order.remark or ""
            if tag not in current:
                order.remark = f"{current} | {tag}" if current else tag

        counted: OrderedDict[str, int] = OrderedDict()
        for item in booked:
            counted[item.sku] = counted.get(item.sku, 0) + item.qty

        for sku, qty in counted.items():
            line = self.db.scalar(
                select(models.InboundItem)
                .where(models.InboundItem.order_id == order.id)
                .where(models.InboundItem.sku == sku)
                .order_by(models.InboundItem.id)
                .limit(1)
            )
            if line:
                line.received_qty = (line.received_qty or 0) + qty
                if line.expected_qty and line.received_qty > line.expected_qty:
                    logger.warning(
                        "order %s sku %s over-received: %s of %s", order.order_no, sku, line.received_qty, line.expected_qty
                    )
            else:
                # unplanned SKU, tolerated with zero expectation
                self.db.add(models.InboundItem(order_id=order.id, sku=sku, expected_qty=0, received_qty=qty))

    def finish(self, location: str | None = None, receipt: str | None = None) -> dict:
        self._check_open()
        location = (location or "").strip() or settings.default_location
        receipt = (receipt or "").strip() or self.package.receipt or None
        inventory = InventoryService(self.db, self.user)

        # a reopened package only books the lines added since its last count
        booked = [i for i in self.items if not i.counted]
        balances: dict[str, int] = {}
        with atomic(self.db):
            if self.package.status == "PENDING":
                self.package.status = "WAIT_INSPECT"
            self.package.location = location
            self.package.receipt = receipt
            self.package.counted_at = datetime.now()
            self.package.updated_at = datetime.now()

            if self.order is not None:
                self._sync_order(receipt, booked)

            for item in booked:
                qty = inventory.increment(self.package.client, item.sku, location, item.qty)
                balances[f"{item.sku}@{location}"] = qty
                item.counted = True

            add_operation_log(
                self.db,
                "packages",
                self.package.id,
                "FINISH_COUNT",
                self.user,
                {"items_count": len(booked), "location": location},
            )

        summary = {
            "package_id": self.package.id,
            "tracking_no": self.package.tracking_no,
            "status": self.package.status,
            "location": location,
            "items_count": len(booked),
            "total_qty": sum(i.qty for i in booked),
            "inventory": balances,
        }
        logger.info("package %s counted: %d lines into %s", self.package.tracking_no, len(booked), location)
        self.items = []
        self.finished = True
        return summary
