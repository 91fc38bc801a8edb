"""Outbound orders and the pick -> pack/VAS -> ship fulfillment process."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from .. import models
from ..config import settings
from ..errors import InvalidState, NotFound, StockInsufficient, ValidationFailed
from .audit import add_operation_log
from .base import CurrentUser, Service, atomic
from .billing import BillingLedger
from .inventory import InventoryService

logger = logging.getLogger(__name__)

SERVICE_TYPES = {"STANDARD", "RELABEL"}
MAX_ATTACHMENTS = 3

STEP_PICK = 1
STEP_PACK = 2
STEP_SHIP = 3


@dataclass
class VasInput:
    material_type: str = "carton_m"  # carton_s | carton_m | bubble_wrap
    material_qty: int = 1
    pallet_qty: int = 0
    label_count: int = 0


def current_step(order: models.OutboundOrder) -> int | None:
    """Fulfillment step an order is waiting on; None once shipped."""
    if order.status == "SHIPPED":
        return None
    if order.status == "PACKING":
        return STEP_PACK
    if order.status == "WAIT_SHIP":
        return STEP_SHIP
    return STEP_PICK


class OutboundService(Service):
    def __init__(self, db, user: CurrentUser, ledger: BillingLedger | None = None):
        super().__init__(db, user)
        self.ledger = ledger or BillingLedger(db, user)
        self.inventory = InventoryService(db, user)

    # ---------- orders ----------
    def list_orders(self, status: str | None = None) -> list[models.OutboundOrder]:
        stmt = select(models.OutboundOrder).order_by(models.OutboundOrder.created_at.desc(), models.OutboundOrder.id.desc())
        if self.user.is_client:
            stmt = stmt.where(models.OutboundOrder.client == self.user.username)
        if status:
            stmt = stmt.where(models.OutboundOrder.status == status)
        return list(self.db.scalars(stmt).all())

    def get(self, order_id: int) -> models.OutboundOrder:
        order = self.db.get(models.OutboundOrder, order_id)
        if not order:
            raise NotFound("出库单不存在")
        self.client_scope(order.client)
        return order

    def create(self, payload) -> models.OutboundOrder:
        order_no = (payload.order_no or "").strip()
        client = self.client_scope(payload.client)
        if not order_no or not client or not payload.items:
            raise ValidationFailed("出库单号、客户和商品明细均为必填")
        if payload.service_type not in SERVICE_TYPES:
            raise ValidationFailed(f"未知服务类型 {payload.service_type}")
        if len(payload.attachments or []) > MAX_ATTACHMENTS:
            raise ValidationFailed(f"最多上传 {MAX_ATTACHMENTS} 个附件")

        merged: dict[str, dict] = {}
        for line in payload.items:
            sku = (line.sku or "").strip()
            if not sku or line.qty <= 0:
                raise ValidationFailed("商品 SKU 和数量必须有效")
            if payload.service_type == "RELABEL" and not line.new_fnsku:
                raise ValidationFailed("换标服务必须填写新的 FNSKU / 标签号", sku=sku)
            entry = merged.setdefault(sku, {"qty": 0, "new_fnsku": None})
            entry["qty"] += line.qty
            entry["new_fnsku"] = line.new_fnsku or entry["new_fnsku"]

        stock = self.inventory.stock_by_sku(client)
        for sku, entry in merged.items():
            available = stock.get(sku, 0)
            if available < entry["qty"]:
                raise StockInsufficient(
                    f"库存不足，当前库存 {available}", sku=sku, available=available, required=entry["qty"]
                )

        if self.db.scalar(select(models.OutboundOrder.id).where(models.OutboundOrder.order_no == order_no)):
            raise ValidationFailed("出库单号已存在，请使用新的单号")

        with atomic(self.db):
            order = models.OutboundOrder(
                order_no=order_no,
                client=client,
                carrier=payload.carrier or "",
                status="WAIT_LABEL_DATA" if payload.service_type == "RELABEL" else "PROCESSING",
                service_type=payload.service_type,
                remark=payload.remark,
                attachments=list(payload.attachments or []),
                created_by=self.user.username,
            )
            self.db.add(order)
            self.db.flush()
            for sku, entry in merged.items():
                self.db.add(models.OutboundItem(order_id=order.id, sku=sku, qty=entry["qty"], new_fnsku=entry["new_fnsku"]))
            add_operation_log(
                self.db,
                "outbound_orders",
                order.id,
                "CREATE",
                self.user,
                {"order_no": order_no, "items": [{"sku": s, "qty": e["qty"]} for s, e in merged.items()]},
            )
        logger.info("outbound order %s created for %s", order_no, client)
        return order

    def parse_batch(self, client: str, text: str, existing: dict[str, int] | None = None) -> list[dict]:
        """Preview pasted ``SKU,qty`` / ``SKU<TAB>qty`` rows against the client's stock.

        Rows accepted earlier in the same batch hold their quantity so later
        rows for the same SKU are checked against what is left.
        """
        client = self.client_scope(client)
        if not client:
            raise ValidationFailed("请先选择客户")
        stock = self.inventory.stock_by_sku(client)
        used: dict[str, int] = dict(existing or {})
        rows = []
        for raw in (text or "").strip().splitlines():
            raw = raw.strip()
            if not raw:
                continue
            cols = raw.split("\t") if "\t" in raw else raw.split(",")
            sku = cols[0].strip() if cols else ""
            qty_text = cols[1].strip() if len(cols) > 1 else ""
            qty = int(qty_text) if re.fullmatch(r"-?\d+", qty_text) else None

            if not sku:
                rows.append({"sku": sku, "qty": qty, "status": "invalid", "msg": "Missing SKU"})
                continue
            if qty is None or qty <= 0:
                rows.append({"sku": sku, "qty": qty, "status": "error", "msg": "Invalid Qty"})
                continue
            available = stock.get(sku, 0)
            current = used.get(sku, 0)
            if available < current + qty:
                rows.append({"sku": sku, "qty": qty, "status": "error", "msg": f"Stock Low: {available} (Used: {current})"})
                continue
            used[sku] = current + qty
            rows.append({"sku": sku, "qty": qty, "status": "valid", "msg": "Ready"})
        return rows

    # ---------- fulfillment ----------
    def advance(self, order_id: int, vas: VasInput | None = None) -> dict:
        """Run the step the order is waiting on and move it to the next one."""
        order = self.get(order_id)
        step = current_step(order)
        if step is None:
            raise InvalidState("订单已出库", status=order.status)

        with atomic(self.db):
            if step == STEP_PICK:
                fee, txn = self._pick(order)
            elif step == STEP_PACK:
                fee, txn = self._pack(order, vas or VasInput())
            else:
                fee, txn = Decimal("0.00"), None
                self._ship(order)
            add_operation_log(
                self.db, "outbound_orders", order.id, f"STEP_{step}", self.user, {"status": order.status, "fee": str(fee)}
            )

        logger.info("outbound %s step %s done, now %s", order.order_no, step, order.status)
        return {
            "order_id": order.id,
            "step": step,
            "next_step": current_step(order),
            "status": order.status,
            "fee": fee,
            "transaction_id": txn.id if txn else None,
        }

    def _pick(self, order: models.OutboundOrder):
        order.status = "PACKING"
        fee = self.ledger.calculate_fee(order.client, "outbound_picking", settings.picking_fee_assumed_qty)
        txn = None
        if fee > 0:
            txn = self.ledger.create_transaction(
                order.client, "DEDUCTION", fee, f"Picking Fee: {order.order_no}", reference_id=order.order_no
            )
        return fee, txn

    def _pack(self, order: models.OutboundOrder, vas: VasInput):
        total = Decimal("0.00")
        parts = []

        material_fee = self.ledger.calculate_fee(order.client, "material", vas.material_qty, vas.material_type)
        if material_fee > 0:
            total += material_fee
            parts.append(f"Material x{vas.material_qty}")

        if vas.pallet_qty > 0:
            pallet_fee = self.ledger.calculate_fee(order.client, "pallet_fee", vas.pallet_qty)
            if pallet_fee > 0:
                total += pallet_fee
                parts.append(f"Pallet x{vas.pallet_qty}")

        if order.service_type == "RELABEL" and vas.label_count > 0:
            label_fee = self.ledger.calculate_fee(order.client, "labeling", vas.label_count)
            if label_fee > 0:
                total += label_fee
                parts.append(f"Labeling x{vas.label_count}")

        txn = None
        if total > 0:
            txn = self.ledger.create_transaction(
                order.client, "DEDUCTION", total, f"VAS ({', '.join(parts)}): {order.order_no}", reference_id=order.order_no
            )
        order.status = "WAIT_SHIP"
        return total, txn

    def _ship(self, order: models.OutboundOrder):
        for item in order.items:
            self.inventory.deduct(order.client, item.sku, item.qty)
        order.status = "SHIPPED"
        order.shipped_at = datetime.now()
