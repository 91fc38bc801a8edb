import logging
import random
from datetime import date, datetime

from sqlalchemy import or_, select

from .. import models
from ..errors import CatalogMissing, InvalidState, NotFound, ValidationFailed
from .audit import add_operation_log, load_details
from .base import Service, atomic
from .catalog import CatalogService

logger = logging.getLogger(__name__)

INBOUND_TYPES = {"RETURN", "NEW", "AFTER_SALES", "BLIND"}


def generate_order_no(prefix: str = "R", digits: int = 5, today: date | None = None) -> str:
    stamp = (today or date.today()).strftime("%Y%m%d")
    return f"{prefix}{stamp}{random.randrange(10 ** digits):0{digits}d}"


class InboundService(Service):
    """Pre-advised inbound orders and their expected lines."""

    def _validate(self, payload, order_id: int | None = None) -> tuple[str, list]:
        client = self.client_scope(payload.client_id)
        if not payload.expected_date:
            raise ValidationFailed("预计到货日期不能为空")
        if not client:
            raise ValidationFailed("请选择客户")
        if payload.inbound_type not in INBOUND_TYPES:
            raise ValidationFailed(f"未知入库类型 {payload.inbound_type}")
        lines = [i for i in payload.items if i.sku and i.sku.strip() and i.qty > 0]
        if not lines:
            raise ValidationFailed("请至少添加一个商品")
        missing = CatalogService(self.db, self.user).missing_skus(client, [i.sku.strip() for i in lines])
        if missing:
            raise CatalogMissing(missing[0], client)
        if payload.tracking_no:
            stmt = select(models.InboundOrder.id).where(models.InboundOrder.tracking_no == payload.tracking_no.strip())
            if order_id:
                stmt = stmt.where(models.InboundOrder.id != order_id)
            if self.db.scalar(stmt.limit(1)):
                raise ValidationFailed("跟踪号已存在")
        return client, lines

    def create(self, payload) -> models.InboundOrder:
        client, lines = self._validate(payload)
        with atomic(self.db):
            order = models.InboundOrder(
                order_no=generate_order_no(),
                client_id=client,
                inbound_type=payload.inbound_type,
                tracking_no=(payload.tracking_no or "").strip() or None,
                expected_date=payload.expected_date,
                remark=payload.remark,
                created_by=self.user.username,
                status="IN_TRANSIT",
                updated_at=datetime.now(),
            )
            self.db.add(order)
            self.db.flush()
            for line in lines:
                self.db.add(models.InboundItem(order_id=order.id, sku=line.sku.strip(), expected_qty=line.qty))
            add_operation_log(
                self.db,
                "inbound_orders",
                order.id,
                "CREATE",
                self.user,
                {"order_no": order.order_no, "items": [{"sku": i.sku, "qty": i.qty} for i in lines]},
            )
        logger.info("inbound order %s created for %s with %d lines", order.order_no, client, len(lines))
        return order

    def _get_editable(self, order_id: int) -> models.InboundOrder:
        order = self.db.get(models.InboundOrder, order_id)
        if not order:
            raise NotFound("入库单不存在")
        self.client_scope(order.client_id)
        if order.status != "IN_TRANSIT":
            raise InvalidState("只能修改 '在途 (IN_TRANSIT)' 状态的入库单", status=order.status)
        return order

    def update(self, order_id: int, payload) -> models.InboundOrder:
        order = self._get_editable(order_id)
        client, lines = self._validate(payload, order_id=order_id)
        with atomic(self.db):
            order.client_id = client
            order.inbound_type = payload.inbound_type
            order.tracking_no = (payload.tracking_no or "").strip() or None
            order.expected_date = payload.expected_date
            order.remark = payload.remark
            order.updated_at = datetime.now()
            order.items.clear()
            self.db.flush()
            for line in lines:
                order.items.append(models.InboundItem(sku=line.sku.strip(), expected_qty=line.qty))
            add_operation_log(
                self.db,
                "inbound_orders",
                order.id,
                "UPDATE",
                self.user,
                {"items": [{"sku": i.sku, "qty": i.qty} for i in lines]},
            )
        return order

    def delete(self, order_id: int) -> None:
        order = self._get_editable(order_id)
        with atomic(self.db):
            self.db.delete(order)
            add_operation_log(self.db, "inbound_orders", order_id, "DELETE", self.user, {"order_no": order.order_no})

    def list_orders(
        self,
        search: str | None = None,
        status: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[models.InboundOrder]:
        stmt = select(models.InboundOrder).order_by(models.InboundOrder.created_at.desc(), models.InboundOrder.id.desc())
        if self.user.is_client:
            stmt = stmt.where(models.InboundOrder.client_id == self.user.username)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(or_(models.InboundOrder.order_no.ilike(pattern), models.InboundOrder.tracking_no.ilike(pattern)))
        if status:
            stmt = stmt.where(models.InboundOrder.status == status)
        if start:
            stmt = stmt.where(models.InboundOrder.created_at >= datetime.combine(start, datetime.min.time()))
        if end:
            stmt = stmt.where(models.InboundOrder.created_at <= datetime.combine(end, datetime.max.time()))
        return list(self.db.scalars(stmt).all())

    def detail(self, order_id: int) -> dict:
        order = self.db.get(models.InboundOrder, order_id)
        if not order:
            raise NotFound("入库单不存在")
        self.client_scope(order.client_id)

        skus = [i.sku for i in order.items]
        names = {}
        if skus:
            names = dict(
                self.db.execute(
                    select(models.Product.sku, models.Product.name)
                    .where(models.Product.client == order.client_id)
                    .where(models.Product.sku.in_(skus))
                ).all()
            )

        packages = self.db.scalars(select(models.Package).where(models.Package.inbound_order_id == order.id)).all()
        package_rows = []
        for pkg in packages:
            items = self.db.scalars(select(models.Item).where(models.Item.package_id == pkg.id)).all()
            item_ids = [it.id for it in items]
            inspections = []
            if item_ids:
                inspections = self.db.scalars(
                    select(models.Inspection).where(models.Inspection.target_item_id.in_(item_ids))
                ).all()
            package_rows.append({"package": pkg, "items": items, "inspections": inspections})

        logs = self.db.scalars(
            select(models.OperationLog)
            .where(models.OperationLog.target_table == "inbound_orders")
            .where(models.OperationLog.target_id == str(order.id))
            .order_by(models.OperationLog.created_at.desc(), models.OperationLog.id.desc())
        ).all()

        return {
            "order": order,
            "items": [
                {
                    "id": i.id,
                    "sku": i.sku,
                    "product_name": names.get(i.sku),
                    "expected_qty": i.expected_qty,
                    "received_qty": i.received_qty,
                    "passed_qty": i.passed_qty,
                    "failed_qty": i.failed_qty,
                }
                for i in order.items
            ],
            "packages": package_rows,
            "history": [
                {"action": log.action, "operator": log.operator, "details": load_details(log), "created_at": log.created_at}
                for log in logs
            ],
        }
