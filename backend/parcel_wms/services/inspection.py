import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from .. import models
from ..errors import ConfirmationRequired, InvalidState, NotFound, ValidationFailed
from .audit import add_operation_log
from .base import CurrentUser, Service, atomic
from .billing import BillingLedger

logger = logging.getLogger(__name__)

QUALITY_STANDARDS = {
    "apparel": "服装标准 (Apparel)",
    "electronics": "电子产品 (Electronics)",
    "general": "普通百货 (General)",
}

# counting hands packages over as WAIT_INSPECT; RECEIVED/INSPECTING kept for older rows
INSPECTABLE_STATUSES = ("RECEIVED", "INSPECTING", "WAIT_INSPECT")


class InspectionSession(Service):
    def __init__(self, db, user: CurrentUser, ledger: BillingLedger | None = None):
        super().__init__(db, user)
        self.ledger = ledger or BillingLedger(db, user)

    def pending_packages(self) -> list[models.Package]:
        return list(
            self.db.scalars(
                select(models.Package)
                .where(models.Package.status.in_(INSPECTABLE_STATUSES))
                .order_by(models.Package.created_at, models.Package.id)
            ).all()
        )

    def _package(self, package_id: int) -> models.Package:
        package = self.db.get(models.Package, package_id)
        if not package:
            raise NotFound("包裹不存在")
        return package

    def _items(self, package_id: int) -> list[models.Item]:
        return list(self.db.scalars(select(models.Item).where(models.Item.package_id == package_id)).all())

    def estimate_fee(self, package_id: int, standard: str = "general") -> Decimal:
        if standard not in QUALITY_STANDARDS:
            raise ValidationFailed(f"未知质检标准 {standard}")
        package = self._package(package_id)
        total_qty = sum(it.qty or 0 for it in self._items(package_id))
        if total_qty == 0:
            return Decimal("0.00")
        return self.ledger.calculate_fee(package.client, "inspection", total_qty, standard)

    def _record_result(self, package: models.Package, items: dict[int, models.Item], result) -> None:
        item = items.get(result.item_id)
        if not item:
            raise ValidationFailed(f"商品行 {result.item_id} 不属于该包裹")
        self.db.add(
            models.Inspection(
                target_item_id=item.id,
                status=result.status,
                grade=result.grade,
                faults=list(result.faults or []),
                imei=result.imei,
                inspector=self.user.username,
                inspected_at=datetime.now(),
            )
        )
        if not package.inbound_order_id:
            return
        line = self.db.scalar(
            select(models.InboundItem)
            .where(models.InboundItem.order_id == package.inbound_order_id)
            .where(models.InboundItem.sku == item.sku)
            .order_by(models.InboundItem.id)
            .limit(1)
        )
        if not line:
            return
        if result.status == "PASS":
            line.passed_qty = (line.passed_qty or 0) + item.qty
        else:
            line.failed_qty = (line.failed_qty or 0) + item.qty

    def submit(self, package_id: int, standard: str = "general", confirm: bool = False, results=None) -> dict:
        package = self._package(package_id)
        if package.status not in INSPECTABLE_STATUSES:
            raise InvalidState(f"包裹状态 {package.status} 不允许质检", status=package.status)
        fee = self.estimate_fee(package_id, standard)
        if not confirm:
            raise ConfirmationRequired(
                f"确认提交质检结果？预计将产生质检费: ${fee:.2f}", estimated_fee=str(fee), standard=standard
            )

        items = {it.id: it for it in self._items(package_id)}
        txn = None
        with atomic(self.db):
            package.status = "INSPECTED"
            package.updated_at = datetime.now()
            for result in results or []:
                self._record_result(package, items, result)
            if fee > 0:
                txn = self.ledger.create_transaction(
                    package.client,
                    "DEDUCTION",
                    fee,
                    f"Inspection Fee ({standard}): {package.tracking_no}",
                    reference_id=str(package.id),
                )
            add_operation_log(
                self.db,
                "packages",
                package.id,
                "INSPECT",
                self.user,
                {"standard": standard, "fee": str(fee), "results": len(results or [])},
            )
        logger.info("package %s inspected (%s), fee %s", package.tracking_no, standard, fee)
        return {
            "package_id": package.id,
            "status": package.status,
            "fee": fee,
            "transaction_id": txn.id if txn else None,
        }
