import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from .. import models
from ..errors import ConfirmationRequired, DuplicateTracking, NotFound, OrphanedOrder, ValidationFailed
from .audit import add_operation_log
from .base import Service, atomic
from .catalog import CatalogService
from .inbound import generate_order_no

logger = logging.getLogger(__name__)


@dataclass
class IntakeResult:
    package: models.Package
    order: models.InboundOrder | None = None
    items: list[models.Item] = field(default_factory=list)
    default_location: str | None = None
    recovered: bool = False


class IntakeResolver(Service):
    """Turns a scanned tracking number into the package being worked on."""

    def _package_by_tracking(self, tracking_no: str) -> models.Package | None:
        return self.db.scalar(
            select(models.Package).where(models.Package.tracking_no == tracking_no).order_by(models.Package.id).limit(1)
        )

    def _latest_order_by_tracking(self, tracking_no: str) -> models.InboundOrder | None:
        # duplicates are possible after failed receipts; the newest attempt wins
        return self.db.scalar(
            select(models.InboundOrder)
            .where(models.InboundOrder.tracking_no == tracking_no)
            .order_by(models.InboundOrder.created_at.desc(), models.InboundOrder.id.desc())
            .limit(1)
        )

    def _result(self, package: models.Package, order: models.InboundOrder | None, recovered: bool = False) -> IntakeResult:
        items = list(self.db.scalars(select(models.Item).where(models.Item.package_id == package.id)).all())
        return IntakeResult(
            package=package,
            order=order,
            items=items,
            default_location=CatalogService(self.db, self.user).default_location(package.client),
            recovered=recovered,
        )

    def resolve(self, tracking_no: str, confirm: bool = False) -> IntakeResult:
        tracking_no = (tracking_no or "").strip()
        if not tracking_no:
            raise ValidationFailed("跟踪号不能为空")

        package = self._package_by_tracking(tracking_no)
        if package:
            if package.status != "PENDING" and not confirm:
                raise ConfirmationRequired(
                    f"这个包裹状态是 {package.status}，确定要重新清点吗？",
                    package_id=package.id,
                    status=package.status,
                )
            order = self.db.get(models.InboundOrder, package.inbound_order_id) if package.inbound_order_id else None
            return self._result(package, order)

        order = self._latest_order_by_tracking(tracking_no)
        if not order:
            raise NotFound(f"未找到包裹 {tracking_no}", tracking_no=tracking_no)

        logger.info("orphaned inbound order %s for %s, recreating package", order.order_no, tracking_no)
        with atomic(self.db):
            package = models.Package(
                tracking_no=order.tracking_no,
                client=order.client_id,
                carrier=order.carrier or "Unknown",
                status="PENDING",
                type="box",
                inbound_order_id=order.id,
                operator=self.user.username,
            )
            self.db.add(package)
            self.db.flush()
            add_operation_log(
                self.db,
                "packages",
                package.id,
                "DATA_RECOVERY",
                self.user,
                {
                    "reason": "Missing package record",
                    "linked_order": order.order_no,
                    "original_tracking": tracking_no,
                },
            )
        return self._result(package, order, recovered=True)

    def lookup_pre_advice(self, tracking_no: str) -> models.InboundOrder | None:
        tracking_no = (tracking_no or "").strip()
        if not tracking_no:
            return None
        return self._latest_order_by_tracking(tracking_no)

    def receive(self, payload) -> models.Package:
        """Register a physical package at the dock, matching it to its pre-advice or receiving it blind."""
        tracking_no = (payload.tracking_no or "").strip()
        if not tracking_no:
            raise ValidationFailed("跟踪号不能为空")

        matched = self.lookup_pre_advice(tracking_no)
        blind = matched is None
        carrier = payload.carrier or (matched.carrier if matched else "") or ""
        if blind and (not payload.client or not payload.carrier):
            raise ValidationFailed("无预报包裹，请手动选择客户和物流商")
        if matched and payload.client and payload.client != matched.client_id:
            raise ValidationFailed(
                f"客户与预报单 {matched.order_no} 不一致", order_no=matched.order_no, client=matched.client_id
            )
        # a matched package always belongs to the pre-advice owner
        client = matched.client_id if matched else payload.client

        existing = self._package_by_tracking(tracking_no)
        if existing:
            raise DuplicateTracking(
                f"重复扫描: 该包裹已入库 (Status: {existing.status})", package_id=existing.id, status=existing.status
            )
        if matched and matched.status not in {"IN_TRANSIT", "ARRIVED"}:
            # a previous receipt created the order but never its package
            raise OrphanedOrder(
                f"该单号已存在入库单 ({matched.order_no}) 但未生成包裹记录，请前往开箱清点扫描该单号自动修复",
                order_no=matched.order_no,
            )

        with atomic(self.db):
            if blind:
                order = models.InboundOrder(
                    order_no=generate_order_no("RB", digits=3),
                    client_id=client,
                    inbound_type="BLIND",
                    tracking_no=tracking_no,
                    carrier=carrier,
                    status="RECEIVED",
                    created_by=self.user.username,
                )
                self.db.add(order)
                self.db.flush()
            else:
                order = matched
                if order.status in {"IN_TRANSIT", "ARRIVED"}:
                    order.status = "RECEIVED"
                    order.carrier = payload.carrier or order.carrier

            package = models.Package(
                tracking_no=tracking_no,
                client=client,
                carrier=carrier,
                type=payload.type,
                is_abnormal=bool(payload.is_abnormal),
                reason=payload.reason,
                receipt=payload.receipt or None,
                operator=self.user.username,
                status="PENDING",
                inbound_order_id=order.id,
            )
            self.db.add(package)
            self.db.flush()
            add_operation_log(
                self.db,
                "packages",
                package.id,
                "RECEIVE",
                self.user,
                {"tracking_no": tracking_no, "order_no": order.order_no, "blind": blind},
            )
        logger.info("received %s for %s (%s)", tracking_no, client, "blind" if blind else order.order_no)
        return package
