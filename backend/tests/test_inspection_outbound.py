from decimal import Decimal

import pytest
from sqlalchemy import select

from parcel_wms import models, schemas
from parcel_wms.config import settings
from parcel_wms.errors import ConfirmationRequired, InvalidState, StockInsufficient, ValidationFailed
from parcel_wms.services import (
    BillingLedger,
    CatalogService,
    CountingSession,
    CurrentUser,
    InspectionSession,
    IntakeResolver,
    InventoryService,
    OutboundService,
)
from parcel_wms.services.base import atomic
from parcel_wms.services.outbound import VasInput, current_step

OPERATOR = CurrentUser(username="op1", role="operator")


def _rule(db, fee_type, price, condition=None):
    BillingLedger(db, OPERATOR).upsert_rule(
        name=fee_type, type=fee_type, condition=condition, price=Decimal(price), unit="per_item", client_id=None
    )


def _stock(db, sku, qty, client="ACME", location="A-01"):
    with atomic(db):
        InventoryService(db, OPERATOR).increment(client, sku, location, qty)


def _balance(db, client="ACME"):
    db.expire_all()
    return Decimal(str(db.scalar(select(models.FinanceAccount.balance).where(models.FinanceAccount.client_id == client))))


def _counted_package(db, tracking_no="TRK-QC"):
    CatalogService(db, OPERATOR).create_product("ACME", "SKU-A", "Widget", "general")
    package = IntakeResolver(db, OPERATOR).receive(
        schemas.ReceiveRequest(tracking_no=tracking_no, client="ACME", carrier="UPS")
    )
    session = CountingSession.load(db, OPERATOR, package.id)
    item = session.add_item(sku="SKU-A", qty=4)
    session.finish(location="A-01")
    return package, item


def test_inspection_needs_fee_confirmation(db):
    _rule(db, "inspection", "0.50")
    package, item = _counted_package(db)
    inspection = InspectionSession(db, OPERATOR)

    assert package.id in [p.id for p in inspection.pending_packages()]
    assert inspection.estimate_fee(package.id, "general") == Decimal("2.00")

    with pytest.raises(ConfirmationRequired) as exc:
        inspection.submit(package.id, "general")
    assert exc.value.context["estimated_fee"] == "2.00"
    db.refresh(package)
    assert package.status == "WAIT_INSPECT"

    result = inspection.submit(
        package.id,
        "general",
        confirm=True,
        results=[schemas.InspectionResultIn(item_id=item.id, status="PASS", grade="A")],
    )
    assert result["status"] == "INSPECTED"
    assert result["fee"] == Decimal("2.00")

    txn = db.get(models.FinanceTransaction, result["transaction_id"])
    assert txn.type == "DEDUCTION"
    assert txn.reference_id == str(package.id)
    assert txn.description == "Inspection Fee (general): TRK-QC"
    assert _balance(db) == Decimal("-2.00")

    line = db.scalar(select(models.InboundItem).where(models.InboundItem.order_id == package.inbound_order_id))
    assert line.passed_qty == 4

    with pytest.raises(InvalidState):
        inspection.submit(package.id, "general", confirm=True)


def test_inspection_without_rule_is_free(db):
    package, _ = _counted_package(db, "TRK-FREE")
    result = InspectionSession(db, OPERATOR).submit(package.id, "electronics", confirm=True)
    assert result["fee"] == Decimal("0.00")
    assert result["transaction_id"] is None


def test_outbound_create_checks_stock(db):
    _stock(db, "SKU-A", 10)
    service = OutboundService(db, OPERATOR)

    too_many = schemas.OutboundCreate(order_no="OB-X", client="ACME", items=[schemas.OutboundItemIn(sku="SKU-A", qty=11)])
    with pytest.raises(StockInsufficient):
        service.create(too_many)

    order = service.create(
        schemas.OutboundCreate(
            order_no="OB-1",
            client="ACME",
            carrier="UPS",
            items=[schemas.OutboundItemIn(sku="SKU-A", qty=2), schemas.OutboundItemIn(sku="SKU-A", qty=2)],
        )
    )
    assert order.status == "PROCESSING"
    assert [(i.sku, i.qty) for i in order.items] == [("SKU-A", 4)]

    with pytest.raises(ValidationFailed):
        service.create(schemas.OutboundCreate(order_no="OB-1", client="ACME", items=[schemas.OutboundItemIn(sku="SKU-A", qty=1)]))


def test_relabel_requires_new_label(db):
    _stock(db, "SKU-A", 10)
    service = OutboundService(db, OPERATOR)
    with pytest.raises(ValidationFailed):
        service.create(
            schemas.OutboundCreate(
                order_no="OB-R", client="ACME", service_type="RELABEL", items=[schemas.OutboundItemIn(sku="SKU-A", qty=1)]
            )
        )
    order = service.create(
        schemas.OutboundCreate(
            order_no="OB-R",
            client="ACME",
            service_type="RELABEL",
            items=[schemas.OutboundItemIn(sku="SKU-A", qty=1, new_fnsku="X00NEW")],
        )
    )
    assert order.status == "WAIT_LABEL_DATA"
    assert current_step(order) == 1


def test_outbound_steps_bill_and_ship(db):
    _stock(db, "SKU-A", 10)
    _rule(db, "outbound_picking", "0.10")
    _rule(db, "material", "1.50", condition="carton_m")
    _rule(db, "pallet_fee", "20.00")
    service = OutboundService(db, OPERATOR)
    order = service.create(
        schemas.OutboundCreate(order_no="OB-2", client="ACME", items=[schemas.OutboundItemIn(sku="SKU-A", qty=4)])
    )

    pick = service.advance(order.id)
    assert pick["step"] == 1
    assert pick["status"] == "PACKING"
    assert pick["fee"] == Decimal("1.00")
    assert db.get(models.FinanceTransaction, pick["transaction_id"]).description == "Picking Fee: OB-2"

    pack = service.advance(order.id, VasInput(material_type="carton_m", material_qty=2, pallet_qty=1))
    assert pack["step"] == 2
    assert pack["status"] == "WAIT_SHIP"
    assert pack["fee"] == Decimal("23.00")
    vas = db.get(models.FinanceTransaction, pack["transaction_id"])
    assert vas.description == "VAS (Material x2, Pallet x1): OB-2"
    assert _balance(db) == Decimal("-24.00")

    ship = service.advance(order.id)
    assert ship["status"] == "SHIPPED"
    assert ship["next_step"] is None
    db.refresh(order)
    assert order.shipped_at is not None
    assert db.get(models.InventoryRecord, "ACME_SKU-A_A-01").qty == 6

    with pytest.raises(InvalidState):
        service.advance(order.id)


def test_ship_may_drive_stock_negative(db, monkeypatch):
    _stock(db, "SKU-A", 2)
    inventory = InventoryService(db, OPERATOR)
    with atomic(db):
        assert inventory.deduct("ACME", "SKU-A", 5) == -3
        assert inventory.deduct("ACME", "SKU-GONE", 1) is None

    monkeypatch.setattr(settings, "reject_negative_inventory", True)
    with pytest.raises(StockInsufficient):
        with atomic(db):
            inventory.deduct("ACME", "SKU-A", 1)


def test_batch_parse_tracks_running_usage(db):
    _stock(db, "SKU-A", 10)
    rows = OutboundService(db, OPERATOR).parse_batch("ACME", "SKU-A,6\nSKU-A\t5\n,3\nSKU-B,x\n\nSKU-A,4")

    assert [r["status"] for r in rows] == ["valid", "error", "invalid", "error", "valid"]
    assert rows[1]["msg"] == "Stock Low: 10 (Used: 6)"
    assert rows[2]["msg"] == "Missing SKU"
    assert rows[3]["msg"] == "Invalid Qty"


def test_relabel_pack_bills_labels_with_vas(db):
    _stock(db, "SKU-A", 5)
    _rule(db, "material", "1.50", condition="carton_s")
    _rule(db, "pallet_fee", "20.00")
    _rule(db, "labeling", "0.25")
    service = OutboundService(db, OPERATOR)
    order = service.create(
        schemas.OutboundCreate(
            order_no="OB-L",
            client="ACME",
            service_type="RELABEL",
            items=[schemas.OutboundItemIn(sku="SKU-A", qty=3, new_fnsku="X00NEW")],
        )
    )

    service.advance(order.id)
    pack = service.advance(order.id, VasInput(material_type="carton_s", material_qty=1, pallet_qty=1, label_count=3))

    assert pack["fee"] == Decimal("22.25")
    vas = db.get(models.FinanceTransaction, pack["transaction_id"])
    assert vas.description == "VAS (Material x1, Pallet x1, Labeling x3): OB-L"
    assert Decimal(str(vas.amount)) == Decimal("22.25")


def test_increment_recovers_from_concurrent_insert(db, session_factory, monkeypatch):
    real_bump = InventoryService._bump
    calls = []

    def bump_after_other_insert(self, inv_id, delta):
        calls.append(inv_id)
        if len(calls) == 1:
            # the row appears in another session between our update and insert
            with session_factory() as other:
                with atomic(other):
                    InventoryService(other, OPERATOR).increment("ACME", "SKU-R", "A-01", 3)
            real_bump(self, inv_id, 0)
            return None
        return real_bump(self, inv_id, delta)

    monkeypatch.setattr(InventoryService, "_bump", bump_after_other_insert)
    with atomic(db):
        assert InventoryService(db, OPERATOR).increment("ACME", "SKU-R", "A-01", 2) == 5
    assert db.get(models.InventoryRecord, "ACME_SKU-R_A-01").qty == 5
