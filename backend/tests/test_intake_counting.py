from datetime import date

import pytest
from sqlalchemy import func, select

from parcel_wms import models, schemas
from parcel_wms.errors import (
    CatalogMissing,
    ConfirmationRequired,
    DuplicateTracking,
    InvalidState,
    NotFound,
    OrphanedOrder,
    ValidationFailed,
)
from parcel_wms.services import CatalogService, CountingSession, CurrentUser, InboundService, IntakeResolver
from parcel_wms.services.counting import ProductDraft

OPERATOR = CurrentUser(username="op1", role="operator")


def _catalog(db, client="ACME", skus=("SKU-A", "SKU-B")):
    catalog = CatalogService(db, OPERATOR)
    for sku in skus:
        catalog.create_product(client, sku, f"{sku} name", "general")


def _pre_advice(db, tracking_no, items=(("SKU-A", 5),), client="ACME"):
    payload = schemas.InboundCreate(
        client_id=client,
        tracking_no=tracking_no,
        expected_date=date(2026, 10, 20),
        items=[schemas.InboundItemIn(sku=sku, qty=qty) for sku, qty in items],
    )
    return InboundService(db, OPERATOR).create(payload)


def _received(db, tracking_no, client="ACME"):
    return IntakeResolver(db, OPERATOR).receive(
        schemas.ReceiveRequest(tracking_no=tracking_no, client=client, carrier="UPS")
    )


def test_inbound_rejects_sku_outside_catalog(db):
    _catalog(db, skus=("SKU-A",))
    with pytest.raises(CatalogMissing) as exc:
        _pre_advice(db, "TRK-X", items=(("SKU-A", 1), ("SKU-Z", 2)))
    assert exc.value.sku == "SKU-Z"
    assert exc.value.code == "E4001"


def test_receive_matches_pre_advice(db):
    _catalog(db)
    order = _pre_advice(db, "TRK-1")

    package = IntakeResolver(db, OPERATOR).receive(schemas.ReceiveRequest(tracking_no="TRK-1", carrier="UPS"))

    assert package.client == "ACME"
    assert package.status == "PENDING"
    assert package.inbound_order_id == order.id
    db.refresh(order)
    assert order.status == "RECEIVED"
    assert order.carrier == "UPS"

    with pytest.raises(DuplicateTracking):
        IntakeResolver(db, OPERATOR).receive(schemas.ReceiveRequest(tracking_no="TRK-1", carrier="UPS"))


def test_blind_receipt_creates_rb_order(db):
    resolver = IntakeResolver(db, OPERATOR)
    with pytest.raises(ValidationFailed):
        resolver.receive(schemas.ReceiveRequest(tracking_no="BL-1", client="ACME"))

    package = resolver.receive(schemas.ReceiveRequest(tracking_no="BL-1", client="ACME", carrier="DHL"))
    order = db.get(models.InboundOrder, package.inbound_order_id)
    assert order.inbound_type == "BLIND"
    assert order.order_no.startswith("RB")
    assert order.status == "RECEIVED"


def test_receive_refuses_order_without_package(db):
    _catalog(db)
    order = _pre_advice(db, "TRK-ORPHAN")
    order.status = "RECEIVED"
    db.commit()

    with pytest.raises(OrphanedOrder):
        _received(db, "TRK-ORPHAN")


def test_resolve_recovers_missing_package_once(db):
    _catalog(db)
    order = _pre_advice(db, "TRK-2")
    resolver = IntakeResolver(db, OPERATOR)

    first = resolver.resolve("TRK-2")
    assert first.recovered is True
    assert first.package.status == "PENDING"
    assert first.package.carrier == "Unknown"
    assert first.package.inbound_order_id == order.id

    second = resolver.resolve("TRK-2")
    assert second.recovered is False
    assert second.package.id == first.package.id

    packages = db.scalar(select(func.count(models.Package.id)).where(models.Package.tracking_no == "TRK-2"))
    recoveries = db.scalar(
        select(func.count(models.OperationLog.id)).where(models.OperationLog.action == "DATA_RECOVERY")
    )
    assert packages == 1
    assert recoveries == 1


def test_resolve_unknown_and_recount_confirmation(db):
    resolver = IntakeResolver(db, OPERATOR)
    with pytest.raises(NotFound):
        resolver.resolve("NOPE")
    with pytest.raises(ValidationFailed):
        resolver.resolve("   ")

    package = _received(db, "TRK-3")
    package.status = "WAIT_INSPECT"
    db.commit()

    with pytest.raises(ConfirmationRequired):
        resolver.resolve("TRK-3")
    assert resolver.resolve("TRK-3", confirm=True).package.id == package.id


def test_lpn_forces_inspection_and_pending_qc(db):
    _catalog(db)
    package = _received(db, "TRK-LPN")
    session = CountingSession.load(db, OPERATOR, package.id)

    placeholder = session.add_item(lpn="LPN00042")
    assert placeholder.sku == "Pending_QC"
    assert placeholder.return_type == "INSPECT"

    no_sku = session.add_item(lpn="X-991")
    assert no_sku.sku == "Pending_QC"

    known = session.add_item(sku="SKU-A", lpn="AMZ-77", return_type="NEW")
    assert known.sku == "SKU-A"
    assert known.return_type == "INSPECT"

    product = CatalogService(db, OPERATOR).find_product("ACME", "Pending_QC")
    assert product.attributes == {"is_pending": True}
    mapped = db.scalars(select(models.OperationLog).where(models.OperationLog.action == "MAP_SKU")).all()
    assert {log.target_id for log in mapped} == {"LPN00042", "X-991", "AMZ-77"}


def test_unknown_sku_needs_quick_entry(db):
    _catalog(db)
    package = _received(db, "TRK-NEW")
    session = CountingSession.load(db, OPERATOR, package.id)

    with pytest.raises(CatalogMissing):
        session.add_item(sku="SKU-NEW", qty=2)
    with pytest.raises(ValidationFailed):
        session.add_item(sku="SKU-NEW", qty=2, new_product=ProductDraft(name="Lamp", category=""))

    item = session.add_item(sku="SKU-NEW", qty=2, new_product=ProductDraft(name="Lamp", category="home"))
    assert item.qty == 2
    product = CatalogService(db, OPERATOR).find_product("ACME", "SKU-NEW")
    assert product.attributes["is_temp"] is True


def test_delete_item_requires_confirmation(db):
    _catalog(db)
    package = _received(db, "TRK-DEL")
    session = CountingSession.load(db, OPERATOR, package.id)
    item = session.add_item(sku="SKU-A", qty=1)

    with pytest.raises(ConfirmationRequired):
        session.delete_item(item.id)
    session.delete_item(item.id, confirm=True)
    assert session.items == []
    assert db.scalar(select(func.count(models.Item.id))) == 0


def test_finish_adds_to_existing_inventory(db):
    _catalog(db)
    for tracking_no, qty in (("TRK-I1", 3), ("TRK-I2", 2)):
        package = _received(db, tracking_no)
        session = CountingSession.load(db, OPERATOR, package.id)
        session.add_item(sku="SKU-A", qty=qty)
        session.finish(location="A-01")

    record = db.get(models.InventoryRecord, "ACME_SKU-A_A-01")
    assert record.qty == 5


def test_finish_syncs_pre_advice(db):
    _catalog(db)
    order = _pre_advice(db, "TRK-SYNC", items=(("SKU-A", 5),))
    package = _received(db, "TRK-SYNC")
    session = CountingSession.load(db, OPERATOR, package.id)
    session.add_item(sku="SKU-A", qty=1)
    session.add_item(sku="SKU-A", qty=2)
    session.add_item(sku="SKU-B", qty=2)

    summary = session.finish(receipt="RC-1")

    assert summary["status"] == "WAIT_INSPECT"
    assert summary["location"] == "N/A"
    assert summary["items_count"] == 3
    assert summary["total_qty"] == 5

    db.refresh(order)
    assert order.status == "COUNTED"
    assert order.remark == "Receipt: RC-1"
    lines = {line.sku: line for line in order.items}
    assert lines["SKU-A"].expected_qty == 5
    assert lines["SKU-A"].received_qty == 3
    assert lines["SKU-B"].expected_qty == 0
    assert lines["SKU-B"].received_qty == 2

    db.refresh(package)
    assert package.status == "WAIT_INSPECT"
    assert package.receipt == "RC-1"
    assert package.counted_at is not None

    with pytest.raises(InvalidState):
        session.finish()


def test_receive_keeps_pre_advice_owner(db):
    _catalog(db)
    _pre_advice(db, "TRK-OWN")
    resolver = IntakeResolver(db, OPERATOR)

    with pytest.raises(ValidationFailed):
        resolver.receive(schemas.ReceiveRequest(tracking_no="TRK-OWN", client="BETA", carrier="UPS"))
    assert db.scalar(select(func.count(models.Package.id))) == 0

    package = resolver.receive(schemas.ReceiveRequest(tracking_no="TRK-OWN", carrier="UPS"))
    assert package.client == "ACME"


def test_same_sku_lines_in_one_package_add_up(db):
    _catalog(db)
    package = _received(db, "TRK-LINES")
    session = CountingSession.load(db, OPERATOR, package.id)
    session.add_item(sku="SKU-A", qty=3)
    session.add_item(sku="SKU-A", qty=2)

    summary = session.finish(location="X-01")

    assert summary["inventory"] == {"SKU-A@X-01": 5}
    assert db.get(models.InventoryRecord, "ACME_SKU-A_X-01").qty == 5


def test_recount_needs_confirmation_and_books_only_new_lines(db):
    _catalog(db)
    order = _pre_advice(db, "TRK-RE", items=(("SKU-A", 6),))
    package = _received(db, "TRK-RE")
    first = CountingSession.load(db, OPERATOR, package.id)
    first.add_item(sku="SKU-A", qty=4)
    first.finish(location="A-01")

    with pytest.raises(ConfirmationRequired):
        CountingSession.load(db, OPERATOR, package.id)

    again = CountingSession.load(db, OPERATOR, package.id, confirm=True)
    summary = again.finish(location="A-01")
    assert summary["items_count"] == 0
    assert db.get(models.InventoryRecord, "ACME_SKU-A_A-01").qty == 4

    package.status = "INSPECTED"
    db.commit()
    extra = CountingSession.load(db, OPERATOR, package.id, confirm=True)
    with pytest.raises(InvalidState):
        extra.delete_item(extra.items[0].id, confirm=True)
    extra.add_item(sku="SKU-A", qty=1)
    extra.finish(location="A-01")

    assert db.get(models.InventoryRecord, "ACME_SKU-A_A-01").qty == 5
    db.refresh(package)
    assert package.status == "INSPECTED"
    db.refresh(order)
    assert [(line.sku, line.received_qty) for line in order.items] == [("SKU-A", 5)]
