from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class LoginRequest(BaseModel):
    username: str
    password: str


class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)
    role: str = Field("operator", pattern="^(admin|operator|client)$")


class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    type: str = Field("client", pattern="^(client|carrier)$")
    default_location: str | None = None


class ProductCreate(BaseModel):
    client: str = ""
    sku: str = Field(..., min_length=1, max_length=64)
    name: str = ""
    category: str = ""
    attributes: dict | None = None


class ProductUpdate(BaseModel):
    name: str | None = None
    category: str | None = None
    attributes: dict | None = None


class InboundItemIn(BaseModel):
    sku: str
    qty: int = Field(..., ge=0)


class InboundCreate(BaseModel):
    client_id: str = ""
    inbound_type: str = Field("RETURN", pattern="^(RETURN|NEW|AFTER_SALES|BLIND)$")
    tracking_no: str | None = None
    expected_date: date | None = None
    remark: str | None = None
    items: list[InboundItemIn] = []


class ReceiveRequest(BaseModel):
    tracking_no: str
    client: str = ""
    carrier: str = ""
    type: str = Field("box", pattern="^(box|pallet)$")
    is_abnormal: int = Field(0, ge=0, le=1)
    reason: str | None = None
    receipt: str | None = None


class ResolveRequest(BaseModel):
    tracking_no: str
    confirm: int = Field(0, ge=0, le=1)


class ProductDraftIn(BaseModel):
    name: str
    category: str


class CountItemCreate(BaseModel):
    sku: str | None = None
    lpn: str | None = None
    qty: int = Field(1, gt=0)
    remark: str | None = None
    return_type: str = Field("NEW", pattern="^(NEW|INSPECT)$")
    new_product: ProductDraftIn | None = None
    confirm: int = Field(0, ge=0, le=1)


class CountFinish(BaseModel):
    location: str | None = None
    receipt: str | None = None
    confirm: int = Field(0, ge=0, le=1)


class InspectionResultIn(BaseModel):
    item_id: int = Field(..., gt=0)
    status: str = Field("PASS", pattern="^(PASS|FAIL)$")
    grade: str | None = None
    faults: list[str] = []
    imei: str | None = None


class InspectionSubmit(BaseModel):
    standard: str = Field("general", pattern="^(apparel|electronics|general)$")
    confirm: int = Field(0, ge=0, le=1)
    results: list[InspectionResultIn] = []


class OutboundItemIn(BaseModel):
    sku: str
    qty: int = Field(..., gt=0)
    new_fnsku: str | None = None


class OutboundCreate(BaseModel):
    order_no: str = Field(..., min_length=1, max_length=64)
    client: str = ""
    carrier: str = ""
    remark: str | None = Field(default=None, max_length=500)
    service_type: str = Field("STANDARD", pattern="^(STANDARD|RELABEL)$")
    attachments: list[str] = []
    items: list[OutboundItemIn] = []


class OutboundBatchParse(BaseModel):
    client: str = ""
    text: str


class OutboundNext(BaseModel):
    material_type: str = "carton_m"
    material_qty: int = Field(1, ge=1)
    pallet_qty: int = Field(0, ge=0)
    label_count: int = Field(0, ge=0)


class FinanceRuleUpsert(BaseModel):
    id: int | None = Field(default=None, gt=0)
    name: str = Field(..., min_length=1, max_length=128)
    type: str = Field(..., min_length=1, max_length=32)
    condition: str | None = None
    price: Decimal = Field(..., ge=0)
    unit: str = Field("per_item", pattern="^(per_item|per_order|per_carton|per_pallet)$")
    client_id: str | None = None


class TopUp(BaseModel):
    client_id: str = ""
    amount: Decimal = Field(..., gt=0)


# ---------- responses ----------
class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ClientOut(ORMModel):
    id: int
    name: str
    type: str
    default_location: str | None = None


class ProductOut(ORMModel):
    id: int
    client: str
    sku: str
    name: str
    category: str
    attributes: dict | None = None


class InboundItemOut(ORMModel):
    id: int
    sku: str
    expected_qty: int
    received_qty: int
    passed_qty: int
    failed_qty: int


class InboundOrderOut(ORMModel):
    id: int
    order_no: str
    client_id: str
    inbound_type: str
    tracking_no: str | None = None
    status: str
    expected_date: date | None = None
    remark: str | None = None
    carrier: str | None = None
    created_by: str | None = None
    created_at: datetime


class PackageOut(ORMModel):
    id: int
    tracking_no: str
    client: str
    carrier: str
    type: str
    status: str
    location: str | None = None
    inbound_order_id: int | None = None
    receipt: str | None = None
    is_abnormal: bool
    reason: str | None = None
    counted_at: datetime | None = None
    created_at: datetime


class ItemOut(ORMModel):
    id: int
    package_id: int
    tracking_no: str
    sku: str
    lpn: str | None = None
    qty: int
    remark: str | None = None
    return_type: str
    counted: bool = False


class InspectionOut(ORMModel):
    id: int
    target_item_id: int
    status: str
    grade: str | None = None
    faults: list | None = None
    imei: str | None = None
    inspector: str | None = None
    inspected_at: datetime


class IntakeOut(BaseModel):
    package: PackageOut
    order: InboundOrderOut | None = None
    items: list[ItemOut] = []
    default_location: str | None = None
    recovered: bool = False


class InventoryOut(ORMModel):
    id: str
    client: str
    sku: str
    location: str
    qty: int
    updated_at: datetime


class OutboundItemOut(ORMModel):
    id: int
    sku: str
    qty: int
    new_fnsku: str | None = None


class OutboundOrderOut(ORMModel):
    id: int
    order_no: str
    client: str
    carrier: str
    status: str
    service_type: str
    remark: str | None = None
    attachments: list | None = None
    created_at: datetime
    shipped_at: datetime | None = None
    items: list[OutboundItemOut] = []


class FinanceRuleOut(ORMModel):
    id: int
    name: str
    type: str
    condition: str | None = None
    price: Decimal
    unit: str
    client_id: str | None = None


class FinanceAccountOut(ORMModel):
    client_id: str
    client_name: str | None = None
    balance: Decimal
    credit_limit: Decimal
    currency: str
    status: str
    updated_at: datetime


class FinanceTransactionOut(ORMModel):
    id: int
    client_id: str
    type: str
    amount: Decimal
    balance_after: Decimal
    description: str | None = None
    reference_id: str | None = None
    operator: str | None = None
    created_at: datetime


class OperationLogOut(ORMModel):
    id: int
    target_table: str
    target_id: str | None = None
    action: str
    operator: str | None = None
    details: str | None = None
    created_at: datetime
