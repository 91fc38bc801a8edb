from datetime import date, datetime, timedelta
import hashlib
import logging
import secrets
from contextvars import ContextVar
from fastapi import FastAPI, Depends, HTTPException, Query, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import select, delete
from sqlalchemy.exc import OperationalError
from .config import settings, configure_logging
from .db import SessionLocal
from .errors import WmsError
from .services import (
    BillingLedger,
    CatalogService,
    CountingSession,
    CurrentUser,
    InboundService,
    InspectionSession,
    IntakeResolver,
    InventoryService,
    OutboundService,
)
from .services.counting import ProductDraft
from .services.outbound import VasInput
from . import models, schemas

logger = logging.getLogger(__name__)

app = FastAPI(title="Parcel WMS")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)


@app.middleware("http")
async def trace_middleware(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id") or secrets.token_hex(8)
    trace_id_ctx.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(WmsError)
async def wms_error_handler(request: Request, exc: WmsError):
    logger.info("%s %s rejected [%s] %s trace=%s", request.method, request.url.path, exc.code, exc.message, trace_id_ctx.get())
    body = {"detail": exc.message, "code": exc.code, **exc.context}
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def get_current_user(
    db: Session = Depends(get_db),
    authorization: str | None = Header(default=None),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "missing token")
    token = authorization.replace("Bearer ", "", 1).strip()
    session = db.scalar(select(models.SessionToken).where(models.SessionToken.token == token))
    if not session or session.expires_at < datetime.utcnow():
        raise HTTPException(401, "invalid or expired token")
    user = db.get(models.AppUser, session.user_id)
    if not user or not user.is_active:
        raise HTTPException(401, "inactive user")
    return CurrentUser(username=user.username, role=user.role, id=user.id)


def require_role(*roles: str):
    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise HTTPException(403, "permission denied")
        return user

    return checker


require_staff = require_role("admin", "operator")
require_admin = require_role("admin")


def seed_admin(db: Session):
    admin = db.scalar(select(models.AppUser).where(models.AppUser.username == settings.admin_username))
    if admin:
        return
    salt = secrets.token_hex(4)
    db.add(
        models.AppUser(
            username=settings.admin_username,
            role="admin",
            salt=salt,
            password_hash=hash_password(settings.admin_password, salt),
            is_active=1,
        )
    )
    db.commit()


@app.on_event("startup")
def on_startup():
    configure_logging()
    with SessionLocal() as db:
        try:
            seed_admin(db)
        except OperationalError as exc:
            raise RuntimeError("数据库结构未初始化，请先执行 Alembic 迁移：alembic upgrade head") from exc


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------- auth ----------
@app.post("/auth/login")
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = db.scalar(select(models.AppUser).where(models.AppUser.username == payload.username))
    if not user or not user.is_active:
        raise HTTPException(401, "invalid credentials")
    if hash_password(payload.password, user.salt) != user.password_hash:
        raise HTTPException(401, "invalid credentials")

    token = secrets.token_urlsafe(32)
    expires = datetime.utcnow() + timedelta(hours=settings.token_ttl_hours)
    db.add(models.SessionToken(user_id=user.id, token=token, expires_at=expires))
    db.commit()
    return {"token": token, "user": {"id": user.id, "username": user.username, "role": user.role}}


@app.post("/auth/logout")
def logout(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    db.execute(delete(models.SessionToken).where(models.SessionToken.user_id == user.id))
    db.commit()
    return {"status": "ok"}


@app.get("/auth/me")
def me(user: CurrentUser = Depends(get_current_user)):
    return {"id": user.id, "username": user.username, "role": user.role}


@app.post("/users")
def create_user(payload: schemas.UserCreate, _: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    if db.scalar(select(models.AppUser.id).where(models.AppUser.username == payload.username)):
        raise HTTPException(400, "用户名已存在")
    salt = secrets.token_hex(4)
    user = models.AppUser(
        username=payload.username,
        role=payload.role,
        salt=salt,
        password_hash=hash_password(payload.password, salt),
        is_active=1,
    )
    db.add(user)
    if payload.role == "client" and not db.scalar(select(models.Client.id).where(models.Client.name == payload.username)):
        db.add(models.Client(name=payload.username, type="client"))
    db.commit()
    return {"id": user.id, "username": user.username, "role": user.role}


# ---------- catalog ----------
@app.get("/clients", response_model=list[schemas.ClientOut])
def list_clients(
    type: str | None = Query(default=None),
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return CatalogService(db, user).list_clients(type)


@app.post("/clients", response_model=schemas.ClientOut)
def create_client(payload: schemas.ClientCreate, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    return CatalogService(db, user).create_client(payload.name, payload.type, payload.default_location)


@app.delete("/clients/{client_id}")
def delete_client(client_id: int, user: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    CatalogService(db, user).delete_client(client_id)
    return {"status": "ok"}


@app.get("/products", response_model=list[schemas.ProductOut])
def list_products(
    client: str | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CatalogService(db, user).list_products(client)


@app.post("/products", response_model=schemas.ProductOut)
def create_product(payload: schemas.ProductCreate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return CatalogService(db, user).create_product(payload.client, payload.sku, payload.name, payload.category, payload.attributes)


@app.put("/products/{product_id}", response_model=schemas.ProductOut)
def update_product(
    product_id: int,
    payload: schemas.ProductUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CatalogService(db, user).update_product(product_id, **payload.model_dump())


@app.delete("/products/{product_id}")
def delete_product(product_id: int, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    CatalogService(db, user).delete_product(product_id)
    return {"status": "ok"}


# ---------- inbound pre-advice ----------
@app.get("/inbounds", response_model=list[schemas.InboundOrderOut])
def list_inbounds(
    search: str | None = Query(default=None),
    status: str | None = Query(default=None),
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return InboundService(db, user).list_orders(search, status, start, end)


@app.post("/inbounds", response_model=schemas.InboundOrderOut)
def create_inbound(payload: schemas.InboundCreate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return InboundService(db, user).create(payload)


@app.put("/inbounds/{order_id}", response_model=schemas.InboundOrderOut)
def update_inbound(
    order_id: int,
    payload: schemas.InboundCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return InboundService(db, user).update(order_id, payload)


@app.delete("/inbounds/{order_id}")
def delete_inbound(order_id: int, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    InboundService(db, user).delete(order_id)
    return {"status": "ok"}


@app.get("/inbounds/{order_id}")
def inbound_detail(order_id: int, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    detail = InboundService(db, user).detail(order_id)
    return {
        "order": schemas.InboundOrderOut.model_validate(detail["order"]),
        "items": detail["items"],
        "packages": [
            {
                "package": schemas.PackageOut.model_validate(row["package"]),
                "items": [schemas.ItemOut.model_validate(i) for i in row["items"]],
                "inspections": [schemas.InspectionOut.model_validate(i) for i in row["inspections"]],
            }
            for row in detail["packages"]
        ],
        "history": detail["history"],
    }


# ---------- receiving ----------
@app.get("/receive/lookup")
def receive_lookup(tracking_no: str = Query(...), user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    order = IntakeResolver(db, user).lookup_pre_advice(tracking_no)
    return {
        "matched": order is not None,
        "order": schemas.InboundOrderOut.model_validate(order) if order else None,
    }


@app.post("/receive", response_model=schemas.PackageOut)
def receive_package(payload: schemas.ReceiveRequest, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    return IntakeResolver(db, user).receive(payload)


# ---------- counting ----------
@app.post("/count/resolve", response_model=schemas.IntakeOut)
def count_resolve(payload: schemas.ResolveRequest, user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    result = IntakeResolver(db, user).resolve(payload.tracking_no, confirm=bool(payload.confirm))
    return schemas.IntakeOut.model_validate(result, from_attributes=True)


@app.post("/count/{package_id}/items", response_model=schemas.ItemOut)
def count_add_item(
    package_id: int,
    payload: schemas.CountItemCreate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    session = CountingSession.load(db, user, package_id, confirm=bool(payload.confirm))
    draft = ProductDraft(payload.new_product.name, payload.new_product.category) if payload.new_product else None
    return session.add_item(payload.sku, payload.lpn, payload.qty, payload.remark, payload.return_type, draft)


@app.delete("/count/{package_id}/items/{item_id}")
def count_delete_item(
    package_id: int,
    item_id: int,
    confirm: int = Query(default=0, ge=0, le=1),
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    CountingSession.load(db, user, package_id, confirm=bool(confirm)).delete_item(item_id, confirm=bool(confirm))
    return {"status": "ok"}


@app.post("/count/{package_id}/finish")
def count_finish(
    package_id: int,
    payload: schemas.CountFinish,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return CountingSession.load(db, user, package_id, confirm=bool(payload.confirm)).finish(payload.location, payload.receipt)


# ---------- inspection ----------
@app.get("/inspections/pending", response_model=list[schemas.PackageOut])
def inspection_pending(user: CurrentUser = Depends(require_staff), db: Session = Depends(get_db)):
    return InspectionSession(db, user).pending_packages()


@app.get("/inspections/{package_id}/estimate")
def inspection_estimate(
    package_id: int,
    standard: str = Query(default="general", pattern="^(apparel|electronics|general)$"),
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return {"package_id": package_id, "standard": standard, "fee": InspectionSession(db, user).estimate_fee(package_id, standard)}


@app.post("/inspections/{package_id}/submit")
def inspection_submit(
    package_id: int,
    payload: schemas.InspectionSubmit,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return InspectionSession(db, user).submit(package_id, payload.standard, bool(payload.confirm), payload.results)


# ---------- outbound ----------
@app.get("/outbounds", response_model=list[schemas.OutboundOrderOut])
def list_outbounds(
    status: str | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return OutboundService(db, user).list_orders(status)


@app.post("/outbounds", response_model=schemas.OutboundOrderOut)
def create_outbound(payload: schemas.OutboundCreate, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return OutboundService(db, user).create(payload)


@app.post("/outbounds/batch/parse")
def parse_outbound_batch(
    payload: schemas.OutboundBatchParse,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return OutboundService(db, user).parse_batch(payload.client, payload.text)


@app.get("/outbounds/{order_id}", response_model=schemas.OutboundOrderOut)
def get_outbound(order_id: int, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return OutboundService(db, user).get(order_id)


@app.post("/outbounds/{order_id}/next")
def outbound_next(
    order_id: int,
    payload: schemas.OutboundNext,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    vas = VasInput(payload.material_type, payload.material_qty, payload.pallet_qty, payload.label_count)
    return OutboundService(db, user).advance(order_id, vas)


# ---------- inventory ----------
@app.get("/inventory", response_model=list[schemas.InventoryOut])
def list_inventory(
    client: str | None = Query(default=None),
    sku: str | None = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return InventoryService(db, user).list_records(client, sku)


# ---------- finance ----------
@app.get("/finance/rules", response_model=list[schemas.FinanceRuleOut])
def list_finance_rules(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return BillingLedger(db, user).list_rules()


@app.post("/finance/rules", response_model=schemas.FinanceRuleOut)
def upsert_finance_rule(payload: schemas.FinanceRuleUpsert, user: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    fields = payload.model_dump(exclude={"id"})
    return BillingLedger(db, user).upsert_rule(payload.id, **fields)


@app.delete("/finance/rules/{rule_id}")
def delete_finance_rule(rule_id: int, user: CurrentUser = Depends(require_admin), db: Session = Depends(get_db)):
    BillingLedger(db, user).delete_rule(rule_id)
    return {"status": "ok"}


@app.post("/finance/topup", response_model=schemas.FinanceTransactionOut)
def finance_topup(payload: schemas.TopUp, user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    return BillingLedger(db, user).top_up(payload.client_id, payload.amount)


@app.get("/finance/dashboard")
def finance_dashboard(user: CurrentUser = Depends(get_current_user), db: Session = Depends(get_db)):
    data = BillingLedger(db, user).dashboard()
    return {
        "wallets": [schemas.FinanceAccountOut.model_validate(w) for w in data["wallets"]],
        "transactions": [schemas.FinanceTransactionOut.model_validate(t) for t in data["transactions"]],
        "stats": data["stats"],
    }


# ---------- audit ----------
@app.get("/operation_logs", response_model=list[schemas.OperationLogOut])
def list_operation_logs(
    target_table: str | None = Query(default=None),
    target_id: str | None = Query(default=None),
    _: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db),
):
    stmt = select(models.OperationLog).order_by(models.OperationLog.id.desc())
    if target_table:
        stmt = stmt.where(models.OperationLog.target_table == target_table)
    if target_id:
        stmt = stmt.where(models.OperationLog.target_id == target_id)
    return db.scalars(stmt).all()
