import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .. import models
from ..config import settings
from ..errors import NotFound, ValidationFailed
from .audit import add_operation_log
from .base import Service, atomic

logger = logging.getLogger(__name__)


class CatalogService(Service):
    """Clients, carriers and the per-client product catalog."""

    # ---------- clients ----------
    def list_clients(self, client_type: str | None = None) -> list[models.Client]:
        stmt = select(models.Client).order_by(models.Client.name)
        if client_type:
            stmt = stmt.where(models.Client.type == client_type)
        return list(self.db.scalars(stmt).all())

    def create_client(self, name: str, client_type: str = "client", default_location: str | None = None) -> models.Client:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("名称不能为空")
        client = models.Client(name=name, type=client_type, default_location=default_location or None)
        try:
            with atomic(self.db):
                self.db.add(client)
                self.db.flush()
                add_operation_log(self.db, "clients", client.id, "CREATE", self.user, {"name": name, "type": client_type})
        except IntegrityError:
            raise ValidationFailed(f"{name} 已存在")
        return client

    def delete_client(self, client_id: int) -> None:
        client = self.db.get(models.Client, client_id)
        if not client:
            raise NotFound("client not found")
        with atomic(self.db):
            self.db.delete(client)
            add_operation_log(self.db, "clients", client_id, "DELETE", self.user, {"name": client.name})

    def default_location(self, client_name: str | None) -> str | None:
        if not client_name:
            return None
        return self.db.scalar(select(models.Client.default_location).where(models.Client.name == client_name))

    # ---------- products ----------
    def find_product(self, client: str, sku: str) -> models.Product | None:
        return self.db.scalar(
            select(models.Product).where(models.Product.client == client).where(models.Product.sku == sku)
        )

    def missing_skus(self, client: str, skus: list[str]) -> list[str]:
        if not skus:
            return []
        known = set(
            self.db.scalars(
                select(models.Product.sku).where(models.Product.client == client).where(models.Product.sku.in_(skus))
            ).all()
        )
        return [s for s in dict.fromkeys(skus) if s not in known]

    def list_products(self, client: str | None = None) -> list[models.Product]:
        client = self.client_scope(client)
        stmt = select(models.Product).order_by(models.Product.created_at.desc(), models.Product.id.desc())
        if client:
            stmt = stmt.where(models.Product.client == client)
        return list(self.db.scalars(stmt).all())

    def new_product(
        self, client: str, sku: str, name: str = "", category: str = "", attributes: dict | None = None
    ) -> models.Product:
        """Add a product inside the caller's transaction (no commit)."""
        product = models.Product(client=client, sku=sku, name=name, category=category, attributes=attributes)
        self.db.add(product)
        self.db.flush()
        return product

    def create_product(self, client: str, sku: str, name: str = "", category: str = "", attributes: dict | None = None) -> models.Product:
        client = self.client_scope(client)
        sku = (sku or "").strip()
        if not client or not sku:
            raise ValidationFailed("货主和 SKU 不能为空")
        if self.find_product(client, sku):
            raise ValidationFailed(f"SKU {sku} 已存在")
        with atomic(self.db):
            product = self.new_product(client, sku, name, category, attributes)
            add_operation_log(self.db, "products", product.id, "CREATE", self.user, {"client": client, "sku": sku})
        return product

    def update_product(self, product_id: int, **fields) -> models.Product:
        product = self.db.get(models.Product, product_id)
        if not product:
            raise NotFound("product not found")
        self.client_scope(product.client)
        with atomic(self.db):
            for key, value in fields.items():
                if value is not None:
                    setattr(product, key, value)
        return product

    def delete_product(self, product_id: int) -> None:
        product = self.db.get(models.Product, product_id)
        if not product:
            raise NotFound("product not found")
        self.client_scope(product.client)
        with atomic(self.db):
            self.db.delete(product)
            add_operation_log(self.db, "products", product_id, "DELETE", self.user, {"sku": product.sku})

    def ensure_pending_qc(self, client: str) -> models.Product:
        """Placeholder SKU for LPN-tagged units whose real SKU is decided at inspection."""
        sku = settings.pending_qc_sku
        product = self.find_product(client, sku)
        if product:
            return product
        logger.info("creating %s placeholder for client %s", sku, client)
        return self.new_product(client, sku, "Pending QC Item", "Unsorted", {"is_pending": True})

    def register_temp_product(self, client: str, sku: str, name: str, category: str) -> models.Product:
        """Quick entry of an unforecasted SKU met during counting (no commit)."""
        if not name or not category:
            raise ValidationFailed("Name and Category are required")
        product = self.new_product(client, sku, name, category, {"is_temp": True, "created_via": "count"})
        add_operation_log(
            self.db,
            "products",
            sku,
            "CREATE_TEMP",
            self.user,
            {"sku": sku, "name": name, "category": category, "client": client},
        )
        return product
