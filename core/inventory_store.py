"""
Inventory store SQLAlchemy - persistenza prodotti, fornitori e movimenti.

Implementa il protocollo InventoryStore usato dal motore. Ogni operazione
apre una sessione dedicata; in caso di errore rollback e rilancio.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import MovementRecord, ProductRecord, SupplierRecord
from core.errors import DuplicateRecordError

logger = logging.getLogger(__name__)

_PRODUCT_FIELDS = (
    "name", "sku", "barcode", "description", "category", "unit",
    "stock", "min_stock", "purchase_price", "sale_price", "tags", "auto_created",
)
_SUPPLIER_FIELDS = ("name", "email", "phone", "address", "city", "contact", "tags", "auto_created")
_MODELS = {
    "products": ProductRecord,
    "suppliers": SupplierRecord,
    "movements": MovementRecord,
}


def _clean(data: Dict[str, Any], fields) -> Dict[str, Any]:
    clean = {k: v for k, v in data.items() if k in fields and v is not None}
    if isinstance(clean.get("tags"), (list, tuple)):
        clean["tags"] = ",".join(clean["tags"])
    return clean


def product_to_dict(p: ProductRecord) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "sku": p.sku,
        "barcode": p.barcode,
        "description": p.description,
        "category": p.category,
        "unit": p.unit,
        "stock": p.stock or 0,
        "min_stock": p.min_stock or 0,
        "purchase_price": p.purchase_price,
        "sale_price": p.sale_price,
        "tags": p.tags.split(",") if p.tags else [],
        "auto_created": bool(p.auto_created),
    }


def supplier_to_dict(s: SupplierRecord) -> Dict[str, Any]:
    return {
        "id": s.id,
        "name": s.name,
        "email": s.email,
        "phone": s.phone,
        "address": s.address,
        "city": s.city,
        "contact": s.contact,
        "tags": s.tags.split(",") if s.tags else [],
        "auto_created": bool(s.auto_created),
    }


def movement_to_dict(m: MovementRecord) -> Dict[str, Any]:
    return {
        "id": m.id,
        "product_id": m.product_id,
        "supplier_id": m.supplier_id,
        "type": m.type,
        "quantity": m.quantity,
        "date": m.movement_date,
        "unit_price": m.unit_price,
        "reason": m.reason,
        "reference": m.reference,
        "notes": m.notes,
    }


class SqlAlchemyInventoryStore:
    """Store tenant-scoped per le entità di inventario."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def fetch_references(self, tenant_id: int, entity_kind: str) -> List[Dict[str, Any]]:
        """Snapshot dei riferimenti per la validation cache."""
        async with self.session_factory() as session:
            if entity_kind == "products":
                result = await session.execute(select(ProductRecord).where(ProductRecord.tenant_id == tenant_id))
                return [product_to_dict(p) for p in result.scalars().all()]
            if entity_kind == "suppliers":
                result = await session.execute(select(SupplierRecord).where(SupplierRecord.tenant_id == tenant_id))
                return [supplier_to_dict(s) for s in result.scalars().all()]
        raise ValueError(f"Tipo riferimento non supportato: {entity_kind}")

    async def find_product(
        self,
        tenant_id: int,
        name: Optional[str] = None,
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        conditions = []
        if name:
            conditions.append(func.lower(ProductRecord.name) == name.strip().lower())
        if sku:
            conditions.append(ProductRecord.sku == sku.strip())
        if barcode:
            conditions.append(ProductRecord.barcode == barcode.strip())
        if not conditions:
            return None
        async with self.session_factory() as session:
            stmt = (
                select(ProductRecord)
                .where(ProductRecord.tenant_id == tenant_id, or_(*conditions))
                .order_by(ProductRecord.id)
                .limit(1)
            )
            result = await session.execute(stmt)
            product = result.scalar_one_or_none()
            return product_to_dict(product) if product else None

    async def create_product(self, tenant_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            product = ProductRecord(tenant_id=tenant_id, **_clean(data, _PRODUCT_FIELDS))
            await self._add(session, product, f"prodotto {data.get('name')}")
            return product_to_dict(product)

    async def update_product(self, tenant_id: int, product_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            product = await self._get(session, ProductRecord, tenant_id, product_id)
            for key, value in _clean(data, _PRODUCT_FIELDS).items():
                setattr(product, key, value)
            await self._commit(session, f"prodotto {product_id}")
            return product_to_dict(product)

    async def find_supplier(
        self,
        tenant_id: int,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        conditions = []
        if name:
            conditions.append(func.lower(SupplierRecord.name) == name.strip().lower())
        if email:
            conditions.append(func.lower(SupplierRecord.email) == email.strip().lower())
        if not conditions:
            return None
        async with self.session_factory() as session:
            stmt = (
                select(SupplierRecord)
                .where(SupplierRecord.tenant_id == tenant_id, or_(*conditions))
                .order_by(SupplierRecord.id)
                .limit(1)
            )
            result = await session.execute(stmt)
            supplier = result.scalar_one_or_none()
            return supplier_to_dict(supplier) if supplier else None

    async def create_supplier(self, tenant_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            supplier = SupplierRecord(tenant_id=tenant_id, **_clean(data, _SUPPLIER_FIELDS))
            await self._add(session, supplier, f"fornitore {data.get('name')}")
            return supplier_to_dict(supplier)

    async def update_supplier(self, tenant_id: int, supplier_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            supplier = await self._get(session, SupplierRecord, tenant_id, supplier_id)
            for key, value in _clean(data, _SUPPLIER_FIELDS).items():
                setattr(supplier, key, value)
            await self._commit(session, f"fornitore {supplier_id}")
            return supplier_to_dict(supplier)

    async def create_movement(self, tenant_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """Registra il movimento e aggiorna lo stock del prodotto nella stessa transazione."""
        async with self.session_factory() as session:
            product = await self._get(session, ProductRecord, tenant_id, data["product_id"])
            quantity = int(data["quantity"])
            delta = quantity if data["type"] == "ENTRADA" else -quantity
            product.stock = (product.stock or 0) + delta
            movement = MovementRecord(
                tenant_id=tenant_id,
                product_id=product.id,
                supplier_id=data.get("supplier_id"),
                type=data["type"],
                quantity=quantity,
                movement_date=data.get("date"),
                unit_price=data.get("unit_price"),
                reason=data.get("reason"),
                reference=data.get("reference"),
                notes=data.get("notes"),
            )
            await self._add(session, movement, f"movimento {data['type']} per prodotto {product.id}")
            return movement_to_dict(movement)

    async def count(self, tenant_id: int, entity_kind: str) -> int:
        model = _MODELS.get(entity_kind)
        if model is None:
            raise ValueError(f"Tipo entità non supportato: {entity_kind}")
        async with self.session_factory() as session:
            result = await session.execute(select(func.count(model.id)).where(model.tenant_id == tenant_id))
            return int(result.scalar_one())

    @staticmethod
    async def _get(session: AsyncSession, model, tenant_id: int, record_id: int):
        stmt = select(model).where(model.tenant_id == tenant_id, model.id == record_id)
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            raise LookupError(f"{model.__tablename__} {record_id} non trovato per tenant {tenant_id}")
        return record

    async def _add(self, session: AsyncSession, record, label: str) -> None:
        session.add(record)
        await self._commit(session, label)
        await session.refresh(record)

    @staticmethod
    async def _commit(session: AsyncSession, label: str) -> None:
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            logger.warning(f"[INVENTORY_STORE] Vincolo di unicità violato per {label}: {e.orig}")
            raise DuplicateRecordError(f"Record duplicato: {label}") from e
        except Exception as e:
            logger.error(f"[INVENTORY_STORE] Errore salvataggio {label}: {e}", exc_info=True)
            await session.rollback()
            raise
