"""
Database core module per inventory-importer.

Modelli SQLAlchemy (job di importazione, prodotti, fornitori, movimenti)
e factory per engine/sessioni async.
"""
import logging
from datetime import datetime
from typing import Tuple

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, Boolean, UniqueConstraint
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Base per i modelli
Base = declarative_base()


class ImportJobRecord(Base):
    """Job di importazione finalizzato"""
    __tablename__ = 'import_jobs'
    
    id = Column(Integer, primary_key=True)
    job_id = Column(String(50), unique=True, nullable=False, index=True)
    
    tenant_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    source_file = Column(String(255))
    
    # Stato elaborazione
    status = Column(String(20), nullable=False, default='PENDING')
    
    # Progress
    total_records = Column(Integer, default=0)
    processed = Column(Integer, default=0)
    succeeded = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    
    # Payload JSON (testo)
    errors_data = Column(Text)
    row_details_data = Column(Text)
    options_data = Column(Text)
    message = Column(Text)
    
    # Metadati
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)


class ProductRecord(Base):
    """Prodotto di inventario per tenant"""
    __tablename__ = 'products'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'sku', name='uq_products_tenant_sku'),
    )
    
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False, index=True)
    sku = Column(String(100))
    barcode = Column(String(100))
    description = Column(Text)
    category = Column(String(100))
    unit = Column(String(50), default='unidad')
    stock = Column(Integer, default=0)
    min_stock = Column(Integer, default=0)
    purchase_price = Column(Float, default=0.0)
    sale_price = Column(Float, default=0.0)
    tags = Column(String(255))
    auto_created = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SupplierRecord(Base):
    """Fornitore per tenant"""
    __tablename__ = 'suppliers'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'email', name='uq_suppliers_tenant_email'),
    )
    
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(String(200), nullable=False, index=True)
    email = Column(String(200))
    phone = Column(String(50))
    address = Column(String(255))
    city = Column(String(100))
    contact = Column(String(100))
    tags = Column(String(255))
    auto_created = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MovementRecord(Base):
    """Movimento di inventario (ENTRADA/SALIDA)"""
    __tablename__ = 'movements'
    
    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey('products.id'), nullable=False, index=True)
    supplier_id = Column(Integer, ForeignKey('suppliers.id'))
    type = Column(String(10), nullable=False)
    quantity = Column(Integer, nullable=False)
    movement_date = Column(String(10))
    unit_price = Column(Float)
    reason = Column(String(255))
    reference = Column(String(100))
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


def create_engine_and_session(database_url: str, echo: bool = False) -> Tuple[AsyncEngine, sessionmaker]:
    """
    Crea engine async e session factory.
    
    Args:
        database_url: URL con driver async (es. sqlite+aiosqlite://, postgresql+asyncpg://)
        echo: Log SQL
    
    Returns:
        (engine, session_factory)
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    engine = create_async_engine(database_url, echo=echo)
    session_factory = sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
    return engine, session_factory


async def create_tables(engine: AsyncEngine) -> None:
    """Crea le tabelle se non esistono."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DATABASE] Tabelle verificate/create")
