"""
Collaboratori esterni del motore (persistenza, job store, trasformazioni).

Il motore dipende solo da questi protocolli; le implementazioni SQLAlchemy
vivono in core/.
"""
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from importer.types import ImportJob

Record = Dict[str, Any]
Transformer = Callable[[Record], Record]


@runtime_checkable
class ReferenceSource(Protocol):
    """Sorgente dei dati di riferimento usati dalla validation cache."""

    async def fetch_references(self, tenant_id: int, entity_kind: str) -> List[Record]:
        ...


@runtime_checkable
class InventoryStore(ReferenceSource, Protocol):
    """Operazioni create/find/count per tenant (chiamate remote fallibili)."""

    async def find_product(
        self,
        tenant_id: int,
        name: Optional[str] = None,
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
    ) -> Optional[Record]:
        ...

    async def create_product(self, tenant_id: int, data: Record) -> Record:
        ...

    async def update_product(self, tenant_id: int, product_id: int, data: Record) -> Record:
        ...

    async def find_supplier(
        self,
        tenant_id: int,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Record]:
        ...

    async def create_supplier(self, tenant_id: int, data: Record) -> Record:
        ...

    async def update_supplier(self, tenant_id: int, supplier_id: int, data: Record) -> Record:
        ...

    async def create_movement(self, tenant_id: int, data: Record) -> Record:
        ...

    async def count(self, tenant_id: int, entity_kind: str) -> int:
        ...


@runtime_checkable
class JobStore(Protocol):
    """Job store esterno a cui il motore consegna i job finalizzati."""

    async def submit(self, job: ImportJob) -> str:
        ...

    async def get(self, job_id: str) -> Optional[ImportJob]:
        ...

    async def cancel(self, job_id: str) -> bool:
        ...

    async def list(self, tenant_id: int, limit: int = 50, offset: int = 0) -> List[ImportJob]:
        ...

    async def count(self, tenant_id: int) -> int:
        ...
