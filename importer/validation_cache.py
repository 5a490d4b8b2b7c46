"""
Validation cache - riferimenti per tenant con TTL ed eviction LFU/LRU.

Evita lookup ripetuti dei dati di riferimento (prodotti, fornitori) durante
la validazione di un import. Condivisa tra batch dello stesso job e tra job
dello stesso tenant: tutte le mutazioni passano da un unico asyncio.Lock.
"""
import asyncio
import contextlib
import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.errors import CachePopulationError
from importer.interfaces import ReferenceSource

logger = logging.getLogger(__name__)

LookupMap = Dict[str, Dict[str, Any]]

# Chiavi codice indicizzate oltre al nome, per tipo entità
CODE_KEYS: Dict[str, tuple] = {
    "products": ("sku", "barcode"),
    "suppliers": ("email",),
}

EVICTION_RATIO = 0.2


@dataclass
class CacheEntry:
    key: str
    data: LookupMap
    timestamp: float
    ttl: float
    size: int
    access_count: int = 0
    last_access: float = field(default=0.0)

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


def build_lookup_map(records: List[Dict[str, Any]], entity_kind: str) -> LookupMap:
    """
    Indicizza i record per nome (lowercase), codici esterni e id numerico.
    
    Args:
        records: Record restituiti dalla sorgente dati
        entity_kind: products, suppliers, ...
    
    Returns:
        Dict lookup_key → record
    """
    lookup: LookupMap = {}
    code_keys = CODE_KEYS.get(entity_kind, ())
    for record in records:
        name = record.get("name")
        if name:
            lookup[str(name).strip().lower()] = record
        for code_key in code_keys:
            code = record.get(code_key)
            if code:
                code = str(code).strip()
                lookup[code.lower() if code_key == "email" else code] = record
        if record.get("id") is not None:
            lookup[f"id:{record['id']}"] = record
    return lookup


def _estimate_size(data: LookupMap) -> int:
    try:
        return len(json.dumps(data, default=str))
    except (TypeError, ValueError):
        return len(data) * 256


class ValidationCache:
    """
    Cache tenant-scoped dei dati di riferimento.
    
    Una entry non viene mai restituita se now - timestamp > ttl.
    Se il numero di entry supera max_entries vengono rimosse le entry in
    eccesso; se la memoria stimata supera max_memory_bytes viene rimosso
    il 20% meno usato (access_count crescente, poi timestamp crescente).
    """

    def __init__(
        self,
        source: ReferenceSource,
        ttl_seconds: float = 1800,
        max_entries: int = 100,
        max_memory_bytes: int = 50 * 1024 * 1024,
        cleanup_interval_seconds: float = 300,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.max_memory_bytes = max_memory_bytes
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.enabled = enabled
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._population_locks: Dict[str, asyncio.Lock] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_config(cls, source: ReferenceSource, config) -> "ValidationCache":
        return cls(
            source,
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
            max_memory_bytes=int(config.cache_max_memory_mb * 1024 * 1024),
            cleanup_interval_seconds=config.cache_cleanup_interval_seconds,
            enabled=config.cache_enabled,
        )

    @staticmethod
    def make_key(tenant_id: Any, entity_kind: str) -> str:
        return f"{entity_kind}:{tenant_id}"

    def _lookup(self, key: str) -> Optional[LookupMap]:
        """Entry valida per key (chiamare con self._lock acquisito)."""
        entry = self._entries.get(key)
        if entry is None or not self.enabled:
            return None
        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            logger.debug(f"[CACHE] Entry scaduta rimossa: {key}")
            return None
        entry.access_count += 1
        entry.last_access = now
        self._hits += 1
        return entry.data

    async def get(self, tenant_id: Any, entity_kind: str) -> LookupMap:
        """
        Ritorna la lookup map per tenant/tipo, caricandola se mancante o scaduta.
        
        Il caricamento avviene sotto un lock per key: richieste concorrenti
        sulla stessa key attendono un solo fetch, le altre key restano servite.
        
        Raises:
            CachePopulationError: se la sorgente dati fallisce
        """
        key = self.make_key(tenant_id, entity_kind)
        async with self._lock:
            data = self._lookup(key)
            if data is not None:
                return data
            population_lock = self._population_locks.setdefault(key, asyncio.Lock())

        async with population_lock:
            async with self._lock:
                data = self._lookup(key)
                if data is not None:
                    return data
                self._misses += 1

            try:
                records = await self._source.fetch_references(tenant_id, entity_kind)
            except Exception as e:
                logger.error(f"[CACHE] Errore caricamento {key}: {e}", exc_info=True)
                raise CachePopulationError(tenant_id, entity_kind, e) from e

            data = build_lookup_map(records or [], entity_kind)
            if self.enabled:
                async with self._lock:
                    self._insert(key, data, self._clock())
            logger.debug(f"[CACHE] Miss {key}: {len(records or [])} record caricati")
            return data

    async def put(self, tenant_id: Any, entity_kind: str, records: List[Dict[str, Any]]) -> None:
        """Inserisce direttamente una lookup map (warm-up)."""
        key = self.make_key(tenant_id, entity_kind)
        async with self._lock:
            self._insert(key, build_lookup_map(records, entity_kind), self._clock())

    def _insert(self, key: str, data: LookupMap, now: float) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            data=data,
            timestamp=now,
            ttl=self.ttl_seconds,
            size=_estimate_size(data),
            last_access=now,
        )
        self._enforce_limits(protect=key)

    def _eviction_order(self, protect: Optional[str] = None) -> List[CacheEntry]:
        candidates = [e for e in self._entries.values() if e.key != protect]
        return sorted(candidates, key=lambda e: (e.access_count, e.timestamp))

    def _evict(self, entries: List[CacheEntry]) -> int:
        for entry in entries:
            self._entries.pop(entry.key, None)
        self._evictions += len(entries)
        if entries:
            logger.info(f"[CACHE] Evicted {len(entries)} entry: {[e.key for e in entries]}")
        return len(entries)

    def _enforce_limits(self, protect: Optional[str] = None) -> int:
        evicted = 0
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            evicted += self._evict(self._eviction_order(protect)[:overflow])

        while self.memory_usage() > self.max_memory_bytes:
            order = self._eviction_order(protect)
            if not order:
                break
            count = max(1, math.floor(len(self._entries) * EVICTION_RATIO))
            evicted += self._evict(order[:count])
        return evicted

    async def invalidate(self, tenant_id: Any, entity_kind: Optional[str] = None) -> int:
        """
        Rimuove uno o tutti i tipi entità di un tenant.
        
        Returns:
            Numero entry rimosse
        """
        async with self._lock:
            if entity_kind is not None:
                keys = [self.make_key(tenant_id, entity_kind)]
            else:
                suffix = f":{tenant_id}"
                keys = [k for k in self._entries if k.endswith(suffix)]
            removed = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        if removed:
            logger.info(f"[CACHE] Invalidate tenant={tenant_id} kind={entity_kind or '*'}: {removed} entry")
        return removed

    async def sweep(self) -> int:
        """Rimuove tutte le entry scadute."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"[CACHE] Sweep: {len(expired)} entry scadute rimosse")
        return len(expired)

    async def optimize(self) -> int:
        """
        Libera memoria: sweep delle scadute e, se oltre l'80% dei limiti,
        eviction del 20% meno usato.
        """
        removed = await self.sweep()
        async with self._lock:
            over_entries = len(self._entries) > self.max_entries * 0.8
            over_memory = self.memory_usage() > self.max_memory_bytes * 0.8
            if (over_entries or over_memory) and self._entries:
                count = max(1, math.floor(len(self._entries) * EVICTION_RATIO))
                removed += self._evict(self._eviction_order()[:count])
        logger.info(f"[CACHE] Optimize: {removed} entry rimosse")
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def memory_usage(self) -> int:
        return sum(e.size for e in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def hit_rate(self) -> float:
        lookups = self._hits + self._misses
        return self._hits / lookups if lookups else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "hit_rate": round(self.hit_rate(), 4),
            "entries": len(self._entries),
        }

    def health(self) -> Dict[str, Any]:
        """
        Stato di salute per il controllo di backpressure.
        
        Returns:
            Dict con status ('healthy', 'warning', 'critical'), hit_rate,
            memory_bytes, entries e lista issues
        """
        memory = self.memory_usage()
        memory_ratio = memory / self.max_memory_bytes if self.max_memory_bytes else 0.0
        entries_ratio = len(self._entries) / self.max_entries if self.max_entries else 0.0
        lookups = self._hits + self._misses
        hit_rate = self.hit_rate()

        issues: List[str] = []
        status = "healthy"
        if memory_ratio > 0.95 or entries_ratio > 0.95:
            status = "critical"
        elif memory_ratio > 0.8 or entries_ratio > 0.8:
            status = "warning"
        if memory_ratio > 0.8:
            issues.append(f"memoria cache al {memory_ratio:.0%}")
        if entries_ratio > 0.8:
            issues.append(f"entry cache al {entries_ratio:.0%}")
        if lookups >= 20 and hit_rate < 0.5:
            issues.append(f"hit rate basso ({hit_rate:.0%})")
            if status == "healthy":
                status = "warning"

        return {
            "status": status,
            "hit_rate": round(hit_rate, 4),
            "memory_bytes": memory,
            "memory_mb": round(memory / (1024 * 1024), 3),
            "entries": len(self._entries),
            "issues": issues,
        }

    def start_sweeper(self) -> None:
        """Avvia lo sweep periodico delle entry scadute (richiede event loop attivo)."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            await self.sweep()
