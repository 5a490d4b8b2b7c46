"""
Motore di importazione inventario (prodotti, fornitori, movimenti).

Questo modulo contiene:
- Validation cache (riferimenti per tenant con TTL/LRU)
- Error handler (tassonomia, severità, policy di continuazione)
- Autocorrezione e smart resolver (correzioni con confidenza)
- Batch processor (concorrenza limitata, retry, backpressure)
- Tracker progresso/log per job
- Pipeline orchestratore e servizio esposto
"""
