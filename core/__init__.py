"""
Core functionality per inventory-importer.

Questo modulo contiene:
- Configurazione (config.py)
- Eccezioni (errors.py)
- Logging (logger.py)
- Database (database.py)
- Job store (job_manager.py)
- Inventory store (inventory_store.py)
"""
