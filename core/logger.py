"""
Logging strutturato per inventory-importer.

Unifica logging colorato e structured logging con supporto JSON.
"""
import logging
import json
import uuid
import sys
import contextvars
from typing import Optional, Dict, Any
from datetime import datetime

import colorlog

# Context variables per tracciare import in corso
_request_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar('request_context', default={})


def setup_colored_logging(service_name: str = "importer", level: str = "INFO"):
    """
    Configura logging colorato con colorlog.
    
    Args:
        service_name: Nome del servizio per identificare log
        level: Livello root logger
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)
    
    formatter = colorlog.ColoredFormatter(
        f'%(log_color)s[%(levelname)s]%(reset)s %(cyan)s{service_name}%(reset)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        reset=True,
        log_colors={
            'DEBUG': 'white',
            'INFO': 'blue',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        },
        secondary_log_colors={},
        style='%'
    )
    handler.setFormatter(formatter)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []
    root_logger.addHandler(handler)
    
    # Riduci verbosità driver database
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
    
    return root_logger


def set_request_context(
    tenant_id: Optional[int] = None,
    job_id: Optional[str] = None,
    correlation_id: Optional[str] = None
):
    """
    Imposta contesto import per logging strutturato.
    
    Args:
        tenant_id: ID tenant (azienda)
        job_id: ID job di importazione
        correlation_id: ID correlazione (genera se None)
    """
    if correlation_id is None:
        correlation_id = str(uuid.uuid4())
    
    context = {}
    if tenant_id is not None:
        context["tenant_id"] = tenant_id
    if job_id is not None:
        context["job_id"] = job_id
    context["correlation_id"] = correlation_id
    
    _request_context.set(context)


def get_request_context() -> Dict[str, Any]:
    """
    Recupera contesto corrente.
    
    Returns:
        Dict con tenant_id, job_id e correlation_id
    """
    return _request_context.get({})


def get_correlation_id() -> Optional[str]:
    """Recupera correlation ID dal contesto."""
    return get_request_context().get("correlation_id")


def log_json(
    level: str,
    message: str,
    tenant_id: Optional[int] = None,
    job_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    stage: Optional[str] = None,
    entity_type: Optional[str] = None,
    rows_total: Optional[int] = None,
    rows_valid: Optional[int] = None,
    rows_rejected: Optional[int] = None,
    elapsed_sec: Optional[float] = None,
    decision: Optional[str] = None,
    **extra
):
    """
    Log strutturato in formato JSON (una riga per evento).
    
    Args:
        level: 'info', 'warning', 'error', 'debug'
        message: Messaggio da loggare
        tenant_id: ID tenant (usa contesto se None)
        job_id: ID job (usa contesto se None)
        correlation_id: ID correlazione (usa contesto se None)
        stage: Stage pipeline (config, validation, analysis, batch, submit)
        entity_type: products, suppliers, movements
        rows_total: Numero totale righe
        rows_valid: Numero righe valide
        rows_rejected: Numero righe rifiutate
        elapsed_sec: Tempo elaborazione in secondi
        decision: Decisione pipeline (continue/stop/validate_only)
        **extra: Campi aggiuntivi
    """
    ctx = get_request_context()
    if tenant_id is None:
        tenant_id = ctx.get("tenant_id")
    if job_id is None:
        job_id = ctx.get("job_id")
    if correlation_id is None:
        correlation_id = ctx.get("correlation_id")
    
    log_data = {
        "timestamp": datetime.utcnow().isoformat(),
        "level": level.upper(),
        "message": message,
    }
    
    if correlation_id:
        log_data["correlation_id"] = correlation_id
    if tenant_id is not None:
        log_data["tenant_id"] = tenant_id
    if job_id:
        log_data["job_id"] = job_id
    if stage:
        log_data["stage"] = stage
    if entity_type:
        log_data["entity_type"] = entity_type
    
    # Metriche
    if rows_total is not None:
        log_data["rows_total"] = rows_total
    if rows_valid is not None:
        log_data["rows_valid"] = rows_valid
    if rows_rejected is not None:
        log_data["rows_rejected"] = rows_rejected
    if elapsed_sec is not None:
        log_data["elapsed_sec"] = elapsed_sec
    if decision:
        log_data["decision"] = decision
    
    log_data.update(extra)
    
    logger = logging.getLogger(__name__)
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(json.dumps(log_data, ensure_ascii=False, default=str))
