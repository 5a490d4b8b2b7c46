"""
Test per logging strutturato e contesto import.
"""
import contextvars
import json
import logging

import colorlog
import pytest

from core.logger import (
    get_correlation_id,
    get_request_context,
    log_json,
    set_request_context,
    setup_colored_logging,
)
from tests.mocks import product_rows


class TestRequestContext:
    """Test per contesto tenant/job/correlation."""

    def test_context_values(self):
        def run():
            set_request_context(tenant_id=3, job_id="job-1", correlation_id="corr-1")
            return get_request_context(), get_correlation_id()

        context, correlation_id = contextvars.copy_context().run(run)

        assert context == {"tenant_id": 3, "job_id": "job-1", "correlation_id": "corr-1"}
        assert correlation_id == "corr-1"

    def test_correlation_id_generated(self):
        def run():
            set_request_context(tenant_id=3)
            return get_correlation_id()

        assert contextvars.copy_context().run(run)

    @pytest.mark.asyncio
    async def test_start_import_returns_correlation_id(self, service):
        response = await service.start_import(1, 7, "products", product_rows(1))
        assert response["correlation_id"]


class TestLogJson:
    """Test per log_json."""

    def test_json_line_uses_context(self, caplog):
        def run():
            set_request_context(tenant_id=5, job_id="job-9", correlation_id="corr-9")
            log_json("warning", "Import parziale", stage="batch", rows_rejected=2, retry=1)

        with caplog.at_level(logging.INFO, logger="core.logger"):
            contextvars.copy_context().run(run)

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        data = json.loads(record.getMessage())
        assert data["message"] == "Import parziale"
        assert data["tenant_id"] == 5
        assert data["job_id"] == "job-9"
        assert data["correlation_id"] == "corr-9"
        assert data["stage"] == "batch"
        assert data["rows_rejected"] == 2
        assert data["retry"] == 1


class TestSetupColoredLogging:
    """Test per setup_colored_logging."""

    def test_installs_colored_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_colored_logging("importer", "debug")

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, colorlog.ColoredFormatter)
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
