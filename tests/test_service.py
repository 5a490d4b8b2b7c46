"""
Test per ImportService: stato job, cancellazione, elenco e report errori.
"""
import asyncio

import pytest

from core.errors import JobNotFoundError, JobStateError
from importer.types import ImportJob, EntityType, ImportOptions, JobState
from tests.mocks import product_rows


async def _wait_registered(service, job_id):
    for _ in range(10000):
        if job_id in service.registry:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"job {job_id} mai registrato")


class TestStartImport:
    """Test per start_import."""

    @pytest.mark.asyncio
    async def test_summary_response(self, service):
        response = await service.start_import(1, 7, "products", product_rows(4))

        assert response["state"] == "COMPLETED"
        assert response["total_records"] == 4
        assert response["errors"] == 0
        assert response["validation_only"] is False
        assert response["job_id"]

    @pytest.mark.asyncio
    async def test_validation_only_includes_report(self, service):
        response = await service.start_import(
            1, 7, "products", product_rows(2), ImportOptions(validate_only=True)
        )

        assert response["job_id"] is None
        assert response["validation_only"] is True
        assert response["report"]["total_errors"] == 0
        assert "report" in response["corrections"]

    @pytest.mark.asyncio
    async def test_preallocated_job_id(self, service):
        response = await service.start_import(1, 7, "products", product_rows(1), ImportOptions(job_id="job-abc"))
        assert response["job_id"] == "job-abc"


class TestJobQueries:
    """Test per stato, progresso, elenco e report errori."""

    @pytest.mark.asyncio
    async def test_status_and_tenant_isolation(self, service):
        response = await service.start_import(1, 7, "products", product_rows(3))
        job_id = response["job_id"]

        job = await service.get_job_status(job_id, 1)
        assert job.state == JobState.COMPLETED
        assert job.succeeded == 3

        with pytest.raises(JobNotFoundError):
            await service.get_job_status(job_id, 2)
        with pytest.raises(JobNotFoundError):
            await service.get_job_status("inesistente", 1)

    @pytest.mark.asyncio
    async def test_detailed_progress_after_completion(self, service):
        response = await service.start_import(1, 7, "products", product_rows(3))

        progress = await service.get_detailed_progress(response["job_id"], 1)

        assert progress["progress"]["percentage"] == 100.0
        assert progress["progress"]["succeeded"] == 3
        assert progress["metrics"]["processed"] == 3
        assert progress["logs"][0]["message"] == "Importazione avviata"
        assert progress["summary"]["efficiency"] == 1.0
        assert progress["summary"]["estimated_seconds"] == 1

    @pytest.mark.asyncio
    async def test_list_jobs(self, service):
        for i in range(3):
            await service.start_import(1, 7, "suppliers", [{"name": f"Fornitore {i}"}])
        await service.start_import(2, 8, "products", product_rows(1))

        listing = await service.list_jobs(1, limit=2)

        assert listing["total"] == 3
        assert len(listing["jobs"]) == 2
        assert all(job["tenant_id"] == 1 for job in listing["jobs"])

    @pytest.mark.asyncio
    async def test_error_report(self, service):
        response = await service.start_import(1, 7, "products", product_rows(10, negative_price_rows=(4,)))

        report = await service.get_error_report(response["job_id"], 1)

        assert report["total_errors"] == 1
        assert report["errors"][0]["row"] == 6
        assert report["errors"][0]["column"] == "sale_price"
        assert report["summary"]["rows_affected"] == 1


class TestCancel:
    """Test per cancel_job."""

    @pytest.mark.asyncio
    async def test_cancel_terminal_job(self, service):
        response = await service.start_import(1, 7, "products", product_rows(1))

        with pytest.raises(JobStateError):
            await service.cancel_job(response["job_id"], 1)

    @pytest.mark.asyncio
    async def test_cancel_other_tenant(self, service):
        response = await service.start_import(1, 7, "products", product_rows(1))

        with pytest.raises(JobNotFoundError):
            await service.cancel_job(response["job_id"], 99)

    @pytest.mark.asyncio
    async def test_cancel_pending_job_in_store(self, service, job_store):
        job = ImportJob(id="job-pending", tenant_id=1, user_id=7, entity_type=EntityType.PRODUCTS, total_records=10)
        await job_store.submit(job)

        await service.cancel_job("job-pending", 1)

        stored = await job_store.get("job-pending")
        assert stored.state == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, service, inventory_store):
        """Test cancellazione durante l'elaborazione: i batch in volo terminano, nessun altro parte."""
        gate = asyncio.Event()
        original = inventory_store.create_product

        async def gated_create(tenant_id, data):
            await gate.wait()
            return await original(tenant_id, data)

        inventory_store.create_product = gated_create
        rows = product_rows(1001)
        task = asyncio.create_task(
            service.start_import(1, 7, "products", rows, ImportOptions(job_id="job-run"))
        )
        await _wait_registered(service, "job-run")

        running = await service.get_job_status("job-run", 1)
        assert running.state == JobState.PROCESSING
        await service.cancel_job("job-run", 1)
        gate.set()
        response = await task

        assert response["state"] == "CANCELLED"
        job = await service.get_job_status("job-run", 1)
        assert job.state == JobState.CANCELLED
        assert job.processed < 1001
        assert job.succeeded == job.processed
        assert "job-run" not in service.registry


class TestLifecycle:
    """Test per start/stop dei task di background."""

    @pytest.mark.asyncio
    async def test_start_stop(self, service):
        await service.start()
        await service.stop()
        assert service.pipeline.cache._sweeper is None

    @pytest.mark.asyncio
    async def test_background_loop_drops_expired_jobs(self, service):
        """Test job terminati oltre la retention rimossi dal tracker mentre il servizio gira."""
        service.tracker.retention_seconds = 0
        service.tracker.flush_interval = 0.01
        job_ids = []
        for i in range(3):
            rows = [{"name": f"Producto lote {i}", "sku": f"LOTE-{i}"}]
            job_ids.append((await service.start_import(1, 7, "products", rows))["job_id"])
        assert all(service.tracker.is_tracked(job_id) for job_id in job_ids)

        await service.start()
        for _ in range(200):
            if not any(service.tracker.is_tracked(job_id) for job_id in job_ids):
                break
            await asyncio.sleep(0.01)
        await service.stop()

        assert not any(service.tracker.is_tracked(job_id) for job_id in job_ids)
