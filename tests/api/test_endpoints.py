"""
API endpoint tests
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

import api.main as api_main
from api.dependencies import get_db
from api.main import app, lifespan, watch_scheduler
from core.config import settings
from core.exceptions import ConnectivityExhaustedError, DatabaseError
from ingestion.scheduler import ETLScheduler
from models.base import BatchStatus, LockStatus, StageType
from models.batch_record import BatchRecord


@pytest_asyncio.fixture
async def client(session_maker):
    """HTTP client against the app with the test store injected"""
    app.dependency_overrides[get_db] = lambda: session_maker

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client

    app.dependency_overrides.clear()


async def add_batch(session_maker, stage_type, status, minutes_ago=0, **fields):
    record = BatchRecord(
        batch_key=uuid.uuid4(),
        stage_type=stage_type,
        status=status,
        start_time=datetime(2024, 1, 15, 12, 0) - timedelta(minutes=minutes_ago),
        lock_key=f"{stage_type.value}_data_lock",
        lock_status=LockStatus.UNLOCKED,
        **fields,
    )
    async with session_maker() as session:
        async with session.begin():
            session.add(record)
    return record


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["batches"] == "/batches"


@pytest.mark.asyncio
async def test_health_without_batches(client):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert [stage["stage_type"] for stage in data["stages"]] == ["extract", "transform"]
    assert all(stage["last_batch"] is None for stage in data["stages"])
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_health_degraded_when_a_stage_failed(client, session_maker):
    await add_batch(session_maker, StageType.EXTRACT, BatchStatus.SUCCESS)
    await add_batch(
        session_maker, StageType.TRANSFORM, BatchStatus.FAILED, error_detail="deadlock detected"
    )

    data = (await client.get("/health")).json()

    assert data["status"] == "degraded"
    transform = data["stages"][1]
    assert transform["last_batch"]["status"] == "failed"
    assert transform["last_batch"]["error_detail"] == "deadlock detected"


@pytest.mark.asyncio
async def test_health_unhealthy_when_every_stage_failed(client, session_maker):
    await add_batch(session_maker, StageType.EXTRACT, BatchStatus.FAILED)
    await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.FAILED)

    assert (await client.get("/health")).json()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_list_batches_newest_first(client, session_maker):
    older = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.SUCCESS, minutes_ago=10)
    newer = await add_batch(session_maker, StageType.EXTRACT, BatchStatus.RUNNING)
    await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.COMPLETED, minutes_ago=5)

    response = await client.get("/batches", params={"stage_type": "extract"})

    assert response.status_code == 200
    data = response.json()
    assert data["total_items"] == 2
    assert [item["batch_key"] for item in data["items"]] == [str(newer.batch_key), str(older.batch_key)]

    everything = (await client.get("/batches", params={"limit": 2})).json()
    assert everything["total_items"] == 2
    assert everything["stage_type"] is None


@pytest.mark.asyncio
async def test_list_batches_rejects_unknown_stage(client):
    response = await client.get("/batches", params={"stage_type": "load"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_last_batch_of_stage(client, session_maker):
    await add_batch(session_maker, StageType.TRANSFORM, BatchStatus.COMPLETED, minutes_ago=30)
    latest = await add_batch(
        session_maker, StageType.TRANSFORM, BatchStatus.PAUSED,
        processed_count=40, last_processed_position=139,
    )

    response = await client.get("/batches/transform/last")

    assert response.status_code == 200
    data = response.json()
    assert data["batch_key"] == str(latest.batch_key)
    assert data["status"] == "paused"
    assert data["processed_count"] == 40
    assert data["last_processed_position"] == 139
    assert data["end_time"] is None


@pytest.mark.asyncio
async def test_last_batch_not_found(client):
    response = await client.get("/batches/extract/last")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_pipeline_errors_become_error_responses(client):
    def broken_store():
        raise DatabaseError("store unavailable")

    app.dependency_overrides[get_db] = broken_store

    response = await client.get("/batches")

    assert response.status_code == 500
    assert response.json()["error"] == "DatabaseError"
    assert response.json()["detail"] == "store unavailable"


def unreachable_chain_scheduler():
    """Scheduler whose only stage cannot reach its RPC nodes"""
    runner = MagicMock()
    runner.run_once = AsyncMock(
        side_effect=ConnectivityExhaustedError("rpc down", attempts=10, last_error=OSError("refused"))
    )
    scheduler = ETLScheduler()
    scheduler.add_stage("extract", runner, interval_ms=60_000)
    return scheduler


@pytest.mark.asyncio
async def test_fatal_stage_error_terminates_the_api():
    scheduler = unreachable_chain_scheduler()
    on_fatal = MagicMock()
    watcher = asyncio.create_task(watch_scheduler(scheduler, on_fatal=on_fatal))

    await scheduler.run_stage_cycle("extract")
    await asyncio.wait_for(watcher, timeout=1)

    on_fatal.assert_called_once_with()


@pytest.mark.asyncio
async def test_regular_scheduler_stop_keeps_the_api_running():
    scheduler = ETLScheduler()
    on_fatal = MagicMock()
    watcher = asyncio.create_task(watch_scheduler(scheduler, on_fatal=on_fatal))

    scheduler.stop()
    await asyncio.wait_for(watcher, timeout=1)

    on_fatal.assert_not_called()


@pytest.mark.asyncio
async def test_lifespan_shuts_down_when_stage_loops_die(monkeypatch):
    scheduler = unreachable_chain_scheduler()
    terminated = asyncio.Event()
    monkeypatch.setattr(settings, "API_RUN_SCHEDULER", True)
    monkeypatch.setattr(api_main, "build_scheduler", lambda rpc_client: scheduler)
    monkeypatch.setattr(api_main, "terminate_process", terminated.set)

    async with lifespan(app):
        await asyncio.wait_for(terminated.wait(), timeout=5)

    assert isinstance(scheduler.fatal_error, ConnectivityExhaustedError)
    assert app.state.scheduler is scheduler
