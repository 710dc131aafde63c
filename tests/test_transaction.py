"""Tests for the request-scoped transaction boundary."""
import asyncio
import threading
from unittest.mock import MagicMock

import pytest
from fastapi import Depends, FastAPI, Response
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from otpauth.service.errors import TransactionCommitError
from otpauth.service.transaction import TransactionManager, get_tx
from otpauth.storage.memory import MemoryStore
from otpauth.storage.postgres import PostgresStore


def _phone_exists(store, phone):
    tx = store.begin()
    try:
        return store.get_user_by_phone(tx, phone) is not None
    finally:
        tx.rollback()


def _build_app(store):
    manager = TransactionManager(store)
    app = FastAPI()

    @app.middleware("http")
    async def tx_boundary(request, call_next):
        return await manager.middleware(request, call_next)

    @app.post("/api/created", status_code=201)
    def created(tx=Depends(get_tx)):
        store.create_user(tx, "+15550000001")
        return {"ok": True}

    @app.post("/api/failed")
    def failed(tx=Depends(get_tx)):
        store.create_user(tx, "+15550000002")
        return JSONResponse(status_code=500, content={"ok": False})

    @app.post("/api/client-error")
    def client_error(tx=Depends(get_tx)):
        store.create_user(tx, "+15550000003")
        return JSONResponse(status_code=409, content={"ok": False})

    @app.post("/api/raises")
    def raises(tx=Depends(get_tx)):
        store.create_user(tx, "+15550000004")
        raise RuntimeError("boom")

    @app.get("/outside")
    def outside():
        return {"ok": True}

    return app


class TestFinish:
    def test_commits_on_2xx(self):
        tx = MagicMock()
        manager = TransactionManager(MagicMock())

        assert manager.finish(tx, 201) is True
        tx.commit.assert_called_once()
        tx.rollback.assert_not_called()

    @pytest.mark.parametrize("status", [199, 302, 400, 429, 500])
    def test_rolls_back_otherwise(self, status):
        tx = MagicMock()
        manager = TransactionManager(MagicMock())

        assert manager.finish(tx, status) is False
        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()

    def test_commit_failure_rolls_back_and_raises(self):
        tx = MagicMock()
        tx.commit.side_effect = RuntimeError("connection lost")
        manager = TransactionManager(MagicMock())

        with pytest.raises(TransactionCommitError):
            manager.finish(tx, 200)
        tx.rollback.assert_called_once()


class TestMiddleware:
    def test_201_commits(self):
        store = MemoryStore()
        client = TestClient(_build_app(store))

        assert client.post("/api/created").status_code == 201
        assert _phone_exists(store, "+15550000001")

    def test_500_rolls_back(self):
        store = MemoryStore()
        client = TestClient(_build_app(store))

        assert client.post("/api/failed").status_code == 500
        assert not _phone_exists(store, "+15550000002")

    def test_4xx_rolls_back(self):
        store = MemoryStore()
        client = TestClient(_build_app(store))

        assert client.post("/api/client-error").status_code == 409
        assert not _phone_exists(store, "+15550000003")

    def test_exception_rolls_back_and_propagates(self):
        store = MemoryStore()
        client = TestClient(_build_app(store))

        with pytest.raises(RuntimeError):
            client.post("/api/raises")
        assert not _phone_exists(store, "+15550000004")

    def test_exception_becomes_500_with_server_errors_suppressed(self):
        store = MemoryStore()
        client = TestClient(_build_app(store), raise_server_exceptions=False)

        assert client.post("/api/raises").status_code == 500
        assert not _phone_exists(store, "+15550000004")

    def test_commit_failure_becomes_500_envelope(self):
        tx = MagicMock()
        tx.commit.side_effect = RuntimeError("commit failed")
        store = MagicMock()
        store.begin.return_value = tx
        client = TestClient(_build_app(store))

        response = client.post("/api/created")

        assert response.status_code == 500
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "server_error"
        tx.rollback.assert_called_once()

    def test_non_api_paths_get_no_transaction(self):
        store = MagicMock()
        client = TestClient(_build_app(store))

        assert client.get("/outside").status_code == 200
        store.begin.assert_not_called()


def _api_request(path="/api/work"):
    request = MagicMock()
    request.url.path = path
    return request


class _SingleConnectionPool:
    """One-connection pool whose checkout blocks the calling thread."""

    def __init__(self, timeout=2.0):
        self._free = threading.BoundedSemaphore(1)
        self.timeout = timeout

    def getconn(self):
        if not self._free.acquire(timeout=self.timeout):
            raise TimeoutError("pool timeout")
        return MagicMock()

    def putconn(self, conn):
        self._free.release()


class TestDisconnect:
    async def test_cancelled_handler_rolls_back_and_propagates(self):
        tx = MagicMock()
        store = MagicMock()
        store.begin.return_value = tx
        manager = TransactionManager(store)

        async def disconnected(request):
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await manager.middleware(_api_request(), disconnected)
        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()

    async def test_task_cancel_mid_request_rolls_back(self):
        tx = MagicMock()
        store = MagicMock()
        store.begin.return_value = tx
        manager = TransactionManager(store)
        entered = asyncio.Event()

        async def hangs(request):
            entered.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(manager.middleware(_api_request(), hangs))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()


class TestPoolExhaustion:
    @pytest.mark.parametrize("max_concurrent", [None, 1])
    async def test_waiting_request_does_not_stall_the_holder(self, max_concurrent):
        store = PostgresStore("postgresql://unused", pool=_SingleConnectionPool())
        manager = TransactionManager(store, max_concurrent=max_concurrent)

        async def handler(request):
            await asyncio.sleep(0.1)
            return Response(status_code=200)

        loop = asyncio.get_running_loop()
        started = loop.time()
        responses = await asyncio.gather(
            manager.middleware(_api_request(), handler),
            manager.middleware(_api_request(), handler),
        )

        assert [r.status_code for r in responses] == [200, 200]
        assert loop.time() - started < 1.0
