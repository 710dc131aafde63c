from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from otpauth.logging import get_correlation_id, get_logger
from otpauth.service.errors import ServerError, TransactionCommitError

logger = get_logger(__name__)


class TransactionManager:
    """Request-scoped transaction boundary.

    One transaction per API request: committed when the response status is
    2xx, rolled back for any other status or when the handler raises. It is
    a cleanup boundary only; exceptions are re-raised after rollback.

    Store calls block, so the middleware runs begin/commit/rollback in worker
    threads. ``max_concurrent`` caps open transactions at the connection pool
    size; further requests wait on the event loop for a slot.
    """

    def __init__(
        self,
        store,
        *,
        path_prefix: str = "/api/",
        max_concurrent: Optional[int] = None,
    ) -> None:
        self.store = store
        self.path_prefix = path_prefix
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent else None

    def begin(self):
        return self.store.begin()

    def finish(self, tx, status_code: int) -> bool:
        """Commit on 2xx, roll back otherwise. Returns True when committed."""
        if not 200 <= status_code < 300:
            tx.rollback()
            logger.debug("transaction_rolled_back", status_code=status_code)
            return False
        try:
            tx.commit()
        except Exception as exc:
            logger.error("transaction_commit_failed", error=str(exc))
            tx.rollback()
            raise TransactionCommitError("failed to commit transaction") from exc
        return True

    def abort(self, tx) -> None:
        try:
            tx.rollback()
        except Exception as exc:
            # the original failure is what propagates
            logger.error("transaction_rollback_failed", error=str(exc))

    def applies_to(self, request: Request) -> bool:
        return request.url.path.startswith(self.path_prefix)

    async def middleware(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if not self.applies_to(request):
            return await call_next(request)
        if self._slots is None:
            return await self._run(request, call_next)
        async with self._slots:
            return await self._run(request, call_next)

    async def _run(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        try:
            tx = await asyncio.to_thread(self.begin)
        except Exception as exc:
            logger.error("transaction_begin_failed", error=str(exc))
            return _server_error_response("failed to open transaction")
        request.state.tx = tx
        try:
            response = await call_next(request)
        except BaseException:
            # includes CancelledError when the client goes away; the shield
            # lets the rollback finish even if the task is cancelled again
            await asyncio.shield(asyncio.to_thread(self.abort, tx))
            raise
        try:
            await asyncio.to_thread(self.finish, tx, response.status_code)
        except TransactionCommitError as exc:
            return _server_error_response(exc.message)
        return response


def _server_error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "error": {"code": "server_error", "message": message},
            "request_id": get_correlation_id(),
        },
    )


def get_tx(request: Request):
    """FastAPI dependency returning the request's open transaction."""
    tx = getattr(request.state, "tx", None)
    if tx is None:
        raise ServerError("no transaction bound to request")
    return tx


__all__ = ["TransactionManager", "get_tx"]
