"""
HTTP surface of the indexer: job enqueue, queue status and health.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from registry_indexer.core.errors import ErrorKind, IndexerError
from registry_indexer.core.indexer import Indexer
from registry_indexer.utils.error_utils import parse_ledger_param
from registry_indexer.utils.log import get_default_logger

_LOG = get_default_logger(__name__)

router = APIRouter()


def _indexer(request: Request) -> Indexer:
    return request.app.state.indexer


async def _read_body(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValueError("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@router.post("/ingest/events", status_code=202)
async def ingest_events(request: Request):
    """Enqueue a continuous fetch-events job."""
    try:
        body = await _read_body(request)
        start_ledger = parse_ledger_param(body.get("startLedger"))
    except ValueError as e:
        return _bad_request(f"Invalid startLedger parameter: {e}")
    indexer = _indexer(request)
    await asyncio.to_thread(indexer.store.ping)
    job_id = indexer.queue.enqueue_fetch_events(start_ledger)
    requested = "latest from DB/default" if start_ledger is None else start_ledger
    return {
        "success": True,
        "message": f"Event ingestion job enqueued. Requested start ledger: {requested}.",
        "jobId": job_id,
    }


@router.post("/ingest/backfill", status_code=202)
async def ingest_backfill(request: Request):
    """Enqueue a bounded fetch-recurring job over [startLedger, endLedger]."""
    try:
        body = await _read_body(request)
        start_ledger = parse_ledger_param(body.get("startLedger"))
        end_ledger = parse_ledger_param(body.get("endLedger"))
    except ValueError as e:
        return _bad_request(f"Invalid ledger parameter: {e}")
    if start_ledger is not None and end_ledger is not None and end_ledger < start_ledger:
        return _bad_request("endLedger must not be before startLedger")
    indexer = _indexer(request)
    await asyncio.to_thread(indexer.store.ping)
    job_id = indexer.queue.enqueue_backfill(start_ledger, end_ledger)
    return {
        "success": True,
        "message": f"Backfill job enqueued for ledgers {start_ledger or 'checkpoint'}"
        f"..{end_ledger or 'latest'}.",
        "jobId": job_id,
    }


@router.post("/ingest/contracts/operations", status_code=202)
async def ingest_contract_operations(request: Request):
    """Enqueue a fetch-contract-operations job."""
    try:
        body = await _read_body(request)
        start_ledger = parse_ledger_param(body.get("startLedger"))
    except ValueError as e:
        return _bad_request(f"Invalid startLedger parameter: {e}")
    contract_ids = body.get("contractIds")
    if contract_ids is not None and (
        not isinstance(contract_ids, list) or not all(isinstance(c, str) for c in contract_ids)
    ):
        return _bad_request("contractIds must be a list of strings")
    indexer = _indexer(request)
    await asyncio.to_thread(indexer.store.ping)
    job_id = indexer.queue.enqueue_contract_operations(
        contract_ids, start_ledger, include_failed_tx=bool(body.get("includeFailedTx", True))
    )
    return {"success": True, "message": "Contract operations job enqueued.", "jobId": job_id}


@router.post("/ingest/operations/missing", status_code=202)
async def ingest_missing_operations(request: Request):
    """Enqueue a backfill-missing-operations job."""
    try:
        body = await _read_body(request)
        start_ledger = parse_ledger_param(body.get("startLedger"))
        end_ledger = parse_ledger_param(body.get("endLedger"))
    except ValueError as e:
        return _bad_request(f"Invalid ledger parameter: {e}")
    indexer = _indexer(request)
    await asyncio.to_thread(indexer.store.ping)
    job_id = indexer.queue.enqueue_missing_operations(start_ledger, end_ledger)
    return {"success": True, "message": "Missing operations job enqueued.", "jobId": job_id}


@router.get("/queue/status")
async def queue_status(request: Request):
    return {"success": True, "queue": _indexer(request).queue.get_status()}


@router.get("/health")
def health(request: Request):
    """Database and RPC connectivity with the current checkpoint."""
    indexer = _indexer(request)
    database_status = "connected"
    last_processed_ledger = 0
    try:
        indexer.store.ping()
        last_processed_ledger = indexer.store.get_checkpoint() or 0
    except IndexerError as e:
        _LOG.warning("Health check: database unavailable: %s", e)
        database_status = "disconnected"

    rpc_status = "unknown"
    latest_rpc_ledger: Any = "Not Available"
    try:
        rpc_status = indexer.rpc_client.get_health()
        latest_rpc_ledger = indexer.rpc_client.get_latest_ledger()
    except IndexerError as e:
        _LOG.warning("Health check: RPC unavailable: %s", e)
        rpc_status = "error"

    healthy = database_status == "connected" and rpc_status == "healthy"
    content = {
        "status": "ok" if healthy else "error",
        "database_status": database_status,
        "rpc_status": rpc_status,
        "network": indexer.config.network,
        "latest_rpc_ledger": latest_rpc_ledger,
        "last_processed_ledger_in_db": last_processed_ledger,
    }
    if database_status != "connected":
        status_code = 503
    else:
        status_code = 200 if healthy else 500
    return JSONResponse(status_code=status_code, content=content)


async def _indexer_error_handler(_request: Request, exc: IndexerError) -> JSONResponse:
    status_code = 503 if exc.kind == ErrorKind.PERSISTENCE else 500
    return JSONResponse(status_code=status_code, content={"success": False, "error": str(exc)})


def create_app(indexer: Indexer, autostart: Optional[bool] = None) -> FastAPI:
    """
    Create the FastAPI application.
    The lifespan creates missing tables and runs the queue's poll loop.

    :param indexer: The assembled indexer.
    :param autostart: Enqueue a continuous fetch-events job on startup;
        defaults to the configuration.
    :return: The application.
    """
    if autostart is None:
        autostart = indexer.config.autostart

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        indexer.store.create_tables()
        await indexer.queue.start()
        if autostart:
            indexer.queue.enqueue_fetch_events()
        yield
        await indexer.queue.stop()

    app = FastAPI(title="Registry Indexer", lifespan=lifespan)
    app.state.indexer = indexer
    app.include_router(router)
    app.add_exception_handler(IndexerError, _indexer_error_handler)
    return app


def main():
    """Serve the indexer configured from the environment."""
    indexer = Indexer.create_instance_from_env(os.getenv("REGISTRY_INDEXER_DOTENV"))
    uvicorn.run(
        create_app(indexer),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3001")),
    )


if __name__ == "__main__":
    main()
