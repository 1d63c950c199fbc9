import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, PositiveInt

import txrelay.constants as C
from txrelay.config import cfg
from txrelay.diagnosis import error_text
from txrelay.endpoint import RpcEndpoint
from txrelay.errors import (
    ConfirmationTimeoutError,
    NetworkError,
    RelayError,
    SigningError,
    TransactionExecutionError,
)
from txrelay.logging_config import setup_logging
from txrelay.models import Transaction
from txrelay.simnet import SimulatedNetwork
from txrelay.store import InMemoryStore
from txrelay.submitter import Submitter

setup_logging()
log = logging.getLogger("txrelay.app")

PENDING_STATES = (C.SubmitState.SIGNED, C.SubmitState.BROADCASTING, C.SubmitState.DIAGNOSING)


def build_endpoint(conf: dict) -> RpcEndpoint | SimulatedNetwork:
    match conf["endpoint"]:
        case "simulated":
            log.info("Using simulated network")
            return SimulatedNetwork.from_config(conf["simulated"])
        case "rpc":
            net = conf["network"]
            log.info("Using JSON-RPC endpoint %s", net["rpc_url"])
            return RpcEndpoint(net["rpc_url"], timeout=net.get("rpc_timeout", C.RPC_TIMEOUT))
        case other:
            raise ValueError(f"unknown endpoint type {other!r}")


async def _probe_endpoint(endpoint, max_retries: int = 30, retry_delay: float = 2.0) -> None:
    """Fetch a freshness token with retries until the endpoint answers."""
    for attempt in range(1, max_retries + 1):
        try:
            await endpoint.get_freshness_token()
            log.info("Endpoint responding (attempt %d/%d)", attempt, max_retries)
            return
        except NetworkError as e:
            if attempt < max_retries:
                log.info("Endpoint not ready yet (attempt %d/%d): %s - retrying in %ss...", attempt, max_retries, e, retry_delay)
                await asyncio.sleep(retry_delay)
            else:
                log.error("Endpoint failed after %d attempts", max_retries)
                raise


def http_error(e: RelayError) -> HTTPException:
    match e:
        case ConfirmationTimeoutError():
            status = 504
        case TransactionExecutionError():
            status = 422
        case SigningError():
            status = 400
        case NetworkError():
            status = 502
        case _:
            status = 500
    return HTTPException(status_code=status, detail=e.to_dict())


def _decode(data: str) -> Transaction:
    try:
        return Transaction.from_base64(data)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"kind": "malformed_transaction", "message": str(e)}) from e


class SubmitReq(BaseModel):
    transaction: str = Field(description="base64 of a fully signed transaction")
    timeout_ms: PositiveInt | None = None
    commitment: C.Commitment | None = None


class BatchReq(BaseModel):
    transactions: list[str]
    timeout_ms: PositiveInt | None = None
    commitment: C.Commitment | None = None


class SimulateReq(BaseModel):
    transaction: str
    commitment: C.Commitment = C.Commitment.PROCESSED


class SubmitResp(BaseModel):
    txid: str
    state: str
    latency: float | None = None
    resends: int | None = None


r_transaction = APIRouter(prefix="/transaction", tags=["Transactions"])
r_state = APIRouter(prefix="/state", tags=["State"])


@r_transaction.post("/submit", response_model=SubmitResp)
async def transaction_submit(req: SubmitReq, request: Request):
    submitter: Submitter = request.app.state.submitter
    tx = _decode(req.transaction)
    try:
        txid = await submitter.submit_pre_signed(tx, timeout_ms=req.timeout_ms, commitment=req.commitment)
    except RelayError as e:
        raise http_error(e) from e
    rec = await submitter.store.get(txid) or {}
    return SubmitResp(txid=txid, state=rec.get("state", "UNKNOWN"), latency=rec.get("latency"), resends=rec.get("resends"))


@r_transaction.post("/batch")
async def transaction_batch(req: BatchReq, request: Request):
    """Submit pre-signed transactions; each index reports its own outcome."""
    submitter: Submitter = request.app.state.submitter
    out = []
    decoded: list[tuple[int, Transaction]] = []
    for i, data in enumerate(req.transactions):
        try:
            decoded.append((i, Transaction.from_base64(data)))
        except ValueError as e:
            out.append({"index": i, "error": {"kind": "malformed_transaction", "message": str(e)}})
    results = await submitter.submit_pre_signed_batch(
        [tx for _, tx in decoded], timeout_ms=req.timeout_ms, commitment=req.commitment
    )
    for pos, r in results.items():
        i = decoded[pos][0]
        if isinstance(r, str):
            out.append({"index": i, "txid": r})
        elif isinstance(r, RelayError):
            out.append({"index": i, "error": r.to_dict()})
        else:
            out.append({"index": i, "error": {"kind": "internal_error", "message": str(r)}})
    return {"results": sorted(out, key=lambda item: item["index"])}


@r_transaction.post("/simulate")
async def transaction_simulate(req: SimulateReq, request: Request):
    submitter: Submitter = request.app.state.submitter
    tx = _decode(req.transaction)
    try:
        sim = await submitter.endpoint.simulate(tx, req.commitment)
    except NetworkError as e:
        raise http_error(e) from e
    diagnosis = None
    if sim.err is not None:
        diagnosis = submitter.diagnostician.strategy(sim.logs) or error_text(sim.err)
    return {"err": sim.err, "logs": sim.logs, "units_consumed": sim.units_consumed, "diagnosis": diagnosis}


@r_state.get("/summary")
async def state_summary(request: Request):
    return request.app.state.store.snapshot_stats()


@r_state.get("/pending")
async def state_pending(request: Request):
    return await request.app.state.store.find_by_state(*PENDING_STATES)


@r_state.get("/failed")
async def state_failed(request: Request):
    return await request.app.state.store.find_by_state(C.SubmitState.FAILED)


@r_state.get("/tx/{txid}")
async def state_tx(txid: str, request: Request):
    rec = await request.app.state.store.get(txid)
    if rec is None:
        raise HTTPException(status_code=404, detail=f"Unknown transaction {txid}")
    return rec


def create_app(conf: dict = cfg) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        endpoint = build_endpoint(conf)
        if conf["endpoint"] == "rpc":
            server = conf["server"]
            await _probe_endpoint(endpoint, server.get("probe_retries", 30), server.get("probe_delay", 2.0))

        app.state.endpoint = endpoint
        app.state.store = InMemoryStore(**conf.get("store", {}))
        app.state.submitter = Submitter.from_config(endpoint, conf, store=app.state.store)
        log.info("Relay ready (commitment=%s, max_in_flight=%d)",
                 app.state.submitter.options.commitment, app.state.submitter.max_in_flight)
        try:
            yield
        finally:
            log.info("Shutting down...")
            await endpoint.aclose()
            log.info("Shutdown complete")

    app = FastAPI(
        title="txrelay",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Transactions", "description": "Submit, batch and simulate signed transactions"},
            {"name": "State", "description": "Inspect tracked submissions"},
        ],
    )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(r_transaction)
    app.include_router(r_state)
    return app


app = create_app()
