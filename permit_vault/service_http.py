# FILE: permit_vault/service_http.py
from __future__ import annotations

import hmac
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from .assets import InMemoryAssetBank
from .authority import InMemoryTransferAuthority
from .balances import BalanceStore, InMemoryBalanceStore, SQLiteBalanceStore
from .config import Settings, make_reloadable_settings
from .errors import BatchLengthMismatch, DelegationFailed, InsufficientBalance, InvalidSpender, LedgerError
from .events import EventRecord
from .ledger import Ledger
from .logging import get_logger
from .middleware import MetricsMiddleware, RequestContextMiddleware
from .permits import normalize_address
from .schemas import (
    BalanceOut,
    DepositAllowanceIn,
    DepositBatchAllowanceIn,
    DepositBatchPermitIn,
    DepositBatchTransferIn,
    DepositBatchWitnessIn,
    DepositPermitIn,
    DepositTransferIn,
    DepositWitnessIn,
    DigestOut,
    DomainOut,
    ErrorOut,
    EventOut,
    EventsOut,
    PermitBatchIn,
    PermitBatchTransferFromIn,
    PermitSingleIn,
    PermitTransferFromIn,
    TransferBatchWitnessDigestIn,
    TransferWitnessDigestIn,
    WithdrawBatchIn,
    WithdrawIn,
)

_API_VERSION = "0.1.0"

# HTTP instruments live at module scope: the default registry rejects
# re-registration when more than one app is built in a process.
_REQ_COUNTER = Counter("pv_http_requests_total", "HTTP requests", ["route", "status"])
_REQ_LATENCY = Histogram("pv_http_request_latency_seconds", "HTTP request latency in seconds", ["route"])


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


def build_balance_store(settings: Settings) -> BalanceStore:
    if settings.balance_backend == "sqlite":
        return SQLiteBalanceStore(settings.sqlite_path)
    return InMemoryBalanceStore()


def build_dev_ledger(settings: Settings) -> Ledger:
    """
    Ledger wired to the in-memory asset bank and authority simulation. Used
    when no production authority client is injected.
    """
    bank = InMemoryAssetBank()
    authority = InMemoryTransferAuthority(
        bank,
        address=settings.authority_address,
        chain_id=settings.chain_id,
        name=settings.authority_name,
    )
    return Ledger(
        address=settings.ledger_address,
        authority=authority,
        assets=bank,
        store=build_balance_store(settings),
    )


class ServiceTokenAuth:
    """
    Shared-token guard for mutating endpoints. The caller header is only
    trusted behind it: when required and the process has no token configured,
    every call is refused.
    """

    def __init__(self, required: bool, token: str) -> None:
        self.required = required
        self.token = token

    def __call__(
        self,
        x_token: Optional[str] = Header(default=None, alias="X-PV-Service-Token"),
    ) -> None:
        if not self.required:
            return
        if not self.token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="service token required")
        if not x_token or not hmac.compare_digest(x_token.encode("utf-8"), self.token.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


def caller_address(
    x_caller: Optional[str] = Header(default=None, alias="X-Caller-Address"),
) -> str:
    """The submitting identity (msg.sender) for a ledger call."""
    if not x_caller:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Caller-Address required")
    try:
        return normalize_address(x_caller, name="caller")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


def _event_out(rec: EventRecord) -> EventOut:
    return EventOut(**rec.to_dict())


def _hex(b: bytes) -> str:
    return "0x" + bytes(b).hex()


def _error(status_code: int, err: Exception, **fields: Any) -> JSONResponse:
    body = ErrorOut(error=type(err).__name__, detail=str(err), **fields)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    ledger: Optional[Ledger] = None,
    *,
    service_token: Optional[str] = None,
) -> FastAPI:
    """
    Build the ledger HTTP surface:

    - health/readiness/version and /metrics;
    - balance, domain and digest helpers (read-only);
    - deposits on every authorization route, withdrawals, the event log.

    Without an injected ledger the app runs against the in-memory simulation
    of the authority and asset bank.
    """
    settings = settings or make_reloadable_settings().get()
    ledger = ledger or build_dev_ledger(settings)
    token = service_token if service_token is not None else os.environ.get("PV_SERVICE_TOKEN", "")
    logger = get_logger("permit_vault.http")

    app = FastAPI(title="permit-vault", version=_API_VERSION)
    app.state.settings = settings
    app.state.ledger = ledger

    app.add_middleware(MetricsMiddleware, counter=_REQ_COUNTER, histogram=_REQ_LATENCY)
    app.add_middleware(RequestContextMiddleware)

    auth = ServiceTokenAuth(required=settings.require_service_token, token=token)

    def _check_batch(n: int) -> None:
        if n > settings.max_batch_items:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"batch of {n} exceeds max_batch_items={settings.max_batch_items}",
            )

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(InvalidSpender)
    async def _invalid_spender(request: Request, exc: InvalidSpender):
        return _error(status.HTTP_403_FORBIDDEN, exc)

    @app.exception_handler(InsufficientBalance)
    async def _insufficient(request: Request, exc: InsufficientBalance):
        return _error(
            status.HTTP_409_CONFLICT, exc, balance=str(exc.balance), requested=str(exc.requested)
        )

    @app.exception_handler(DelegationFailed)
    async def _delegation(request: Request, exc: DelegationFailed):
        return _error(status.HTTP_424_FAILED_DEPENDENCY, exc, code=exc.code)

    @app.exception_handler(BatchLengthMismatch)
    async def _length(request: Request, exc: BatchLengthMismatch):
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)

    @app.exception_handler(LedgerError)
    async def _ledger_error(request: Request, exc: LedgerError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    # -----------------------------------------------------------------------
    # Health / version / metrics
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True, "config_hash": settings.config_hash(), "http_version": _API_VERSION}

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        ledger.balance_of(ledger.address, ledger.address)
        return {"ready": True, "backend": settings.balance_backend, "events": len(ledger.events)}

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "version": settings.version,
            "http_version": _API_VERSION,
            "config_hash": settings.config_hash(),
            "chain_id": settings.chain_id,
            "ledger": ledger.address,
        }

    @app.get("/metrics")
    def metrics() -> Response:
        if not settings.metrics_enabled:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Read-only
    # -----------------------------------------------------------------------

    @app.get("/v1/balances/{user}/{asset}", response_model=BalanceOut)
    def balance(user: str, asset: str) -> BalanceOut:
        u = normalize_address(user, name="user")
        a = normalize_address(asset, name="asset")
        return BalanceOut(user=u, asset=a, balance=str(ledger.balance_of(u, a)))

    @app.get("/v1/domain", response_model=DomainOut)
    def domain() -> DomainOut:
        return DomainOut(
            name=settings.authority_name,
            chain_id=settings.chain_id,
            verifying_contract=ledger.authority.address,
            domain_separator=_hex(ledger.domain_separator()),
            ledger=ledger.address,
        )

    @app.post("/v1/digest/permit-single", response_model=DigestOut)
    def digest_permit_single(req: PermitSingleIn) -> DigestOut:
        return DigestOut(kind="permit-single", digest=_hex(ledger.permit_single_digest(req.to_model())))

    @app.post("/v1/digest/permit-batch", response_model=DigestOut)
    def digest_permit_batch(req: PermitBatchIn) -> DigestOut:
        _check_batch(len(req.details))
        return DigestOut(kind="permit-batch", digest=_hex(ledger.permit_batch_digest(req.to_model())))

    @app.post("/v1/digest/transfer", response_model=DigestOut)
    def digest_transfer(req: PermitTransferFromIn) -> DigestOut:
        return DigestOut(kind="transfer", digest=_hex(ledger.transfer_digest(req.to_model())))

    @app.post("/v1/digest/transfer-batch", response_model=DigestOut)
    def digest_transfer_batch(req: PermitBatchTransferFromIn) -> DigestOut:
        _check_batch(len(req.permitted))
        return DigestOut(kind="transfer-batch", digest=_hex(ledger.transfer_batch_digest(req.to_model())))

    @app.post("/v1/digest/transfer-witness", response_model=DigestOut)
    def digest_transfer_witness(req: TransferWitnessDigestIn) -> DigestOut:
        d = ledger.transfer_witness_digest(req.permit.to_model(), req.beneficiary)
        return DigestOut(kind="transfer-witness", digest=_hex(d))

    @app.post("/v1/digest/transfer-batch-witness", response_model=DigestOut)
    def digest_transfer_batch_witness(req: TransferBatchWitnessDigestIn) -> DigestOut:
        _check_batch(len(req.permit.permitted))
        d = ledger.transfer_batch_witness_digest(req.permit.to_model(), req.beneficiary)
        return DigestOut(kind="transfer-batch-witness", digest=_hex(d))

    @app.get("/v1/events", response_model=EventsOut)
    def events(since: int = Query(0, ge=0), limit: Optional[int] = Query(None, ge=1)) -> EventsOut:
        n = min(limit or settings.events_page_limit, settings.events_page_limit)
        page = ledger.events.since(since, n)
        return EventsOut(
            events=[_event_out(r) for r in page],
            head=ledger.events.head(),
            next_seq=since + len(page),
        )

    # -----------------------------------------------------------------------
    # Deposits
    # -----------------------------------------------------------------------

    mutating = [Depends(auth)]

    @app.post("/v1/deposit/permit", response_model=EventOut, dependencies=mutating)
    def deposit_permit(req: DepositPermitIn, caller: str = Depends(caller_address)) -> EventOut:
        rec = ledger.deposit_with_permit(caller, req.amount, req.permit.to_model(), req.signature)
        return _event_out(rec)

    @app.post("/v1/deposit/allowance", response_model=EventOut, dependencies=mutating)
    def deposit_allowance(req: DepositAllowanceIn, caller: str = Depends(caller_address)) -> EventOut:
        return _event_out(ledger.deposit(caller, req.asset, req.amount))

    @app.post("/v1/deposit/batch-permit", response_model=EventOut, dependencies=mutating)
    def deposit_batch_permit(req: DepositBatchPermitIn, caller: str = Depends(caller_address)) -> EventOut:
        _check_batch(len(req.amounts))
        rec = ledger.deposit_batch_with_permit(caller, req.amounts, req.permit.to_model(), req.signature)
        return _event_out(rec)

    @app.post("/v1/deposit/batch-allowance", response_model=EventOut, dependencies=mutating)
    def deposit_batch_allowance(
        req: DepositBatchAllowanceIn, caller: str = Depends(caller_address)
    ) -> EventOut:
        _check_batch(len(req.assets))
        return _event_out(ledger.deposit_batch(caller, req.assets, req.amounts))

    @app.post("/v1/deposit/transfer", response_model=EventOut, dependencies=mutating)
    def deposit_transfer(req: DepositTransferIn, caller: str = Depends(caller_address)) -> EventOut:
        return _event_out(ledger.deposit_with_transfer(caller, req.permit.to_model(), req.signature))

    @app.post("/v1/deposit/batch-transfer", response_model=EventOut, dependencies=mutating)
    def deposit_batch_transfer(
        req: DepositBatchTransferIn, caller: str = Depends(caller_address)
    ) -> EventOut:
        _check_batch(len(req.permit.permitted))
        rec = ledger.deposit_batch_with_transfer(caller, req.permit.to_model(), req.signature)
        return _event_out(rec)

    @app.post("/v1/deposit/witness", response_model=EventOut, dependencies=mutating)
    def deposit_witness(req: DepositWitnessIn, caller: str = Depends(caller_address)) -> EventOut:
        rec = ledger.deposit_with_witness(
            caller, req.owner, req.permit.to_model(), req.beneficiary, req.signature
        )
        return _event_out(rec)

    @app.post("/v1/deposit/batch-witness", response_model=EventOut, dependencies=mutating)
    def deposit_batch_witness(
        req: DepositBatchWitnessIn, caller: str = Depends(caller_address)
    ) -> EventOut:
        _check_batch(len(req.permit.permitted))
        rec = ledger.deposit_batch_with_witness(
            caller, req.owner, req.permit.to_model(), req.beneficiary, req.signature
        )
        return _event_out(rec)

    # -----------------------------------------------------------------------
    # Withdrawals
    # -----------------------------------------------------------------------

    @app.post("/v1/withdraw", response_model=EventOut, dependencies=mutating)
    def withdraw(req: WithdrawIn, caller: str = Depends(caller_address)) -> EventOut:
        return _event_out(ledger.withdraw(caller, req.asset, req.amount, req.recipient))

    @app.post("/v1/withdraw/batch", response_model=EventOut, dependencies=mutating)
    def withdraw_batch(req: WithdrawBatchIn, caller: str = Depends(caller_address)) -> EventOut:
        _check_batch(len(req.assets))
        return _event_out(ledger.withdraw_batch(caller, req.assets, req.amounts, req.recipient))

    logger.info(
        "app created",
        extra={"chain_id": settings.chain_id, "ledger": ledger.address, "backend": settings.balance_backend},
    )
    return app
