# src/bridgefi/adapters/http/api.py
"""
HTTP API - FastAPI Application

Exposes the settlement core over JSON. Successful responses use the
envelope ``{"success": true, "data": ...}``; domain errors are mapped to
status codes in one place and rendered as ``{"success": false, "error": ...,
"reference": ..., "refund": ...}`` so an operator always gets the quote
reference of a failed settlement.

Every route is also reachable under ``/api`` (the wallet app's base path).

Files that USE this module:
- bridgefi.app (create_app, served by uvicorn)
- tests.test_api (TestClient)

Files that this module USES:
- bridgefi.app (Services container, build_services)
- bridgefi.adapters.http.schemas (request bodies)
- bridgefi.domain.errors (error → status mapping)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Dict, Optional, Type

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bridgefi import __version__
from bridgefi.adapters.http.schemas import (
    OfframpExecuteRequest,
    OfframpInitiateRequest,
    OnrampInitiateRequest,
    OnrampVerifyRequest,
    RefundRequest,
)
from bridgefi.app import Services, build_services
from bridgefi.domain.errors import (
    ChainError,
    ConfirmationPendingError,
    DomainError,
    InvalidSignatureError,
    PaymentFailedError,
    PaymentGatewayError,
    PaymentNotSettledError,
    PaymentVerificationTimeoutError,
    PayoutOutcomeUnknownError,
    QuoteAlreadyProcessedError,
    QuoteNotFoundError,
    RateUnavailableError,
    SettlementAndRefundFailedError,
    SettlementFailedError,
    SettlementInProgressError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"

ERROR_STATUS: Dict[Type[DomainError], int] = {
    ValidationError: 400,
    InvalidSignatureError: 401,
    PaymentNotSettledError: 402,
    PaymentFailedError: 402,
    QuoteNotFoundError: 404,
    QuoteAlreadyProcessedError: 409,
    SettlementInProgressError: 409,
    SettlementAndRefundFailedError: 500,
    PaymentGatewayError: 502,
    ChainError: 502,
    SettlementFailedError: 502,
    RateUnavailableError: 503,
    PaymentVerificationTimeoutError: 504,
    ConfirmationPendingError: 504,
    PayoutOutcomeUnknownError: 504,
}


def status_for(exc: DomainError) -> int:
    """HTTP status of a domain error; the most specific class wins."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def error_body(exc: DomainError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": exc.message}
    if exc.reference:
        body["reference"] = exc.reference
    if isinstance(exc, SettlementFailedError) and exc.refund is not None:
        body["refund"] = exc.refund.to_json()
    if isinstance(exc, ChainError):
        body["kind"] = exc.kind.value
    tx_hash = getattr(exc, "tx_hash", None)
    if tx_hash:
        body["txHash"] = tx_hash
    return body


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


# Dependency injection ------------------------------------------------------

def get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


ServicesDep = Annotated[Services, Depends(get_services)]

router = APIRouter()


# Routes --------------------------------------------------------------------

@router.get("/health")
async def health_check(services: ServicesDep) -> Dict[str, Any]:
    """Component health; always 200 so load balancers can read the body."""
    return await services.health.get_overall_health()


@router.get("/treasury-address")
async def treasury_address(services: ServicesDep) -> Any:
    address = services.chain.custody_address
    if not address:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Treasury address not configured on server"},
        )
    return ok({"treasuryAddress": address})


@router.get("/exchange-rate")
async def exchange_rate(services: ServicesDep) -> Dict[str, Any]:
    rate = await services.oracle.get_rate()
    return ok(rate.to_projection())


@router.post("/onramp/initiate")
async def onramp_initiate(body: OnrampInitiateRequest, services: ServicesDep) -> Dict[str, Any]:
    return ok(await services.onramp.initiate(body.fiat_amount, body.user_address))


@router.post("/onramp/verify")
async def onramp_verify(
    body: OnrampVerifyRequest,
    services: ServicesDep,
    poll: Annotated[bool, Query(description="Poll until settled instead of checking once")] = True,
) -> Dict[str, Any]:
    if poll:
        settlement = await services.onramp.verify_payment(body.reference, body.quote_data)
    else:
        settlement = await services.onramp.settle(body.reference, body.quote_data)
    return ok(settlement.to_projection())


@router.post("/offramp/initiate")
async def offramp_initiate(body: OfframpInitiateRequest, services: ServicesDep) -> Dict[str, Any]:
    return ok(await services.offramp.initiate(
        body.stable_amount, body.bank_account, body.bank_code, body.account_name,
    ))


@router.post("/offramp/execute")
async def offramp_execute(body: OfframpExecuteRequest, services: ServicesDep) -> Dict[str, Any]:
    settlement = await services.offramp.execute(body.quote_id, body.chain_tx_hash, body.quote_data)
    return ok(settlement.to_projection())


@router.post("/offramp/refund")
async def offramp_refund(body: RefundRequest, services: ServicesDep) -> Dict[str, Any]:
    result = await services.offramp.refund(body.user_address, body.stable_amount, body.chain_tx_hash, body.reason)
    return ok(result.to_projection())


@router.post("/webhooks/paystack")
@router.post("/webhooks/payment-gateway")
async def payment_webhook(request: Request, services: ServicesDep) -> Dict[str, Any]:
    # Signature is over the exact bytes received
    raw_body = await request.body()
    result = await services.onramp.handle_webhook(raw_body, request.headers.get(PAYSTACK_SIGNATURE_HEADER))
    return ok(result)


@router.get("/transactions")
async def list_transactions(
    services: ServicesDep,
    user_address: Annotated[Optional[str], Query(alias="userAddress")] = None,
    owner_address: Annotated[Optional[str], Query(alias="ownerAddress")] = None,
    type: Annotated[Optional[str], Query()] = None,
    status: Annotated[Optional[str], Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> Dict[str, Any]:
    owner = user_address or owner_address
    if not owner:
        raise ValidationError("Missing required parameter: userAddress")
    page = services.journal.query(owner, type=type, status=status, limit=limit, offset=offset)
    return ok(page.to_projection())


@router.get("/transactions/stats")
async def transaction_stats(
    services: ServicesDep,
    user_address: Annotated[Optional[str], Query(alias="userAddress")] = None,
) -> Dict[str, Any]:
    return ok(services.journal.stats(user_address))


@router.get("/quotes/{quote_id}")
async def quote_status(quote_id: str, services: ServicesDep) -> Dict[str, Any]:
    quote = services.ledger.get_quote(quote_id)
    if quote is None:
        raise QuoteNotFoundError(f"Quote {quote_id} not found", quote_id)
    return ok(quote.to_status_projection())


def _require_mock_mode(services: Services) -> None:
    if not services.settings.mock_payouts:
        raise ValidationError("Mock mode is not enabled. This endpoint is only available in mock mode.")


@router.get("/mock-transfers")
async def mock_transfers(services: ServicesDep) -> Dict[str, Any]:
    _require_mock_mode(services)
    transfers = services.offramp.mock_transfers()
    return ok({"transfers": transfers, "count": len(transfers), "mode": "mock"})


@router.get("/mock-transfers/{reference}")
async def mock_transfer(reference: str, services: ServicesDep) -> Any:
    _require_mock_mode(services)
    transfer = services.offramp.mock_transfer(reference)
    if transfer is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Mock transfer not found"})
    return ok(transfer)


# Application factory -------------------------------------------------------

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application around ``services``.

    The rate oracle's background refresh runs for the lifetime of the app
    when ``services.refresh_in_background`` is set.
    """
    if services is None:
        services = build_services()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if services.refresh_in_background:
            services.oracle.start()
        yield
        await services.oracle.stop()

    app = FastAPI(lifespan=lifespan, title="BridgeFi settlement API", version=__version__)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def strip_api_prefix(request: Request, call_next):
        if request.scope["path"].startswith("/api/"):
            request.scope["path"] = request.scope["path"][4:]
        return await call_next(request)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed (%d): %s [ref=%s]", request.method, request.url.path, status,
                         exc.message, exc.reference)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status, exc.message)
        return JSONResponse(status_code=status, content=error_body(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        missing = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("type") == "missing"})
        message = f"Missing required fields: {', '.join(missing)}" if missing else "Invalid request"
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    app.include_router(router)
    return app
