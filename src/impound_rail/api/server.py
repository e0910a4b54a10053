"""
IMPOUND RAIL - FastAPI Server

Staff endpoints require X-API-Key. Endpoints under /public are what the
municipality's public site and the payment gateway call.

Endpoints:
- GET  /health                                - Liveness and ledger counts
- GET  /tariffs                               - Current tariff snapshot
- GET  /public/vehicles/{plate}/fees          - Public fee lookup by plate
- GET  /vehicles/{vehicle_id}/fees            - Fee breakdown
- GET  /vehicles/{vehicle_id}/payments        - Ledger entries for a vehicle
- GET  /vehicles/{vehicle_id}/balance         - Due, paid, balance
- POST /vehicles/{vehicle_id}/status          - Claim / release
- POST /payments                              - Staff-entered payment
- POST /public/payments/gateway               - Mobile-money gateway callback
- GET  /payments/{payment_id}/receipt         - Receipt link (staff)
- GET  /public/payments/{reference}/receipt   - Receipt link (public)
- GET  /public/receipts/{payment_id}/artifact - Receipt document
- GET  /public/receipts/verify?receipt=...    - Public receipt check
- GET  /public-key                            - Receipt signing keys
"""

import hashlib
import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from ..config import Settings, configure_logging, load_settings
from ..core.errors import ImpoundRailError, NotFoundError, RenderError, ValidationError
from ..persistence.models import PaymentOrigin
from ..service import ImpoundService

logger = structlog.get_logger()

VERSION = "1.0.0"


# Request and response bodies

class PaymentRequest(BaseModel):
    """Staff-entered payment."""
    vehicle_id: str = Field(..., description="Impounded vehicle identifier")
    amount: int = Field(..., description="Amount in whole currency units")
    method: str = Field(..., description="cash, mobile_money, card or bank_transfer")
    status: str = Field(default="completed", description="pending, completed or failed")
    recorded_by: Optional[str] = Field(None, description="Staff member entering the payment")
    notes: Optional[str] = None


class GatewayCallback(BaseModel):
    """Payment notification from the mobile-money gateway."""
    id: str = Field(..., description="Gateway transaction id")
    vehicle_id: str
    amount: int
    payment_method: str = Field(default="mobile_money")
    description: Optional[str] = None


class StatusRequest(BaseModel):
    """External status change."""
    status: str = Field(..., description="claimed or released")


class PaymentResponse(BaseModel):
    """Outcome of recording a payment."""
    payment: Dict[str, Any]
    duplicate: bool
    reconciliation: Optional[Dict[str, Any]]
    receipt: Optional[Dict[str, Any]]
    receipt_url: Optional[str]


class ReceiptResponse(BaseModel):
    payment_id: str
    receipt_number: str
    receipt_url: str
    verification_url: str
    verification_code: str


class VerificationResponse(BaseModel):
    """Everything a public verification reveals."""
    valid: bool
    license_plate: str
    owner_name: str
    amount: int
    date: str


class HealthResponse(BaseModel):
    """Liveness plus a few ledger counters."""
    status: str
    version: str
    tariff_version: str
    vehicles: Dict[str, int]
    receipts: int
    uptime_seconds: float


# Wiring

class AppState:
    """The service and settings every route works against."""

    def __init__(self, settings: Optional[Settings] = None, service: Optional[ImpoundService] = None):
        self.settings = settings or load_settings()
        self.service = service or ImpoundService.from_settings(self.settings)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service from the environment unless a test already installed one."""
    global app_state
    if app_state is None:
        settings = load_settings()
        configure_logging(settings.log_level, settings.log_format)
        app_state = AppState(settings)
    logger.info("impound_rail_starting", version=VERSION, tariff_version=app_state.service.tariffs.current().version)
    yield
    logger.info("impound_rail_stopping")


def _error(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": message, **extra})


def create_app() -> FastAPI:
    """FastAPI app with CORS and the error mapping installed."""
    application = FastAPI(
        title="Impound Rail",
        description="""
# Municipal Impound Fees and Payments

Fee computation, payment ledger reconciliation and signed, publicly verifiable
receipts for the municipal vehicle pound.
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(load_settings().cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(400, "validation_error", str(exc), field=exc.field)

    @application.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return _error(400, "validation_error", "Malformed request", fields=fields)

    @application.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, "not_found", str(exc))

    @application.exception_handler(RenderError)
    async def render_error_handler(request: Request, exc: RenderError):
        logger.error("receipt_render_failed", path=request.url.path, error=str(exc))
        return _error(502, "render_error", str(exc))

    @application.exception_handler(ImpoundRailError)
    async def domain_error_handler(request: Request, exc: ImpoundRailError):
        logger.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
        return _error(500, "internal_error", str(exc))

    return application


app = create_app()


# Request guards

def get_state() -> AppState:
    """Current AppState, or 503 before startup has finished."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def get_service(state: AppState = Depends(get_state)) -> ImpoundService:
    return state.service


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Staff routes require the configured X-API-Key."""
    if not hmac.compare_digest(x_api_key.encode("utf-8"), state.settings.api_key.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


async def verify_gateway_signature(
    request: Request,
    x_gateway_signature: Optional[str] = Header(None, alias="X-Gateway-Signature"),
    state: AppState = Depends(get_state),
) -> None:
    """
    Check the gateway's HMAC-SHA256 over the raw body.

    Only enforced when GATEWAY_SECRET is configured.
    """
    secret = state.settings.gateway_secret
    if not secret:
        return
    body = await request.body()
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not x_gateway_signature or not hmac.compare_digest(expected, x_gateway_signature.strip().lower()):
        logger.warning("gateway_signature_invalid", client=request.client.host if request.client else None)
        raise HTTPException(status_code=401, detail="Invalid gateway signature")


def _payment_response(outcome) -> PaymentResponse:
    return PaymentResponse(
        payment=outcome.payment.to_dict(),
        duplicate=outcome.duplicate,
        reconciliation=outcome.reconciliation.to_dict() if outcome.reconciliation else None,
        receipt=outcome.receipt.to_dict() if outcome.receipt else None,
        receipt_url=outcome.receipt.receipt_url if outcome.receipt else None,
    )


# Routes

@app.get("/health", response_model=HealthResponse, tags=["System"])
def health_check(state: AppState = Depends(get_state)):
    """Unauthenticated liveness probe."""
    service = state.service
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        tariff_version=service.tariffs.current().version,
        vehicles=service.vehicles.count_by_status(),
        receipts=service.issuer.receipts.count(),
        uptime_seconds=uptime,
    )


@app.get("/tariffs", tags=["Fees"])
async def get_tariffs(service: ImpoundService = Depends(get_service)):
    """Current tariff snapshot, per category."""
    return service.tariffs.current().to_dict()


@app.get("/public/vehicles/{license_plate}/fees", tags=["Public"])
def public_fees(
    license_plate: str,
    at: Optional[str] = Query(None, description="Evaluation time (ISO-8601), defaults to now"),
    service: ImpoundService = Depends(get_service),
):
    """Amount due for a vehicle, looked up by plate."""
    vehicle = service.vehicles.get_by_plate(license_plate)
    fee = service.compute_fee_by_plate(license_plate, at=at)
    return {
        "license_plate": vehicle.license_plate if vehicle else license_plate,
        "status": vehicle.status.value if vehicle else None,
        "fees": fee.to_dict(),
    }


@app.get("/vehicles/{vehicle_id}/fees", tags=["Fees"])
def vehicle_fees(
    vehicle_id: str,
    at: Optional[str] = Query(None, description="Evaluation time (ISO-8601), defaults to now"),
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Fee breakdown for a vehicle."""
    return service.compute_fee(vehicle_id, at=at).to_dict()


@app.get("/vehicles/{vehicle_id}/payments", tags=["Payments"])
def vehicle_payments(
    vehicle_id: str,
    limit: int = Query(100, ge=1, le=1000),
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Ledger entries for a vehicle, newest first."""
    payments = service.list_payments(vehicle_id, limit)
    return {
        "vehicle_id": vehicle_id,
        "total": len(payments),
        "payments": [p.to_dict() for p in payments],
    }


@app.get("/vehicles/{vehicle_id}/balance", tags=["Payments"])
def vehicle_balance(
    vehicle_id: str,
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Amount due, amount paid and what remains."""
    return service.vehicle_balance(vehicle_id).to_dict()


@app.post("/vehicles/{vehicle_id}/status", tags=["Vehicles"])
def advance_status(
    vehicle_id: str,
    request: StatusRequest,
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Record a claim or a release."""
    return service.advance_status(vehicle_id, request.status).to_dict()


@app.post("/payments", response_model=PaymentResponse, status_code=201, tags=["Payments"])
def create_payment(
    request: PaymentRequest,
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Record a staff-entered payment."""
    outcome = service.record_payment(
        request.vehicle_id,
        request.amount,
        request.method,
        PaymentOrigin.INTERNAL,
        status=request.status,
        recorded_by=request.recorded_by,
        notes=request.notes,
    )
    return _payment_response(outcome)


@app.post("/public/payments/gateway", response_model=PaymentResponse, tags=["Public"])
def gateway_callback(
    callback: GatewayCallback,
    service: ImpoundService = Depends(get_service),
    _signature: None = Depends(verify_gateway_signature),
):
    """
    Gateway payment notification.

    201 on first delivery. A redelivery of the same transaction id answers 200
    with the payment recorded the first time.
    """
    outcome = service.record_payment(
        callback.vehicle_id,
        callback.amount,
        callback.payment_method,
        PaymentOrigin.EXTERNAL,
        external_reference=callback.id,
        notes=callback.description or "Paiement mobile (passerelle)",
    )
    status_code = 200 if outcome.duplicate else 201
    return JSONResponse(status_code=status_code, content=_payment_response(outcome).model_dump())


@app.get("/payments/{payment_id}/receipt", response_model=ReceiptResponse, tags=["Receipts"])
def payment_receipt(
    payment_id: str,
    regenerate: bool = Query(False),
    service: ImpoundService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    """Receipt for a completed payment, issued on first request."""
    return ReceiptResponse(**service.get_receipt(payment_id, regenerate=regenerate).to_dict())


@app.get("/public/payments/{reference}/receipt", response_model=ReceiptResponse, tags=["Public"])
def public_payment_receipt(reference: str, service: ImpoundService = Depends(get_service)):
    """Receipt link by payment id or gateway transaction id."""
    return ReceiptResponse(**service.get_receipt_by_reference(reference).to_dict())


@app.get("/public/receipts/verify", response_model=VerificationResponse, tags=["Public"])
def verify_receipt(
    receipt: str = Query(..., description="Receipt number or payment id"),
    service: ImpoundService = Depends(get_service),
):
    """Check a receipt. Unknown, forged and tampered receipts all answer 404."""
    summary = service.verify_receipt(receipt)
    return VerificationResponse(valid=True, **summary.to_dict())


@app.get("/public/receipts/{payment_id}/artifact", tags=["Public"])
def receipt_artifact(payment_id: str, service: ImpoundService = Depends(get_service)):
    """
    The receipt document itself.

    The payment id in the path is the link handed to the payer and works as a
    bearer reference. The document carries no internal ids.
    """
    content = service.read_receipt_artifact(payment_id)
    return Response(content=content, media_type=service.issuer.renderer.content_type)


@app.get("/public-key", tags=["Cryptography"])
def get_public_key(service: ImpoundService = Depends(get_service)):
    """
    Signing keys for third parties who verify receipts offline.

    Keys retired by rotation are listed too; receipts signed with them still
    verify.
    """
    signer = service.keys.get_signer()
    return {
        "key_id": signer.key_id,
        "algorithm": signer.algorithm.value,
        "public_key_pem": signer.get_public_key_pem(),
        "keys": service.keys.export_public_keys(),
    }


def run():
    """Console entry point: serve with uvicorn on the configured port."""
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "impound_rail.api.server:app",
        host="0.0.0.0",
        port=settings.port,
    )


if __name__ == "__main__":
    run()
