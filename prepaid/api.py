from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from .config import get_settings
from .exceptions import ConflictError, NotFoundError, UpstreamFailure, ValidationError
from .logs import configure_logging, get_logger
from .models import (
    BalanceReading,
    BalanceSummary,
    ConsumeRequest,
    ConsumptionResult,
    ConsumptionStats,
    RegisterUserRequest,
    SimulatePaymentRequest,
    Transaction,
    User,
)
from .service import PrepaidService
from .timeutil import now_iso
from .transactions import to_acknowledgement
from .users import INVALID_CREDENTIALS

log = get_logger(__name__)

router = APIRouter()


def get_service(request: Request) -> PrepaidService:
    return request.app.state.service


@router.get("/health", tags=["System"])
def health_check(service: PrepaidService = Depends(get_service)):
    return {"status": "ok", "timestamp": now_iso(), "consumption": service.simulator.state.value}


@router.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, service: PrepaidService = Depends(get_service)) -> User:
    try:
        return service.users.register(request)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/users/lookup", response_model=User, tags=["Users"])
def lookup_user(
    email: Optional[str] = None,
    meter_no: Optional[str] = None,
    service: PrepaidService = Depends(get_service),
) -> User:
    try:
        return service.users.lookup(email, meter_no)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=INVALID_CREDENTIALS)


@router.get("/users/{meter_no}/balance", response_model=BalanceReading, tags=["Balance"])
def get_meter_balance(meter_no: str, service: PrepaidService = Depends(get_service)) -> BalanceReading:
    try:
        return service.balances.get_balance(meter_no)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/users/{user_id}/summary", response_model=BalanceSummary, tags=["Balance"])
def get_user_summary(user_id: str, service: PrepaidService = Depends(get_service)) -> BalanceSummary:
    try:
        service.users.get(user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return service.balances.calculate_user_balance(user_id)


@router.get("/users/{user_id}/consumption", response_model=ConsumptionStats, tags=["Balance"])
def get_user_consumption(user_id: str, service: PrepaidService = Depends(get_service)) -> ConsumptionStats:
    try:
        service.users.get(user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return service.consumption.stats(user_id)


@router.get("/transactions/{user_id}", response_model=list[Transaction], tags=["Transactions"])
def list_transactions(user_id: str, service: PrepaidService = Depends(get_service)) -> list[Transaction]:
    return service.transactions.list_for_user(user_id)


@router.post("/daraja/simulate", tags=["Payments"])
def simulate_payment(request: SimulatePaymentRequest, service: PrepaidService = Depends(get_service)) -> dict:
    try:
        return service.initiate_payment(request.meter_no, request.amount)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except UpstreamFailure as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=e.gateway_error or "Failed to simulate payment",
        )


@router.post("/daraja/callback", tags=["Payments"])
async def daraja_callback(request: Request, service: PrepaidService = Depends(get_service)) -> dict:
    """Settlement webhook. Always answers 200 so the gateway stops retrying."""
    try:
        payload = await request.json()
    except ValueError:
        log.error("Daraja callback body is not valid JSON")
        payload = None

    result = await run_in_threadpool(service.transactions.reconcile_callback, payload)
    if result.success:
        log.info("Callback processed: transaction=%s duplicate=%s", result.transaction_id, result.duplicate)
    else:
        log.error("Failed to process callback: %s", result.message)
    return to_acknowledgement(result)


@router.post("/consume", response_model=ConsumptionResult, tags=["Devices"])
def consume(
    request: ConsumeRequest,
    x_api_key: Optional[str] = Header(None),
    service: PrepaidService = Depends(get_service),
) -> ConsumptionResult:
    if x_api_key != service.settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not request.meter_no or request.units is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="meterNo and units are required")
    try:
        return service.consumption.consume_units(request.meter_no, request.units)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/meter/{meter_no}/balance", tags=["Devices"])
def get_device_balance(meter_no: str, service: PrepaidService = Depends(get_service)) -> dict:
    user = service.storage.find_user_by_meter(meter_no)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No user found with meter_no: {meter_no}")
    cached = service.balances.read_cache(user["id"])
    return {"meterNo": meter_no, "balance": float(cached) if cached is not None else 0.0}


def create_app(service: Optional[PrepaidService] = None) -> FastAPI:
    settings = service.settings if service is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(level=settings.log_level, json_logs=settings.log_json)
        if settings.consumption_enabled:
            app.state.service.simulator.start()
        yield
        app.state.service.simulator.stop()

    app = FastAPI(
        title="Prepaid Meter Ledger API",
        description="M-Pesa payment reconciliation and unit balances for prepaid meters",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service or PrepaidService(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3000)
