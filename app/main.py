import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import SessionLocal, init_models
from app.errors import PaymentServiceError
from app.ledger import make_error_recorder
from app.paypal_client import PayPalClient
from app.routes import router

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    app.state.paypal_client = PayPalClient(
        settings.paypal_api,
        settings.paypal_client_id,
        settings.paypal_secret,
        error_recorder=make_error_recorder(SessionLocal),
        request_id_prefix=settings.paypal_request_prefix,
    )
    if not settings.paypal_webhook_id:
        logger.warning("PAYPAL_WEBHOOK_ID is not set, webhook signatures will not be verified")
    yield
    await app.state.paypal_client.aclose()


app = FastAPI(title="NGO Payments Service", lifespan=lifespan)

app.include_router(router)


@app.exception_handler(PaymentServiceError)
async def payment_error_handler(request: Request, exc: PaymentServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
async def health():
    return {"status": "ok"}
