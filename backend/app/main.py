import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.routers import auth, payments, admin_payments
from app.core.errors import PaymentError, SweepFailure, sanitize_error_message
from app.core.redis import get_redis
from app.services.solana import SolanaClient
from app.services.tron import TronClient

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    app.state.solana_client = SolanaClient.from_settings()
    app.state.tron_client = TronClient.from_settings()
    yield
    await app.state.tron_client.close()

app = FastAPI(title="Casino Deposits API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(payments.router)
app.include_router(admin_payments.router)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    keep = [exc.sweep.txid] if isinstance(exc, SweepFailure) and exc.sweep is not None else []
    detail = sanitize_error_message(exc.message, keep=keep)
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "error": exc.kind})


@app.get("/health")
async def health():
    return {"status": "ok"}
