import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, PlainTextResponse
from pydantic import BaseModel, EmailStr, Field

from .config import get_settings
from .errors import (
    ArtifactMissing,
    DownloadDenied,
    InvalidProduct,
    MintFailure,
    OracleUnavailable,
    PaymentCheckFailed,
)
from .service import OrderService, build_service
from .utils import to_epoch_ms

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reaper = None
    if settings.REAPER_INTERVAL_SECONDS > 0:
        reaper = asyncio.create_task(get_service().run_reaper(settings.REAPER_INTERVAL_SECONDS))
        logger.info("[REAPER] Running every %s s", settings.REAPER_INTERVAL_SECONDS)
    yield
    if reaper is not None:
        reaper.cancel()


app = FastAPI(title="Bytron backend", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

_service: OrderService | None = None


def get_service() -> OrderService:
    global _service
    if _service is None:
        _service = build_service(settings)
    return _service


class CreateOrderIn(BaseModel):
    # validated by the catalog so a bad id is a 400, not a 422
    product_id: Any = Field(default=None, alias="productId")


class SendEmailIn(BaseModel):
    order_id: str = Field(alias="orderId")
    email: EmailStr


@app.get("/")
async def status():
    return {"status": "OK", "msg": "Bytron backend running"}


@app.get("/price/{product_id}")
async def price(product_id: str, service: OrderService = Depends(get_service)):
    try:
        return await service.price(product_id)
    except InvalidProduct:
        raise HTTPException(status_code=404, detail="Product not found")


@app.post("/create-order")
async def create_order(payload: CreateOrderIn, service: OrderService = Depends(get_service)):
    try:
        order, quote = await service.create_order(payload.product_id)
    except InvalidProduct:
        raise HTTPException(status_code=400, detail="Invalid product")
    except OracleUnavailable:
        logger.exception("[ORDER] No TRX price available")
        raise HTTPException(status_code=500, detail="Price fetch failed")
    except MintFailure:
        logger.exception("[ORDER] Deposit address minting failed")
        raise HTTPException(status_code=500, detail="Create order failed")

    return {
        "orderId": order.order_id,
        "address": order.deposit_address,
        "requiredAmount": order.required_amount,
        "requiredTrx": quote.required_trx,
        "livePrice": quote.rate_usd,
    }


@app.get("/check-payment/{order_id}")
async def check_payment(order_id: str, service: OrderService = Depends(get_service)):
    try:
        result = await service.check_payment(order_id)
    except PaymentCheckFailed:
        raise HTTPException(status_code=503, detail="Payment check failed, try again")

    if not result.paid:
        return {"paid": False}
    return {"paid": True, "expiresAt": to_epoch_ms(result.expires_at)}


@app.post("/send-email")
async def send_email(payload: SendEmailIn, service: OrderService = Depends(get_service)):
    try:
        await service.send_receipt(payload.order_id, payload.email)
    except DownloadDenied as exc:
        raise HTTPException(status_code=403, detail=exc.reason)
    return {"success": True}


@app.get("/download/{order_id}")
async def download(order_id: str, service: OrderService = Depends(get_service)):
    try:
        _, path = service.authorize_download(order_id)
    except DownloadDenied as exc:
        return PlainTextResponse(exc.reason, status_code=403)
    except (ArtifactMissing, InvalidProduct):
        logger.exception("[ORDER] Artifact for order %s is misconfigured", order_id)
        raise HTTPException(status_code=500, detail="File not available")

    return FileResponse(path, filename=path.name, media_type="application/octet-stream")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
