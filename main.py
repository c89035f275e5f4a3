import hmac
import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from database import DocumentStore, StaleVersionError, StoreError, build_store
from promo_engine import (
    PromoInputError,
    admin_set_monthly_promo,
    admin_upsert_custom_promo,
    apply_discount,
    as_amount,
    get_device_key,
    normalize_code,
    record_promo_usage,
)
from provider import ProviderError, QrProvider
from schemas import PromoStore, Transaction

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting with %s store", settings.store_backend)
    yield


app = FastAPI(title="Promo QR API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def no_store(request: Request, call_next):
    response = await call_next(request)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "invalid request", "detail": jsonable_encoder(exc.errors())},
    )


# ---------------------- Dependencies ----------------------

@lru_cache
def get_store() -> DocumentStore:
    return build_store(get_settings())


@lru_cache
def get_provider() -> QrProvider:
    settings = get_settings()
    return QrProvider(settings.provider_base, timeout=settings.request_timeout)


def get_now() -> datetime:
    return datetime.now(timezone.utc)


def _presented_secret(request: Request, header: str) -> str:
    got = request.headers.get(header, "").strip()
    if not got:
        got = re.sub(r"^Bearer\s+", "", request.headers.get("authorization", ""), flags=re.I).strip()
    return got


def require_admin(request: Request, settings: Settings = Depends(get_settings)) -> None:
    # No admin key configured means the admin routes are closed.
    got = _presented_secret(request, "x-admin-key")
    if not settings.admin_key or not hmac.compare_digest(got.encode(), settings.admin_key.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_callback_secret(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.callback_secret:
        return
    got = _presented_secret(request, "x-callback-secret")
    if not hmac.compare_digest(got.encode(), settings.callback_secret.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _load(store: DocumentStore):
    if not store.is_configured():
        raise HTTPException(status_code=500, detail=f"{store.name} store not configured")
    try:
        return store.load()
    except StoreError as e:
        logger.warning("Store load failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


def _save(store: DocumentStore, promo_store: PromoStore, version: Optional[str], message: str) -> str:
    promo_store.updated_at = datetime.now(timezone.utc)
    try:
        return store.save(promo_store, version, message)
    except StaleVersionError as e:
        logger.warning("Stale write rejected (%s): %s", message, e)
        raise HTTPException(status_code=409, detail="store changed concurrently, retry")
    except StoreError as e:
        logger.warning("Store save failed (%s): %s", message, e)
        raise HTTPException(status_code=500, detail=str(e))


def _relay(status_code: int, data: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(data))


# ---------------------- Service ----------------------

@app.get("/")
def read_root():
    return {
        "success": True,
        "service": "promo-qr-api",
        "routes": [
            "POST /api/createqr",
            "GET  /api/status?idTransaksi=...",
            "POST /api/cancel",
            "GET  /api/qr/{idTransaksi}",
            "POST /api/setstatus",
            "GET  /api/admin/promos",
            "POST /api/admin/promo",
            "POST /api/admin/monthly",
        ],
    }


@app.get("/test")
def test_database(store: DocumentStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "store_backend": store.name,
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "document_exists": False,
    }

    if not store.is_configured():
        response["database"] = "⚠️  Backend not configured"
        return response

    try:
        _, version = store.load()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        response["document_exists"] = version is not None
    except StoreError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# ---------------------- Payment QR API ----------------------

class CreateQrRequest(BaseModel):
    amount: Any = Field(None, description="Requested amount, must be a finite number >= 1")
    theme: Optional[str] = None
    device_id: Optional[str] = Field(None, alias="deviceId")
    promo_code: Optional[str] = Field(None, alias="promoCode")


@app.post("/api/createqr")
def create_qr(
    payload: CreateQrRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    store: DocumentStore = Depends(get_store),
    provider: QrProvider = Depends(get_provider),
    now: datetime = Depends(get_now),
):
    amount = as_amount(payload.amount)
    if amount is None or amount < 1:
        raise HTTPException(status_code=400, detail="amount invalid")

    theme = "theme2" if payload.theme == "theme2" else "theme1"
    device_id = (payload.device_id or "").strip()
    promo_code = (payload.promo_code or "").strip()

    promo_store, version = _load(store)
    device_key = get_device_key(device_id, settings.device_pepper) if device_id else None

    decision = apply_discount(promo_store, amount, device_key, promo_code or None, now=now)
    if not decision.ok:
        raise HTTPException(status_code=400, detail=decision.reason)

    try:
        result = provider.create_qr(decision.amount, theme)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"provider unreachable: {e}")
    if not result.ok:
        logger.warning("Provider createqr returned %s", result.status_code)
        return _relay(result.status_code, {"success": False, "error": "provider createqr failed", "provider": result.data})

    tx_id = result.transaction_id()
    png_path = result.qr_png_path()
    base_url = str(request.base_url).rstrip("/")

    if tx_id:
        record_promo_usage(promo_store, device_key, decision.promo_type, decision.promo_code,
                           decision.month_key, now=now)
        promo_store.tx[tx_id] = Transaction(
            device_key=device_key,
            device_id=device_id or None,
            original_amount=amount,
            amount=decision.amount,
            discount=decision.discount,
            promo_type=decision.promo_type,
            promo_code=decision.promo_code,
            created_at=now,
        )
        _save(store, promo_store, version, f"tx {tx_id}")
        logger.info("Issued QR %s (%s, discount=%s)", tx_id, decision.promo_type, decision.discount)

    data = result.data if isinstance(result.data, dict) else {}
    inner = dict(data.get("data") or {}) if isinstance(data.get("data"), dict) else {}
    inner.update({
        "idTransaksi": tx_id,
        "qrUrl": f"{base_url}/api/qr/{quote(tx_id, safe='')}" if tx_id else None,
        "qrVpsUrl": f"{provider.base_url}{png_path}" if tx_id and png_path else None,
        "originalAmount": amount,
        "finalAmount": decision.amount,
        "discount": decision.discount,
        "promoType": decision.promo_type,
        "promoCode": decision.promo_code,
    })
    return {**data, "data": inner}


@app.get("/api/status")
def transaction_status(
    id_transaksi: str = Query("", alias="idTransaksi"),
    provider: QrProvider = Depends(get_provider),
):
    tx_id = id_transaksi.strip()
    if not tx_id:
        raise HTTPException(status_code=400, detail="idTransaksi required")
    try:
        result = provider.status(tx_id)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"provider unreachable: {e}")
    return _relay(result.status_code, result.data)


class CancelRequest(BaseModel):
    id_transaksi: Optional[str] = Field(None, alias="idTransaksi")


@app.post("/api/cancel")
def cancel_transaction(
    payload: Optional[CancelRequest] = None,
    id_transaksi: str = Query("", alias="idTransaksi"),
    provider: QrProvider = Depends(get_provider),
):
    tx_id = ((payload.id_transaksi if payload else None) or id_transaksi or "").strip()
    if not tx_id:
        raise HTTPException(status_code=400, detail="idTransaksi required")
    try:
        result = provider.cancel(tx_id)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"provider unreachable: {e}")
    return _relay(result.status_code, result.data)


@app.get("/api/qr/{id_transaksi}")
def qr_image(id_transaksi: str, provider: QrProvider = Depends(get_provider)):
    try:
        result = provider.qr_png(id_transaksi.strip())
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"provider unreachable: {e}")
    if not result.ok:
        raise HTTPException(status_code=result.status_code, detail="QR not found on provider")
    return Response(content=result.data, media_type="image/png")


class SetStatusRequest(BaseModel):
    id_transaksi: Optional[str] = Field(None, alias="idTransaksi")
    status: Optional[str] = None
    paid_at: Optional[str] = Field(None, alias="paidAt")
    note: Optional[str] = None
    paid_via: Optional[str] = Field(None, alias="paidVia")


@app.post("/api/setstatus", dependencies=[Depends(require_callback_secret)])
def set_status(payload: SetStatusRequest, provider: QrProvider = Depends(get_provider)):
    if not payload.id_transaksi or not payload.status:
        raise HTTPException(status_code=400, detail="idTransaksi & status required")
    try:
        result = provider.set_status(
            payload.id_transaksi, payload.status,
            paid_at=payload.paid_at, note=payload.note, paid_via=payload.paid_via,
        )
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"provider unreachable: {e}")
    return _relay(result.status_code, result.data)


# ---------------------- Admin API ----------------------

class AdminPromoRequest(BaseModel):
    code: Optional[str] = None
    percent: Any = None
    fixed: Any = None
    expires_at: Any = Field(None, alias="expiresAt")
    active: Optional[bool] = None


class AdminMonthlyRequest(BaseModel):
    percent: Any = None
    fixed: Any = None
    active: Optional[bool] = None


@app.get("/api/admin/promos", dependencies=[Depends(require_admin)])
def list_promos(store: DocumentStore = Depends(get_store)):
    promo_store, _ = _load(store)
    promos = promo_store.promos.model_dump(mode="json", by_alias=True)
    return {"success": True, "data": {"monthly": promos["monthly"], "custom": promos["custom"]}}


@app.post("/api/admin/promo", dependencies=[Depends(require_admin)])
def upsert_promo(payload: AdminPromoRequest, store: DocumentStore = Depends(get_store)):
    code = normalize_code(payload.code)
    if not code:
        raise HTTPException(status_code=400, detail="code required")

    promo_store, version = _load(store)
    try:
        admin_upsert_custom_promo(
            promo_store, code,
            percent=payload.percent, fixed=payload.fixed,
            expires_at=payload.expires_at, active=payload.active,
        )
    except PromoInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _save(store, promo_store, version, f"admin upsert promo {code}")
    return {"success": True, "data": promo_store.promos.custom[code].model_dump(mode="json", by_alias=True)}


@app.post("/api/admin/monthly", dependencies=[Depends(require_admin)])
def set_monthly(payload: AdminMonthlyRequest, store: DocumentStore = Depends(get_store)):
    promo_store, version = _load(store)
    admin_set_monthly_promo(promo_store, percent=payload.percent, fixed=payload.fixed, active=payload.active)
    _save(store, promo_store, version, "admin set monthly promo")
    return {"success": True, "data": promo_store.promos.monthly.model_dump(mode="json", by_alias=True)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
