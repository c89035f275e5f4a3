"""
Promo evaluation engine.

Pure functions over a `PromoStore`: nothing here performs I/O. Callers load
the store, decide, record usage after the surrounding operation succeeds and
then save the store back once.
"""

import hashlib
import hmac
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

from schemas import (
    CustomPromo,
    Decision,
    DeviceRecord,
    MonthlyPromo,
    Number,
    PromoStore,
)

logger = logging.getLogger(__name__)

REFERENCE_TIMEZONE = "Asia/Jakarta"
DEFAULT_PEPPER = "pepper"


class PromoRejection(str, Enum):
    PROMO_NOT_FOUND = "PROMO_NOT_FOUND"
    PROMO_EXPIRED = "PROMO_EXPIRED"
    DEVICE_REQUIRED = "DEVICE_REQUIRED"
    PROMO_ALREADY_USED = "PROMO_ALREADY_USED"


class PromoInputError(ValueError):
    """Raised by the admin mutators for malformed promo definitions."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------- Identity & calendar ----------------------

def get_device_key(device_id: Any, pepper: Optional[str]) -> Optional[str]:
    """
    Derive the stable, non-reversible key for a device identifier.

    Blank identifiers have no key. The raw identifier is never stored.
    """
    ident = str(device_id if device_id is not None else "").strip()
    if not ident:
        return None
    secret = str(pepper or DEFAULT_PEPPER)
    return hmac.new(secret.encode("utf-8"), ident.encode("utf-8"), hashlib.sha256).hexdigest()


def current_month_bucket(tz: str = REFERENCE_TIMEZONE, now: Optional[datetime] = None) -> str:
    """Calendar month of `now` (default: current time) in `tz`, as YYYY-MM."""
    moment = _as_utc(now) if now is not None else _utcnow()
    return moment.astimezone(ZoneInfo(tz)).strftime("%Y-%m")


def normalize_code(code: Any) -> str:
    return str(code if code is not None else "").strip().upper()


# ---------------------- Arithmetic ----------------------

def as_amount(value: Any) -> Optional[Number]:
    if isinstance(value, bool):
        return None
    if not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
    if not math.isfinite(value):
        return None
    return value


def calc_discount(amount: Any, percent: Any = 0, fixed: Any = 0) -> Tuple[Number, Any]:
    """
    Compute (discount, final_amount) for an amount.

    The percentage part is floored before the fixed part is added, and the
    discount is capped so at least 1 remains payable. Amounts that are not
    finite numbers >= 1 pass through with no discount.
    """
    a = as_amount(amount)
    if a is None or a < 1:
        return 0, amount

    percent = _coerce_number(percent)
    fixed = _coerce_number(fixed)

    discount: Number = 0
    if percent > 0:
        discount += math.floor(a * percent / 100)
    if fixed > 0:
        discount += fixed

    if discount < 0:
        discount = 0
    if discount > a - 1:
        discount = max(0, a - 1)

    return discount, a - discount


# ---------------------- Decision ----------------------

def apply_discount(
    store: PromoStore,
    amount: Number,
    device_key: Optional[str] = None,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Decide which promo applies to a request. The store is not modified.

    A supplied promo code always takes the custom path and never falls back
    to the monthly promo; rejections are returned, not raised.
    """
    now = _as_utc(now) if now is not None else _utcnow()
    month_key = current_month_bucket(REFERENCE_TIMEZONE, now)
    device = store.find_device(device_key) or DeviceRecord()
    code = normalize_code(promo_code)

    if code:
        promo = store.promos.custom.get(code)
        if promo is None or promo.active is False:
            return _reject(PromoRejection.PROMO_NOT_FOUND, code)
        if promo.expires_at is not None and now > _as_utc(promo.expires_at):
            return _reject(PromoRejection.PROMO_EXPIRED, code)
        if not device_key:
            return _reject(PromoRejection.DEVICE_REQUIRED, code)
        if code in device.custom_used:
            return _reject(PromoRejection.PROMO_ALREADY_USED, code)

        discount, final_amount = calc_discount(amount, promo.percent, promo.fixed)
        logger.debug("Custom promo %s applies: discount=%s", code, discount)
        return Decision(
            ok=True,
            amount=final_amount,
            discount=discount,
            promo_type="custom",
            promo_code=code,
            month_key=month_key,
            device=device,
        )

    monthly = store.promos.monthly
    if monthly.active is not False and device_key and device.monthly_key != month_key:
        discount, final_amount = calc_discount(amount, monthly.percent, monthly.fixed)
        logger.debug("Monthly promo applies for %s: discount=%s", month_key, discount)
        return Decision(
            ok=True,
            amount=final_amount,
            discount=discount,
            promo_type="monthly",
            month_key=month_key,
            device=device,
        )

    return Decision(
        ok=True,
        amount=amount,
        discount=0,
        promo_type="none",
        month_key=month_key,
        device=device,
    )


def _reject(reason: PromoRejection, code: str) -> Decision:
    logger.debug("Promo %s rejected: %s", code, reason.value)
    return Decision(ok=False, reason=reason.value)


# ---------------------- Usage ----------------------

def record_promo_usage(
    store: PromoStore,
    device_key: Optional[str],
    promo_type: Optional[str],
    promo_code: Optional[str] = None,
    month_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PromoStore:
    """
    Mark a decided promo as consumed by the device.

    Call exactly once per successful transaction. Recording the same custom
    code twice overwrites its timestamp.
    """
    if not device_key:
        return store

    device = store.get_or_create_device(device_key)
    if promo_type == "monthly":
        device.monthly_key = month_key
    elif promo_type == "custom" and promo_code:
        device.custom_used[normalize_code(promo_code)] = _as_utc(now) if now is not None else _utcnow()
    return store


# ---------------------- Admin ----------------------

def _coerce_number(value: Any) -> Number:
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number) or number <= 0:
        return 0
    return int(number) if number.is_integer() else number


def _coerce_expiry(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise PromoInputError(f"invalid expiresAt: {value!r}") from exc
    return _as_utc(parsed)


def admin_upsert_custom_promo(
    store: PromoStore,
    code: Any,
    percent: Any = None,
    fixed: Any = None,
    expires_at: Any = None,
    active: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> PromoStore:
    """Create or fully replace the custom promo for `code`."""
    normalized = normalize_code(code)
    if not normalized:
        raise PromoInputError("code required")

    store.promos.custom[normalized] = CustomPromo(
        active=active is not False,
        percent=_coerce_number(percent),
        fixed=_coerce_number(fixed),
        expires_at=_coerce_expiry(expires_at),
        updated_at=_as_utc(now) if now is not None else _utcnow(),
    )
    logger.info("Custom promo %s saved (active=%s)", normalized, active is not False)
    return store


def admin_set_monthly_promo(
    store: PromoStore,
    percent: Any = None,
    fixed: Any = None,
    active: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> PromoStore:
    """Replace the monthly promo configuration."""
    store.promos.monthly = MonthlyPromo(
        active=active is not False,
        percent=_coerce_number(percent),
        fixed=_coerce_number(fixed),
        updated_at=_as_utc(now) if now is not None else _utcnow(),
    )
    logger.info("Monthly promo set (active=%s)", active is not False)
    return store
