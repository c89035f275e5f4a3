"""
Database Schemas

The whole promo state lives in a single JSON document. Each Pydantic model
below is one section of that document; `PromoStore` is the document itself.

Persisted keys are camelCase (monthlyKey, customUsed, expiresAt, ...), Python
attributes are snake_case. Always dump with `by_alias=True` when writing the
document back.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

Number = Union[int, float]
PromoType = Literal["none", "monthly", "custom"]


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceRecord(Document):
    """
    Per-device usage history, keyed by device key in `PromoStore.devices`
    """
    monthly_key: Optional[str] = Field(None, description="Last YYYY-MM bucket the monthly promo was consumed in")
    custom_used: Dict[str, datetime] = Field(default_factory=dict, description="Normalized code -> time of use")


class MonthlyPromo(Document):
    """
    The single monthly promo. Defaults apply when the document has none.
    """
    active: bool = Field(True, description="Whether the monthly promo is offered")
    percent: Number = Field(10, description="Percentage component")
    fixed: Number = Field(0, description="Fixed amount component")
    updated_at: Optional[datetime] = None


class CustomPromo(Document):
    """
    A named promo code, keyed by normalized code in `Promos.custom`
    """
    active: bool = Field(True, description="Inactive codes behave as unknown")
    percent: Number = Field(0, description="Percentage component")
    fixed: Number = Field(0, description="Fixed amount component")
    expires_at: Optional[datetime] = Field(None, description="Absolute expiry, enforced at decision time")
    updated_at: Optional[datetime] = None


class Promos(Document):
    monthly: MonthlyPromo = Field(default_factory=MonthlyPromo)
    custom: Dict[str, CustomPromo] = Field(default_factory=dict)


class Transaction(Document):
    """
    One issued payment QR, keyed by the provider's transaction id
    """
    device_key: Optional[str] = None
    device_id: Optional[str] = None
    original_amount: Number
    amount: Number
    discount: Number = 0
    promo_type: PromoType = "none"
    promo_code: Optional[str] = None
    created_at: datetime


class PromoStore(Document):
    """
    The persisted document: device usage, promo configuration, transactions
    """
    devices: Dict[str, DeviceRecord] = Field(default_factory=dict)
    promos: Promos = Field(default_factory=Promos)
    tx: Dict[str, Transaction] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, raw: Any) -> "PromoStore":
        """Build a store from a loaded document, replacing malformed sections with defaults."""
        if not isinstance(raw, dict):
            return cls()

        data: Dict[str, Any] = {}
        for key in ("devices", "tx"):
            if isinstance(raw.get(key), dict):
                data[key] = raw[key]

        promos = raw.get("promos")
        if isinstance(promos, dict):
            data["promos"] = {
                key: promos[key] for key in ("monthly", "custom") if isinstance(promos.get(key), dict)
            }

        if raw.get("updatedAt"):
            data["updated_at"] = raw["updatedAt"]

        try:
            return cls.model_validate(data)
        except ValidationError:
            # Fall back section by section so one bad entry does not wipe the rest.
            store = cls()
            for key, model in (("devices", DeviceRecord), ("tx", Transaction)):
                section = getattr(store, key)
                for item_key, item in (data.get(key) or {}).items():
                    try:
                        section[item_key] = model.model_validate(item)
                    except ValidationError:
                        continue
            promos_data = data.get("promos") or {}
            try:
                store.promos.monthly = MonthlyPromo.model_validate(promos_data.get("monthly") or {})
            except ValidationError:
                pass
            for code, item in (promos_data.get("custom") or {}).items():
                try:
                    store.promos.custom[code] = CustomPromo.model_validate(item)
                except ValidationError:
                    continue
            return store

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def find_device(self, device_key: Optional[str]) -> Optional[DeviceRecord]:
        if not device_key:
            return None
        return self.devices.get(device_key)

    def get_or_create_device(self, device_key: str) -> DeviceRecord:
        """Return the device's record, attaching an empty one on first reference."""
        device = self.devices.get(device_key)
        if device is None:
            device = DeviceRecord()
            self.devices[device_key] = device
        return device


class Decision(Document):
    """
    Result of evaluating which promo applies to one request. Not persisted.
    """
    ok: bool
    reason: Optional[str] = None
    amount: Optional[Number] = None
    discount: Number = 0
    promo_type: Optional[PromoType] = None
    promo_code: Optional[str] = None
    month_key: Optional[str] = None
    device: Optional[DeviceRecord] = Field(None, exclude=True)

    def to_output(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "reason": self.reason}
        return self.model_dump(mode="json", by_alias=True, exclude={"reason"})
