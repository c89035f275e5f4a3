"""
Client for the remote payment QR provider.

Responses are relayed as-is: the provider's status code and body are
returned, never interpreted beyond what issuing a QR needs.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider could not be reached."""


@dataclass
class ProviderResponse:
    status_code: int
    data: Any

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def transaction_id(self) -> Optional[str]:
        data = self.data if isinstance(self.data, dict) else {}
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        return inner.get("idTransaksi") or data.get("idTransaksi")

    def qr_png_path(self) -> Optional[str]:
        data = self.data if isinstance(self.data, dict) else {}
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        path = inner.get("qrPngUrl") or data.get("qrPngUrl")
        if not path:
            tx_id = self.transaction_id()
            path = f"/api/qr/{tx_id}.png" if tx_id else None
        return path


class QrProvider:
    def __init__(self, base_url: str, timeout: float = 20.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, f"{self.base_url}{path}", **kwargs)
        except requests.RequestException as e:
            logger.warning("Provider %s %s failed: %s", method, path, e)
            raise ProviderError(str(e)) from e

    @staticmethod
    def _json(r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError:
            return {"success": False, "error": r.text[:500]}

    def create_qr(self, amount, theme: str = "theme1") -> ProviderResponse:
        r = self._request("POST", "/api/createqr", json={"amount": amount, "theme": theme})
        return ProviderResponse(r.status_code, self._json(r))

    def status(self, tx_id: str) -> ProviderResponse:
        r = self._request("GET", "/api/status", params={"idTransaksi": tx_id}, timeout=min(self.timeout, 15))
        return ProviderResponse(r.status_code, self._json(r))

    def cancel(self, tx_id: str) -> ProviderResponse:
        r = self._request("POST", "/api/cancel", json={"idTransaksi": tx_id}, timeout=min(self.timeout, 15))
        return ProviderResponse(r.status_code, self._json(r))

    def qr_png(self, tx_id: str) -> ProviderResponse:
        r = self._request("GET", f"/api/qr/{quote(tx_id, safe='')}.png")
        return ProviderResponse(r.status_code, r.content)

    def set_status(self, tx_id: str, status: str, paid_at: Optional[str] = None,
                   note: Optional[str] = None, paid_via: Optional[str] = None) -> ProviderResponse:
        payload = {"idTransaksi": tx_id, "status": status, "paidAt": paid_at, "note": note, "paidVia": paid_via}
        r = self._request("POST", "/api/status", json=payload, timeout=min(self.timeout, 15))
        return ProviderResponse(r.status_code, self._json(r))
