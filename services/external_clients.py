"""
External collaborator adapters: payment gateway, object storage, scoring model,
identity verification. The core only talks to these interfaces.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from config import Config
from utils.exceptions import ExternalServiceUnavailable

logger = logging.getLogger(__name__)


class PaymentGateway(ABC):
    """Opaque payment capture/release capability. Idempotent by reference."""

    @abstractmethod
    def authorize(self, amount: Decimal, currency: str) -> str:
        ...

    @abstractmethod
    def capture(self, reference: str) -> None:
        ...

    @abstractmethod
    def payout(self, user_id: int, amount: Decimal, currency: str) -> str:
        ...


class ObjectStorage(ABC):
    @abstractmethod
    def store(self, data: bytes, content_type: Optional[str] = None) -> str:
        """Persist bytes, return an opaque pointer"""

    @abstractmethod
    def retrieve(self, pointer: str) -> str:
        """Return a short-lived signed URL for the pointer"""


class ScoringService(ABC):
    """Untrusted, possibly unavailable artifact analysis model"""

    @abstractmethod
    def analyze(self, artifact: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        """Return {"score": int, "routeToReview": bool, "extractedData": dict}"""


class IdentityVerifier(ABC):
    @abstractmethod
    def is_payout_eligible(self, user_id: int) -> bool:
        """phone verified and identity verified and payout account approved"""


class _HttpClient:
    """Shared requests plumbing: auth header, bounded timeout, error mapping"""

    service_name = "external"

    def __init__(self, base_url: str, api_key: str = "", timeout: Optional[float] = None):
        if not base_url:
            raise ValueError(f"{self.service_name} base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else Config.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.http = requests.Session()
        if api_key:
            self.http.headers["Authorization"] = f"Bearer {api_key}"
        self.http.headers["Content-Type"] = "application/json"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ {self.service_name.upper()}_HTTP_ERROR: {method} {path}: {e}")
            raise ExternalServiceUnavailable(self.service_name, type(e).__name__) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceUnavailable(self.service_name, "invalid JSON response") from e


class HttpPaymentGateway(_HttpClient, PaymentGateway):
    service_name = "payment_gateway"

    def authorize(self, amount: Decimal, currency: str) -> str:
        body = self._request("POST", "/authorizations", json={"amount": str(amount), "currency": currency})
        reference = body.get("reference")
        if not reference:
            raise ExternalServiceUnavailable(self.service_name, "authorization returned no reference")
        return reference

    def capture(self, reference: str) -> None:
        self._request("POST", f"/authorizations/{reference}/capture")

    def payout(self, user_id: int, amount: Decimal, currency: str) -> str:
        body = self._request(
            "POST", "/payouts", json={"user_id": user_id, "amount": str(amount), "currency": currency}
        )
        payout_id = body.get("payout_id")
        if not payout_id:
            raise ExternalServiceUnavailable(self.service_name, "payout returned no id")
        return payout_id


class HttpObjectStorage(_HttpClient, ObjectStorage):
    service_name = "object_storage"

    def store(self, data: bytes, content_type: Optional[str] = None) -> str:
        url = f"{self.base_url}/objects"
        headers = {"Content-Type": content_type or "application/octet-stream"}
        try:
            response = self.http.post(url, data=data, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()["pointer"]
        except (requests.exceptions.RequestException, ValueError, KeyError) as e:
            logger.error(f"❌ OBJECT_STORAGE_STORE_FAILED: {e}")
            raise ExternalServiceUnavailable(self.service_name, type(e).__name__) from e

    def retrieve(self, pointer: str) -> str:
        return self._request("GET", f"/objects/{pointer}/signed-url").get("url", "")


class HttpScoringService(_HttpClient, ScoringService):
    service_name = "scoring"

    def analyze(self, artifact: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/analyze", json={"artifact": artifact, "context": context})


class HttpIdentityVerifier(_HttpClient, IdentityVerifier):
    service_name = "identity"

    def is_payout_eligible(self, user_id: int) -> bool:
        body = self._request("GET", f"/users/{user_id}/payout-status")
        return bool(
            body.get("phone_verified")
            and body.get("identity_verified")
            and body.get("payout_account_approved")
        )


class InMemoryObjectStorage(ObjectStorage):
    """Content-addressed storage held in process memory (local runs, tests)"""

    def __init__(self):
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, data: bytes, content_type: Optional[str] = None) -> str:
        pointer = f"mem://{hashlib.sha256(data).hexdigest()}"
        with self._lock:
            self._objects[pointer] = data
        return pointer

    def retrieve(self, pointer: str) -> str:
        if pointer not in self._objects:
            raise ExternalServiceUnavailable("object_storage", "unknown pointer")
        return f"{pointer}?signed=1"


def build_default_clients() -> Dict[str, Any]:
    """HTTP adapters for every collaborator whose URL is configured"""
    clients: Dict[str, Any] = {}
    if Config.PAYMENT_GATEWAY_URL:
        clients["payment_gateway"] = HttpPaymentGateway(Config.PAYMENT_GATEWAY_URL, Config.EXTERNAL_API_KEY)
    if Config.OBJECT_STORAGE_URL:
        clients["object_storage"] = HttpObjectStorage(Config.OBJECT_STORAGE_URL, Config.EXTERNAL_API_KEY)
    else:
        logger.warning("⚠️ OBJECT_STORAGE_URL not set, using in-memory object storage")
        clients["object_storage"] = InMemoryObjectStorage()
    if Config.SCORING_SERVICE_URL:
        clients["scoring"] = HttpScoringService(Config.SCORING_SERVICE_URL, Config.EXTERNAL_API_KEY)
    if Config.IDENTITY_SERVICE_URL:
        clients["identity"] = HttpIdentityVerifier(Config.IDENTITY_SERVICE_URL, Config.EXTERNAL_API_KEY)
    return clients
