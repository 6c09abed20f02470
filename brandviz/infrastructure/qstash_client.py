"""
Cliente para la API REST de QStash y verificación de firmas de sus webhooks
"""

import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import jwt
from tenacity import retry, retry_if_exception_type, wait_exponential_jitter, stop_after_attempt

from ..config.settings import QStashConfig

logger = logging.getLogger(__name__)


class QStashError(Exception):
    """Error de la API de QStash"""


class SignatureError(Exception):
    """Firma Upstash-Signature inválida"""


class IQStashClient(ABC):
    """Interface para publicar mensajes HTTP diferidos"""

    @abstractmethod
    async def publish_json(self, url: str, body: Dict[str, Any], delay: int = 0, retries: int = 3,
                           deduplication_id: Optional[str] = None) -> str:
        """Publica un mensaje y devuelve su messageId"""
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        pass


class QStashApiClient(IQStashClient):
    """Implementación sobre httpx de /v2/publish y /v2/messages"""

    def __init__(self, config: QStashConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = config.url.rstrip("/")
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_headers(self) -> Dict[str, str]:
        if not self.config.token:
            raise QStashError("QSTASH_TOKEN environment variable is required")
        return {"Authorization": f"Bearer {self.config.token}"}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=20),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self._get_headers(), **kwargs.pop("headers", {})}
        response = await self._get_client().request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        if response.status_code >= 400:
            logger.error(f"QStash API error ({response.status_code}) on {method} {path}: {response.text}")
            raise QStashError(f"QStash API error ({response.status_code}): {response.text}")
        return response

    async def publish_json(self, url: str, body: Dict[str, Any], delay: int = 0, retries: int = 3,
                           deduplication_id: Optional[str] = None) -> str:
        headers = {
            "Content-Type": "application/json",
            "Upstash-Retries": str(retries),
        }
        if delay:
            headers["Upstash-Delay"] = f"{delay}s"
        if deduplication_id:
            headers["Upstash-Deduplication-Id"] = deduplication_id

        response = await self._request("POST", f"/v2/publish/{url}", json=body, headers=headers)
        return response.json()["messageId"]

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/v2/messages/{message_id}")
        return response.json()

    async def delete_message(self, message_id: str) -> None:
        await self._request("DELETE", f"/v2/messages/{message_id}")


class MockQStashClient(IQStashClient):
    """Registra los mensajes publicados para testing"""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self.deleted: List[str] = []

    async def publish_json(self, url: str, body: Dict[str, Any], delay: int = 0, retries: int = 3,
                           deduplication_id: Optional[str] = None) -> str:
        message_id = f"msg_{len(self.published) + 1}"
        self.published.append({
            "message_id": message_id,
            "url": url,
            "body": body,
            "delay": delay,
            "retries": retries,
            "deduplication_id": deduplication_id,
        })
        return message_id

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        for message in self.published:
            if message["message_id"] == message_id:
                return message
        raise QStashError(f"QStash API error (404): message {message_id} not found")

    async def delete_message(self, message_id: str) -> None:
        self.deleted.append(message_id)


def body_hash(body: bytes) -> str:
    """sha256 del body en base64url sin padding"""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


class QStashReceiver:
    """
    Verifica el JWT de Upstash-Signature.
    Se prueba con la clave actual y, si falla, con la siguiente (rotación de claves).
    """

    def __init__(self, current_signing_key: str, next_signing_key: str, clock_tolerance: int = 0):
        self.keys = [key for key in (current_signing_key, next_signing_key) if key]
        self.clock_tolerance = clock_tolerance

    def _verify_with_key(self, key: str, signature: str, body: bytes, url: Optional[str]) -> None:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer="Upstash",
                leeway=self.clock_tolerance,
                options={"require": ["exp", "nbf", "iss", "body"], "verify_aud": False},
            )
        except jwt.PyJWTError as e:
            raise SignatureError(f"Invalid signature: {e}") from e

        if url is not None and claims.get("sub") != url:
            raise SignatureError(f"Invalid subject: {claims.get('sub')}")
        if claims["body"].rstrip("=") != body_hash(body):
            raise SignatureError("Invalid body hash")

    def verify(self, signature: Optional[str], body: bytes, url: Optional[str] = None) -> None:
        if not self.keys:
            raise SignatureError("QStash signing keys are not configured")
        if not signature:
            raise SignatureError("Missing Upstash-Signature header")

        last_error: Optional[SignatureError] = None
        for key in self.keys:
            try:
                self._verify_with_key(key, signature, body, url)
                return
            except SignatureError as e:
                last_error = e
        raise last_error
