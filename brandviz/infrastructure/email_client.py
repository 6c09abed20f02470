"""
Cliente de email sobre la API v3 de SendGrid
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, wait_exponential_jitter, stop_after_attempt

from ..config.settings import EmailConfig

logger = logging.getLogger(__name__)


class EmailError(Exception):
    """Error al enviar un email"""


class IEmailClient(ABC):
    """Interface para el envío de emails"""

    @abstractmethod
    async def send_email(self, to_email: str, subject: str, html: str) -> None:
        pass


class SendGridEmailClient(IEmailClient):
    """Envía emails HTML con remitente fijo"""

    def __init__(self, config: EmailConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(self, to_email: str, subject: str, html: str) -> Dict:
        return {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": self.config.from_email, "name": self.config.from_name},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=20),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _send(self, payload: Dict) -> httpx.Response:
        return await self._get_client().post(
            self.config.sendgrid_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.config.sendgrid_api_key}"},
        )

    async def send_email(self, to_email: str, subject: str, html: str) -> None:
        if not self.config.sendgrid_api_key:
            raise EmailError("SENDGRID_API_KEY is not set")

        try:
            response = await self._send(self.build_payload(to_email, subject, html))
        except httpx.HTTPError as e:
            logger.error(f"Error in sending email to {to_email}: {e}")
            raise EmailError(f"Error in sending email {e}") from e

        if response.status_code >= 400:
            logger.error(f"SendGrid error ({response.status_code}) sending to {to_email}: {response.text}")
            raise EmailError(f"Error in sending email ({response.status_code})")

        logger.info(f"Email '{subject}' sent to {to_email}")


class MockEmailClient(IEmailClient):
    """Guarda los emails en memoria para testing"""

    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    async def send_email(self, to_email: str, subject: str, html: str) -> None:
        self.sent.append({"to": to_email, "subject": subject, "html": html})
