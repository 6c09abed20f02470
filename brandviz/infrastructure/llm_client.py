"""
Clientes para las APIs de chat de OpenAI, Anthropic y Google
Implementa el patrón Repository e Interface Segregation
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

import httpx
from tenacity import retry, retry_if_exception_type, wait_exponential_jitter, stop_after_attempt

from ..config.settings import LLMConfig
from ..domain.enums import AIModel

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = "You are a helpful AI assistant."


class LLMError(Exception):
    """Error devuelto por un proveedor de LLM"""


@dataclass
class LLMResponse:
    """Respuesta de un modelo"""
    response: str
    response_time: int  # ms


class ILLMClient(ABC):
    """Interface para clientes de LLM (Dependency Inversion Principle)"""

    @abstractmethod
    async def query(self, model: str, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE) -> LLMResponse:
        """Envía un prompt al modelo indicado"""
        pass

    @abstractmethod
    async def call_chatgpt(self, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE,
                           include_system: bool = True) -> LLMResponse:
        """ChatGPT también se usa como parser de las respuestas de los otros modelos"""
        pass


class HttpLLMClient(ILLMClient):
    """
    Cliente HTTP para ChatGPT, Claude y Gemini.
    Cada proveedor tiene su formato de request y de respuesta.
    """

    def __init__(self, config: LLMConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def query(self, model: str, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE) -> LLMResponse:
        if model == AIModel.CHATGPT.value:
            return await self.call_chatgpt(prompt, system_message)
        if model == AIModel.CLAUDE.value:
            return await self.call_claude(prompt, system_message)
        if model == AIModel.GEMINI.value:
            return await self.call_gemini(prompt, system_message)
        raise ValueError(f"Unsupported AI model: {model}")

    async def call_chatgpt(self, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE,
                           include_system: bool = True) -> LLMResponse:
        """
        Llama a chat completions de OpenAI.

        Args:
            include_system: False envía solo el mensaje de usuario (usado para el parseo)
        """
        if not self.config.openai_api_key:
            raise LLMError("ChatGPT API key not configured")

        messages: List[Dict[str, str]] = []
        if include_system:
            messages.append({"role": "system", "content": system_message})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": self.config.openai_model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "Content-Type": "application/json",
        }
        data, elapsed = await self._post("ChatGPT", self.config.openai_api_url, payload, headers)
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise LLMError(f"ChatGPT API error: unexpected response {data}")
        return LLMResponse(response=text, response_time=elapsed)

    async def call_claude(self, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE) -> LLMResponse:
        """Llama a messages de Anthropic"""
        if not self.config.claude_api_key:
            raise LLMError("Claude API key not configured")

        payload = {
            "model": self.config.claude_model,
            "max_tokens": self.config.max_tokens,
            "system": system_message,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self.config.claude_api_key,
            "anthropic-version": "2023-06-01",
            "Content-Type": "application/json",
        }
        data, elapsed = await self._post("Claude", self.config.claude_api_url, payload, headers)
        try:
            text = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise LLMError(f"Claude API error: unexpected response {data}")
        return LLMResponse(response=text, response_time=elapsed)

    async def call_gemini(self, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE) -> LLMResponse:
        """Llama a generateContent de Gemini. No hay rol system: se antepone al prompt"""
        if not self.config.gemini_api_key:
            raise LLMError("Gemini API key not configured")

        payload = {"contents": [{"parts": [{"text": f"{system_message}\n\n{prompt}"}]}]}
        headers = {
            "x-goog-api-key": self.config.gemini_api_key,
            "Content-Type": "application/json",
        }
        data, elapsed = await self._post("Gemini", self.config.gemini_api_url, payload, headers)
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise LLMError(f"Gemini API error: unexpected response {data}")
        return LLMResponse(response=text, response_time=elapsed)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential_jitter(initial=1, max=20),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _send(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        return await self._get_client().post(url, json=payload, headers=headers)

    async def _post(self, model: str, url: str, payload: Dict[str, Any], headers: Dict[str, str]):
        """POST con medición de tiempo; errores HTTP se traducen a LLMError"""
        start = time.monotonic()
        try:
            response = await self._send(url, payload, headers)
        except httpx.HTTPError as e:
            logger.error(f"{model} connection error: {e}")
            raise LLMError(f"{model} API error: {e}") from e

        elapsed = int((time.monotonic() - start) * 1000)

        if not 200 <= response.status_code < 300:
            message = self._parse_error_message(response)
            logger.error(f"{model} API error ({response.status_code}): {message}")
            raise LLMError(f"{model} API error ({response.status_code}): {message}")

        return response.json(), elapsed

    @staticmethod
    def _parse_error_message(response: httpx.Response) -> str:
        """Extrae el mensaje de error del body si existe"""
        try:
            body = response.json()
        except ValueError:
            return response.reason_phrase or response.text
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
            if isinstance(error, str):
                return error
        return response.reason_phrase or str(body)


class MockLLMClient(ILLMClient):
    """Cliente mock para testing: devuelve respuestas programadas"""

    def __init__(self, responses: Optional[Dict[str, str]] = None, default: str = "Mock response"):
        self.responses = responses or {}
        self.default = default
        self.calls: List[Dict[str, str]] = []

    async def query(self, model: str, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE) -> LLMResponse:
        if model not in AIModel.values():
            raise ValueError(f"Unsupported AI model: {model}")
        self.calls.append({"model": model, "prompt": prompt, "system": system_message})
        return LLMResponse(response=self.responses.get(model, self.default), response_time=10)

    async def call_chatgpt(self, prompt: str, system_message: str = DEFAULT_SYSTEM_MESSAGE,
                           include_system: bool = True) -> LLMResponse:
        self.calls.append({"model": "ChatGPT", "prompt": prompt, "system": system_message if include_system else ""})
        return LLMResponse(response=self.responses.get("parser", self.default), response_time=10)
