"""Multi-provider LLM client with support for Anthropic, OpenAI, and custom APIs."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class LLMError(Exception):
    """Raised when a provider call fails or returns nothing usable."""
    pass


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @abstractmethod
    async def generate(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
    ) -> Tuple[str, Dict[str, int]]:
        """
        Generate a reply for a chat transcript.

        Args:
            messages: Chat messages, oldest first ({"role": ..., "content": ...})
            system_prompt: Optional system prompt
            max_tokens: Maximum tokens to generate

        Returns:
            Tuple of (generated_text, usage) where usage has input_tokens and output_tokens
        """
        pass

    async def _post(self, url: str, headers: Dict[str, str], payload: Dict) -> Dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                if not response.text:
                    raise LLMError(f"Empty response from API. Status: {response.status_code}")
                try:
                    return response.json()
                except ValueError:
                    raise LLMError(f"Invalid JSON response. Content: {response.text[:500]}")
        except httpx.HTTPStatusError as e:
            raise LLMError(f"HTTP error: {e.response.status_code} - {e.response.text}")
        except httpx.TimeoutException as e:
            raise LLMError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            raise LLMError(f"Request failed: connection error: {e}")


class AnthropicClient(LLMClient):
    """Anthropic Claude API client."""

    async def generate(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
    ) -> Tuple[str, Dict[str, int]]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if system_prompt:
            payload["system"] = system_prompt

        data = await self._post(f"{self.base_url}/v1/messages", headers, payload)
        if not data.get("content"):
            raise LLMError("No content in response")

        usage = data.get("usage", {})
        return data["content"][0]["text"], {
            "input_tokens": usage.get("input_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
        }


class OpenAIClient(LLMClient):
    """OpenAI chat completions client."""

    completions_path = "/v1/chat/completions"

    async def generate(
        self,
        messages: List[Message],
        system_prompt: Optional[str] = None,
        max_tokens: int = 1000,
    ) -> Tuple[str, Dict[str, int]]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        chat = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        chat.extend(messages)

        payload = {
            "model": self.model,
            "messages": chat,
            "max_tokens": max_tokens,
        }

        data = await self._post(f"{self.base_url}{self.completions_path}", headers, payload)
        if not data.get("choices"):
            raise LLMError(f"No choices in response. Response: {data}")

        usage = data.get("usage", {})
        return data["choices"][0]["message"]["content"], {
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
        }


class CustomClient(OpenAIClient):
    """Third-party OpenAI-compatible API; the base URL already carries the version prefix."""

    completions_path = "/chat/completions"


def get_llm_client() -> LLMClient:
    """
    Get LLM client based on configuration.

    Returns:
        Configured LLM client instance
    """
    if settings.is_anthropic:
        client_class = AnthropicClient
    elif settings.is_openai:
        client_class = OpenAIClient
    else:
        client_class = CustomClient

    logger.info(f"Using {client_class.__name__} with model {settings.llm_model}")
    return client_class(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout=settings.ai_timeout_seconds,
    )
