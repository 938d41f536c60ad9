"""Provider adapters: one `generate` call shape over Google, Groq and OpenRouter."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any, Optional, Sequence, Callable, Awaitable

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .config import (
    DEFAULT_MODEL_NAME,
    GROQ_API_URL,
    OPENROUTER_API_URL,
    OPENROUTER_SITE_URL,
    OPENROUTER_APP_TITLE,
    REQUEST_TIMEOUT,
)
from .errors import AuthError, TransportError, ProtocolError, UNKNOWN_ERROR_MESSAGE

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    GOOGLE = "google"
    GROQ = "groq"
    OPENROUTER = "openrouter"


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One conversation turn."""
    role: str
    text: str


@dataclass(frozen=True)
class ProviderConfig:
    """Provider, model and credential captured for a single request."""
    provider: Provider
    model: str
    api_key: str

    def require_credential(self) -> None:
        if not self.api_key or not self.api_key.strip():
            raise AuthError(f"{self.provider.value} API key is missing.")


@dataclass(frozen=True)
class ChatEndpoint:
    url: str
    headers: Dict[str, str]


CHAT_ENDPOINTS: Dict[Provider, ChatEndpoint] = {
    Provider.GROQ: ChatEndpoint(url=GROQ_API_URL, headers={}),
    Provider.OPENROUTER: ChatEndpoint(
        url=OPENROUTER_API_URL,
        headers={
            "HTTP-Referer": OPENROUTER_SITE_URL,
            "X-Title": OPENROUTER_APP_TITLE,
        },
    ),
}


def build_chat_messages(conversation: Sequence[Turn], system_instruction: str) -> List[Dict[str, str]]:
    """Flatten the system instruction and turns into chat-completion messages."""
    messages = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})
    for turn in conversation:
        messages.append({"role": turn.role, "content": turn.text})
    return messages


def build_gemini_contents(conversation: Sequence[Turn]) -> List[types.Content]:
    contents = []
    for turn in conversation:
        role = "model" if turn.role == ROLE_ASSISTANT else "user"
        contents.append(types.Content(role=role, parts=[types.Part(text=turn.text)]))
    return contents


def extract_error_message(data: Any) -> str:
    """Pull `error.message` out of an upstream error body, if it has one."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
        if isinstance(error, str) and error:
            return error
    return UNKNOWN_ERROR_MESSAGE


def extract_choice_content(data: Any, provider: Provider) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ProtocolError(f"Unexpected response from {provider.value}: missing choices[0].message.content")
    if not isinstance(content, str):
        raise ProtocolError(f"Unexpected response from {provider.value}: message content is empty")
    return content


async def _generate_openai_compatible(
    conversation: Sequence[Turn],
    system_instruction: str,
    config: ProviderConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    endpoint = CHAT_ENDPOINTS[config.provider]
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }
    headers.update({k: v for k, v in endpoint.headers.items() if v})

    payload = {
        "model": config.model,
        "messages": build_chat_messages(conversation, system_instruction),
    }

    try:
        if http_client is not None:
            response = await http_client.post(endpoint.url, headers=headers, json=payload)
        else:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.post(endpoint.url, headers=headers, json=payload)
    except httpx.HTTPError as e:
        raise TransportError(f"Network error contacting {config.provider.value}: {e}") from e

    if not response.is_success:
        try:
            data = response.json()
        except ValueError:
            data = None
        message = f"API Error from {config.provider.value}: {extract_error_message(data)}"
        if response.status_code in (401, 403):
            raise AuthError(message)
        raise TransportError(message, status_code=response.status_code)

    try:
        data = response.json()
    except ValueError:
        raise ProtocolError(f"Unexpected response from {config.provider.value}: body is not JSON")
    return extract_choice_content(data, config.provider)


async def _generate_google(
    conversation: Sequence[Turn],
    system_instruction: str,
    config: ProviderConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    client = genai.Client(api_key=config.api_key)
    try:
        response = await client.aio.models.generate_content(
            model=config.model or DEFAULT_MODEL_NAME,
            contents=build_gemini_contents(conversation),
            config=types.GenerateContentConfig(system_instruction=system_instruction),
        )
    except genai_errors.APIError as e:
        message = f"API Error from google: {e.message or UNKNOWN_ERROR_MESSAGE}"
        if e.code in (401, 403):
            raise AuthError(message) from e
        raise TransportError(message, status_code=e.code) from e
    except Exception as e:
        # the SDK may sit on httpx or aiohttp, each with its own error types
        logger.warning("google request failed: %s", e)
        raise TransportError(f"Network error contacting google: {str(e) or UNKNOWN_ERROR_MESSAGE}") from e
    finally:
        await client.aio.aclose()

    text = response.text
    if text is None:
        raise ProtocolError("Unexpected response from google: no text in candidates")
    return text


Adapter = Callable[..., Awaitable[str]]

ADAPTERS: Dict[Provider, Adapter] = {
    Provider.GOOGLE: _generate_google,
    Provider.GROQ: _generate_openai_compatible,
    Provider.OPENROUTER: _generate_openai_compatible,
}


async def generate(
    conversation: Sequence[Turn],
    system_instruction: str,
    config: ProviderConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> str:
    """
    Run one chat completion against the configured provider.

    Args:
        conversation: Ordered turns, oldest first
        system_instruction: Role instruction for this call
        config: Provider, model and credential for the request
        http_client: Optional client for the OpenAI-compatible providers

    Returns:
        The generated text

    Raises:
        AuthError, TransportError or ProtocolError
    """
    config.require_credential()
    adapter = ADAPTERS[config.provider]
    logger.debug("Calling %s model=%s turns=%d", config.provider.value, config.model, len(conversation))
    return await adapter(conversation, system_instruction, config, http_client=http_client)
