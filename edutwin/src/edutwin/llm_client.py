"""
LLM Gateway

Thin wrapper around the OpenAI async SDK:
- Validates the API key once at construction
- Exposes a guarded ``invoke`` that makes exactly one attempt
- Classifies transport failures by HTTP status
- Helpers for chat, structured (JSON schema) and streamed completions

There is no retry, caching or circuit breaking here. Callers catch
``LLMError`` and fall back to their own deterministic output.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from edutwin.config import Settings
from edutwin.exceptions import (
    LLMError,
    LLMParseError,
    LLMTransportError,
    LLMUnavailableError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk-"
MIN_API_KEY_LENGTH = 48

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    """Base for structured responses; JSON keys are camelCase, attributes snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass
class ChatReply:
    """Text result of a single chat completion."""
    content: str
    finish_reason: Optional[str] = None
    total_tokens: int = 0
    model: Optional[str] = None


def validate_api_key(api_key: Optional[str]) -> bool:
    """Check that the key is present and looks like an OpenAI secret key."""
    if not api_key:
        logger.error("❌ [LLMGateway] OpenAI API key is missing from environment variables")
        return False

    if not api_key.startswith(API_KEY_PREFIX) or len(api_key) < MIN_API_KEY_LENGTH:
        logger.error("❌ [LLMGateway] OpenAI API key format is invalid. Expected format: sk-...")
        return False

    return True


def response_schema(schema: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema for a structured response, closed to extra properties."""
    json_schema = schema.model_json_schema(by_alias=True)
    json_schema["additionalProperties"] = False
    return json_schema


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
    return text.strip()


def parse_structured(content: Optional[str], schema: Type[ModelT], operation: str) -> ModelT:
    """Parse model output into ``schema``, raising ``LLMParseError`` on any mismatch."""
    if not content:
        raise LLMParseError(operation, "empty response content")
    try:
        data = json.loads(_strip_code_fence(content))
        return schema.model_validate(data)
    except json.JSONDecodeError as e:
        raise LLMParseError(operation, f"invalid JSON: {e}") from e
    except ValidationError as e:
        raise LLMParseError(operation, f"schema mismatch: {e.error_count()} error(s)") from e


def _status_code(error: Exception) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


class LLMGateway:
    """
    Single entry point to the hosted model.

    Availability is decided once, from the credential, when the gateway is
    built. A missing or malformed key disables live calls for the lifetime of
    the instance.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o",
        temperature: float = 0.7,
        max_tokens: int = 500,
        client: Optional[Any] = None
    ):
        """
        Initialize the gateway.

        Args:
            api_key: OpenAI API key
            model: Chat model used for every call
            temperature: Default sampling temperature for free-text replies
            max_tokens: Default completion limit for free-text replies
            client: Pre-built SDK client (tests inject a fake here)
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        # Attempts that actually reached the SDK client
        self.call_count = 0
        self._client: Optional[Any] = None

        if not validate_api_key(api_key):
            logger.warning("⚠️ [LLMGateway] OpenAI client not initialized due to invalid API key. AI features will use fallback responses.")
            return

        if client is not None:
            self._client = client
            return

        try:
            self._client = AsyncOpenAI(api_key=api_key)
        except Exception as e:
            logger.error(f"❌ [LLMGateway] Failed to initialize OpenAI client: {e}")
            self._client = None

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Any] = None) -> "LLMGateway":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            client=client,
        )

    def is_available(self) -> bool:
        return self._client is not None

    def _classify(self, error: Exception, operation: str) -> LLMTransportError:
        status_code = _status_code(error)
        kind = TransportErrorKind.from_status(status_code)
        logger.error(f"❌ [LLMGateway] Error in {operation}: {error} (kind={kind.value}, status={status_code})")
        return LLMTransportError(operation, kind, status_code=status_code, detail=str(error))

    async def invoke(
        self,
        request_builder: Callable[[Any], Awaitable[T]],
        operation: str = "OpenAI API call"
    ) -> T:
        """
        Run one request against the SDK client.

        Args:
            request_builder: Async callable that receives the SDK client
            operation: Label used in logs and raised errors

        Raises:
            LLMUnavailableError: Gateway has no usable client
            LLMTransportError: The attempt failed
        """
        if self._client is None:
            raise LLMUnavailableError(operation)

        self.call_count += 1
        try:
            return await request_builder(self._client)
        except LLMError:
            raise
        except Exception as e:
            raise self._classify(e, operation) from e

    async def chat(
        self,
        operation: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None
    ) -> ChatReply:
        """Single chat completion returning its text."""
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if response_format is not None:
            kwargs["response_format"] = response_format

        response = await self.invoke(
            lambda client: client.chat.completions.create(**kwargs),
            operation
        )

        try:
            choice = response.choices[0]
            content = choice.message.content or ""
        except (AttributeError, IndexError, TypeError) as e:
            raise LLMParseError(operation, f"unexpected completion shape: {e}") from e

        usage = getattr(response, "usage", None)
        return ChatReply(
            content=content,
            finish_reason=getattr(choice, "finish_reason", None),
            total_tokens=getattr(usage, "total_tokens", 0) or 0,
            model=self.model,
        )

    async def structured(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        schema: Type[ModelT],
        schema_name: str
    ) -> ModelT:
        """
        Chat completion constrained to a JSON schema.

        Raises:
            LLMParseError: Response is not valid JSON for ``schema``
        """
        response_format = {
            "type": "json_schema",
            "json_schema": {
                "name": schema_name,
                "schema": response_schema(schema),
            },
        }
        reply = await self.chat(
            operation,
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format=response_format,
        )
        return parse_structured(reply.content, schema, operation)

    async def stream(
        self,
        operation: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[str]:
        """Yield text deltas from a streamed chat completion."""
        stream = await self.invoke(
            lambda client: client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=self.max_tokens if max_tokens is None else max_tokens,
            ),
            operation
        )

        try:
            async for chunk in stream:
                if chunk.choices and len(chunk.choices) > 0:
                    delta = chunk.choices[0].delta
                    if delta and delta.content:
                        yield delta.content
        except LLMError:
            raise
        except Exception as e:
            raise self._classify(e, operation) from e
