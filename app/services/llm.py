import json
import logging
import re
from typing import TypeVar

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.config import (
    ANTHROPIC_API_KEY,
    LLM_DEFAULT_TIER,
    LLM_MODEL_FAST,
    LLM_MODEL_HIGH,
    LLM_MODEL_STANDARD,
    LLM_PROVIDER,
    OPENAI_API_KEY,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


_ANTHROPIC_DEFAULTS = {
    "fast": "claude-3-5-haiku-latest",
    "standard": "claude-sonnet-4-5",
    "high": "claude-sonnet-4-5",
}

_OPENAI_DEFAULTS = {
    "fast": "gpt-4o-mini",
    "standard": "gpt-4o",
    "high": "gpt-4o",
}

_JSON_INSTRUCTION = "\n\nRespond with a single JSON object only, no prose and no markdown."


def _strip_json(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    if text.startswith("["):
        return text
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start:end + 1]
    return text


def _split_data_uri(data_uri: str) -> tuple[str, str]:
    """Split ``data:<mime>;base64,<data>`` into (mime, base64 payload)."""
    match = re.match(r"^data:([^;,]+);base64,(.*)$", data_uri, re.DOTALL)
    if not match:
        raise ValueError("Document must be a base64 data URI")
    return match.group(1), match.group(2)


def _coerce_payload(data: object, response_model: type[T]) -> object:
    """Wrap bare lists/strings into the single-field shape of ``response_model``."""
    fields = list(response_model.model_fields)
    if len(fields) != 1:
        return data
    field = fields[0]
    if isinstance(data, dict):
        if field in data:
            return data
        # e.g. {"concepts": [...]} for ConceptList.clinical_concepts
        if len(data) == 1:
            return {field: next(iter(data.values()))}
        return data
    if isinstance(data, (list, str)):
        return {field: data}
    return data


class LLMClient:
    def __init__(self) -> None:
        provider = (LLM_PROVIDER or "auto").lower()
        if provider == "auto":
            if ANTHROPIC_API_KEY:
                provider = "anthropic"
            elif OPENAI_API_KEY:
                provider = "openai"
            else:
                provider = "none"
        self.provider = provider

        self._anthropic = AsyncAnthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
        self._openai = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None

    def available(self) -> bool:
        if self.provider == "anthropic":
            return self._anthropic is not None
        if self.provider == "openai":
            return self._openai is not None
        return False

    def model_for_tier(self, tier: str | None) -> str:
        tier = (tier or LLM_DEFAULT_TIER or "fast").lower()
        if tier not in ("fast", "standard", "high"):
            tier = "standard"

        if tier == "fast" and LLM_MODEL_FAST:
            return LLM_MODEL_FAST
        if tier == "standard" and LLM_MODEL_STANDARD:
            return LLM_MODEL_STANDARD
        if tier == "high" and LLM_MODEL_HIGH:
            return LLM_MODEL_HIGH

        if self.provider == "anthropic":
            return _ANTHROPIC_DEFAULTS[tier]
        return _OPENAI_DEFAULTS[tier]

    async def generate_json(
        self,
        *,
        system: str,
        user: str,
        response_model: type[T],
        max_tokens: int = 2048,
        tier: str | None = None,
    ) -> T:
        return await self._complete(
            system=system,
            anthropic_content=user,
            openai_content=user,
            response_model=response_model,
            max_tokens=max_tokens,
            tier=tier,
        )

    async def generate_json_from_document(
        self,
        *,
        system: str,
        user: str,
        data_uri: str,
        response_model: type[T],
        max_tokens: int = 4096,
        tier: str | None = None,
    ) -> T:
        """Structured completion over an image or PDF passed as a data URI."""
        mime_type, payload = _split_data_uri(data_uri)
        if mime_type == "application/pdf":
            anthropic_block = {
                "type": "document",
                "source": {"type": "base64", "media_type": mime_type, "data": payload},
            }
            openai_block = {
                "type": "file",
                "file": {"filename": "document.pdf", "file_data": data_uri},
            }
        else:
            anthropic_block = {
                "type": "image",
                "source": {"type": "base64", "media_type": mime_type, "data": payload},
            }
            openai_block = {"type": "image_url", "image_url": {"url": data_uri}}

        return await self._complete(
            system=system,
            anthropic_content=[anthropic_block, {"type": "text", "text": user}],
            openai_content=[openai_block, {"type": "text", "text": user}],
            response_model=response_model,
            max_tokens=max_tokens,
            tier=tier or "standard",
        )

    async def _complete(
        self,
        *,
        system: str,
        anthropic_content: str | list,
        openai_content: str | list,
        response_model: type[T],
        max_tokens: int,
        tier: str | None,
    ) -> T:
        if not self.available():
            raise RuntimeError("LLM provider unavailable")

        model = self.model_for_tier(tier)

        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=system + _JSON_INSTRUCTION,
                messages=[{"role": "user", "content": anthropic_content}],
            )
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            raw = _strip_json(raw)
            try:
                return response_model.model_validate_json(raw)
            except ValidationError:
                payload = json.loads(raw)
                coerced = _coerce_payload(payload, response_model)
                return response_model.model_validate(coerced)

        response = await self._openai.beta.chat.completions.parse(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": openai_content},
            ],
            response_format=response_model,
        )
        parsed = response.choices[0].message.parsed
        if parsed is None:
            raise RuntimeError("LLM parse returned no data")
        return parsed


_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
