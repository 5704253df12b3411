"""Quote extraction: free-text supplier message -> one structured price fact.

The pipeline talks to any object satisfying ``Extractor``. ``LLMExtractor``
calls an OpenAI-compatible chat completions endpoint (Gemini by default) with
retry on transient failures; ``ai.patterns.PatternExtractor`` is the offline
fallback.

Failure modes are exceptions, not return values:
- ``ServiceUnavailable``: no credentials, endpoint unreachable, retries exhausted
- ``NoExtraction``: the service answered but nothing usable came back
"""
from __future__ import annotations

import json
import logging
import math
import re
from decimal import Decimal
from typing import Protocol, Union

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, field_validator
from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.extraction_prompt import SYSTEM_PROMPT, build_user_prompt
from pricebook.config import ExtractionBackend, settings
from pricebook.domain import ExtractedFact
from pricebook.errors import NoExtraction, ServiceUnavailable
from pricebook.pipelines.normalization import clean_message_text

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```\w*\s*\n?(.*?)\n?\s*```", re.DOTALL)

# Worth another attempt; everything else fails fast
_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class Extractor(Protocol):
    """Capability boundary between the pipeline and language understanding."""

    @property
    def available(self) -> bool: ...

    async def extract(self, text: str) -> ExtractedFact: ...


class FactPayload(BaseModel):
    """Wire shape of the model's answer."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_name: str = Field(alias="productName")
    price: Union[StrictInt, StrictFloat]
    supplier_name: str | None = Field(default=None, alias="supplierName")
    conditions: str | None = None

    @field_validator("product_name")
    @classmethod
    def product_name_present(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("productName is blank")
        return v

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: int | float) -> int | float:
        if isinstance(v, float) and not math.isfinite(v):
            raise ValueError("price is not finite")
        if v <= 0:
            raise ValueError("price must be positive")
        return v

    @field_validator("supplier_name", "conditions")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def to_fact(self) -> ExtractedFact:
        return ExtractedFact(
            product_name=self.product_name,
            # str() keeps 18.9 from turning into 18.899999...
            price=Decimal(str(self.price)),
            supplier_name=self.supplier_name,
            conditions=self.conditions,
        )


def strip_code_fences(payload: str) -> str:
    """Return the body of the first ```json ... ``` block, ignoring any chatter around it."""
    payload = payload.strip()
    match = _FENCE_RE.search(payload)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return payload


def parse_fact_payload(payload: str | None) -> ExtractedFact:
    """Turn the service's raw answer into a fact.

    Raises:
        NoExtraction: empty, non-JSON, ``null`` or wrongly shaped payload
    """
    if not payload or not payload.strip():
        raise NoExtraction("empty response")

    body = strip_code_fences(payload)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise NoExtraction(f"response is not JSON: {e.msg}") from e

    if data is None:
        raise NoExtraction("model declined (null)")
    if isinstance(data, list):
        # Some models wrap a single answer in a list
        data = data[0] if data else None
    if not isinstance(data, dict):
        raise NoExtraction(f"unexpected JSON type {type(data).__name__}")

    try:
        return FactPayload.model_validate(data).to_fact()
    except PydanticValidationError as e:
        raise NoExtraction(f"invalid fact: {e.error_count()} field error(s)") from e


class LLMExtractor:
    """Extraction via an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        retry_backoff: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        cfg = settings.extraction
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.base_url = base_url or cfg.base_url
        self.model = model or cfg.model
        self.temperature = temperature if temperature is not None else cfg.temperature
        self.timeout_seconds = timeout_seconds or cfg.timeout_seconds
        self.max_attempts = max_attempts or cfg.max_attempts
        self.retry_backoff = retry_backoff if retry_backoff is not None else cfg.retry_backoff
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ServiceUnavailable("extraction API key not configured")
            # Retries are ours (tenacity), not the SDK's
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def extract(self, text: str) -> ExtractedFact:
        cleaned = clean_message_text(text)
        if not cleaned:
            raise NoExtraction("empty message")

        client = self._get_client()
        try:
            content = await self._complete(client, cleaned)
        except _TRANSIENT_ERRORS as e:
            logger.warning(f"Extraction service unreachable after {self.max_attempts} attempt(s): {e}")
            raise ServiceUnavailable(str(e)) from e
        except openai.BadRequestError as e:
            logger.warning(f"Extraction service rejected message: {e}")
            raise NoExtraction(str(e)) from e
        except openai.APIError as e:
            logger.error(f"Extraction service error: {e}")
            raise ServiceUnavailable(str(e)) from e

        fact = parse_fact_payload(content)
        logger.debug(f"Extracted {fact.product_name!r} at {fact.price}")
        return fact

    async def _complete(self, client: AsyncOpenAI, message: str) -> str | None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=10),
            retry=retry_if_exception_type(_TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                response = await client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": build_user_prompt(message)},
                    ],
                    temperature=self.temperature,
                    response_format={"type": "json_object"},
                )
        if not response.choices:
            return None
        return response.choices[0].message.content


def build_extractor(backend: ExtractionBackend | None = None) -> Extractor:
    """Adapter selected by ``EXTRACTION_BACKEND``."""
    backend = backend or settings.extraction.backend
    if backend == ExtractionBackend.PATTERN:
        from ai.patterns import PatternExtractor

        return PatternExtractor()

    extractor = LLMExtractor()
    if not extractor.available:
        logger.warning("Extraction API key is not configured. Message processing will be disabled.")
    return extractor
