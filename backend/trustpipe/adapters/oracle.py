"""Text-reasoning oracle and the typed adapter that validates its answers.

The oracle itself only turns a prompt into raw text. ``ReasoningAdapter``
owns the prompts, strips code fences, parses JSON, validates it against a
pydantic schema and clamps confidences. Anything it cannot parse is a
``TransientExternalError`` so the dispatcher retries the task.
"""

import json
from typing import Any, Optional, Protocol

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

from trustpipe.config import get_settings
from trustpipe.engines.scoring import clamp
from trustpipe.errors import ConfigurationError, ExternalServiceRejectedError, TransientExternalError

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are a verification assistant for a job marketplace. "
    "Answer with a single JSON object and nothing else."
)


class TextOracle(Protocol):
    async def generate(self, prompt: str) -> str: ...


class OpenAIOracle:
    """Oracle backed by OpenAI chat completions in JSON mode."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.timeout = timeout if timeout is not None else settings.external_call_timeout_seconds
        self._client: Optional[AsyncOpenAI] = None

    @property
    def is_available(self) -> bool:
        """Check if an API key is configured."""
        return bool(self.api_key and self.api_key not in ("", "sk-placeholder"))

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load the OpenAI client only when needed."""
        if self._client is None:
            if not self.is_available:
                raise ConfigurationError("TRUST_OPENAI_API_KEY is not configured")
            # Retries belong to the dispatcher's policy
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0,
                max_tokens=800,
            )
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as e:
            raise TransientExternalError(f"Oracle unavailable: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientExternalError(f"Oracle error {e.status_code}") from e
            raise ExternalServiceRejectedError(
                f"Oracle rejected request ({e.status_code})",
                details={"status_code": e.status_code},
            ) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TransientExternalError("Oracle returned an empty response")
        return content


# ============================================
# SCHEMAS
# ============================================


class _OracleAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("confidence", mode="before", check_fields=False)
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            return clamp(float(value), 0.0, 1.0)
        except (TypeError, ValueError):
            return 0.0


class CheckOutcome(_OracleAnswer):
    """One verification check: ``{passed, confidence, details}``."""

    passed: bool
    confidence: float = 0.0
    details: Optional[str] = None


class SalaryComparison(_OracleAnswer):
    """Oracle verdict on a provided salary versus market statistics."""

    is_valid: bool = Field(alias="isValid")
    confidence: float = 0.0
    comparison: dict = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)

    @field_validator("reasons", mode="before")
    @classmethod
    def _coerce_reasons(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    @field_validator("comparison", mode="before")
    @classmethod
    def _coerce_comparison(cls, value: Any) -> dict:
        return value if isinstance(value, dict) else {"summary": value}

    def to_result(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "comparison": self.comparison,
            "reasons": self.reasons,
        }


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_answer(raw: str, schema: type[BaseModel]) -> BaseModel:
    """Parse oracle text into ``schema`` or raise TransientExternalError."""
    try:
        data = json.loads(strip_fences(raw))
    except ValueError as e:
        logger.warning("Oracle returned malformed JSON", preview=raw[:200])
        raise TransientExternalError("Oracle returned malformed JSON") from e
    if not isinstance(data, dict):
        raise TransientExternalError("Oracle answer is not a JSON object")
    try:
        return schema.model_validate(data)
    except SchemaError as e:
        logger.warning("Oracle answer failed validation", schema=schema.__name__, errors=e.error_count())
        raise TransientExternalError(f"Oracle answer failed validation: {e.error_count()} errors") from e


class ReasoningAdapter:
    """Typed questions asked of a TextOracle."""

    def __init__(self, oracle: TextOracle):
        self.oracle = oracle

    async def check_business_registration(self, company: dict) -> CheckOutcome:
        prompt = (
            "Assess whether this company appears to be a legally registered business. "
            f"Company: {json.dumps(company, default=str)}. "
            'Return {"passed": boolean, "confidence": number between 0 and 1, "details": string}.'
        )
        return parse_answer(await self.oracle.generate(prompt), CheckOutcome)

    async def compare_salary(self, provided: dict, market: dict) -> SalaryComparison:
        prompt = (
            f"Compare provided salary: {json.dumps(provided, default=str)} "
            f"with market data: {json.dumps(market, default=str)}. "
            'Return {"is_valid": boolean, "confidence": number between 0 and 1, '
            '"comparison": object, "reasons": array of strings}.'
        )
        return parse_answer(await self.oracle.generate(prompt), SalaryComparison)
