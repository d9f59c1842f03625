"""
OpenAI-compatible text-understanding engine.

Chat completions in JSON mode. Every response is parsed and validated
against the contract models before it leaves this module; rate-limit
responses are translated into UpstreamRateLimited with the provider's
retry hints attached.
"""

import json
import time
from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.config import settings
from app.engines.base import TextUnderstandingEngine
from app.errors import UpstreamExtractionError, UpstreamRateLimited
from app.observability.metrics import llm_requests_total
from app.schemas.analysis import AnalysisSnapshot
from app.schemas.contracts import (
    AccountContext,
    ExtractedTransaction,
    ExtractionResponse,
    NarrativeResponse,
)

logger = structlog.get_logger(__name__)


# ─── Prompts ──────────────────────────────────────────────────

CONTEXT_PROMPT = """You classify Indian bank and credit card statements.
From the FIRST PAGE text below, return ONLY this JSON object:
{{
  "accountType": "bank" | "credit_card",
  "bankName": string | null,
  "accountLast4": string | null,
  "cardLast4": string | null,
  "holderName": string | null,
  "statementPeriod": {{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}} | null
}}
Rules:
- "Credit Card Statement" means credit_card. Debit card usage does not.
- Masked numbers give the last four digits (XXXX1234 -> 1234).
- Never guess. Use null when a value is not present.

FIRST PAGE TEXT:
{text}
"""

EXTRACTION_PROMPT = """You extract transactions from one chunk of a statement.
The account context is authoritative; never reinterpret it.

ACCOUNT CONTEXT
- Account ID: {account_id}
- Account Type: {account_type}
- Bank Name: {bank_name}
- Holder Name: {holder_name}

Return ONLY this JSON object:
{{"transactions": [{{
  "date": "YYYY-MM-DD",
  "amount": positive number,
  "direction": "inflow" | "outflow",
  "description": verbatim transaction text,
  "merchant": clean merchant name or null,
  "source": "bank" | "upi" | "credit_card",
  "category": string or null,
  "subcategory": string or null,
  "is_internal_transfer": boolean,
  "is_interest": boolean,
  "is_fee": boolean,
  "confidence": number between 0 and 1,
  "is_recurring_candidate": boolean,
  "recurring_signal": "SI" | "AUTO_DEBIT" | "MERCHANT_RECURRING" | null
}}]}}
Rules:
- Direction is the user's cash flow. Bank credits are inflow, debits outflow.
  Card spends are outflow, refunds inflow.
- is_internal_transfer only when the counterparty in the transaction line is
  the holder AND the line says SELF or OWN ACCOUNT. Businesses never are.
  Internal transfers use subcategory "self_transfer".
- Skip opening and closing balances, totals and headers.
- When in doubt set flags to false and confidence low.

STATEMENT TEXT:
{text}
"""

NARRATIVE_PROMPT = """You structure a PRECOMPUTED financial snapshot into a report.
Never recompute, infer or invent figures; never drop data present in the snapshot.
Return ONLY this JSON object:
{{
  "summary": [short plain-language observations],
  "report": {{
    "monthly_breakdown": [{{"month": "MMM YYYY", "income": number, "expenses": number, "net": number}}],
    "expense_categories": [{{"category": string, "amount": number, "percentage": number, "rank": number}}],
    "income_sources": [{{"source": string, "amount": number, "rank": number}}],
    "subscriptions": {{"present": boolean, "items": [...]}},
    "risks": [string],
    "health_score": number
  }}
}}

SNAPSHOT:
{snapshot}
"""


# ─── Error mapping ────────────────────────────────────────────

def _header_float(headers, name: str, scale: float = 1.0) -> Optional[float]:
    value = headers.get(name) if headers is not None else None
    if value is None:
        return None
    try:
        return float(value) * scale
    except ValueError:
        return None


def rate_limit_from_error(error: openai.RateLimitError) -> UpstreamRateLimited:
    """Translate a 429 into UpstreamRateLimited carrying the provider hints."""
    headers = error.response.headers if error.response is not None else None

    retry_after = _header_float(headers, "retry-after-ms", scale=0.001)
    if retry_after is None:
        retry_after = _header_float(headers, "retry-after")

    reset_tokens = headers.get("x-ratelimit-reset-tokens") if headers is not None else None
    reset_requests = headers.get("x-ratelimit-reset-requests") if headers is not None else None
    remaining_tokens = _header_float(headers, "x-ratelimit-remaining-tokens")

    message = str(error.message or error)
    token_exhausted = remaining_tokens == 0 or "tokens" in message.lower()

    return UpstreamRateLimited(
        message,
        retry_after=retry_after,
        reset_window=reset_tokens if token_exhausted and reset_tokens else (reset_requests or reset_tokens),
        token_exhausted=token_exhausted,
    )


# ─── Engine ───────────────────────────────────────────────────

class OpenAIEngine(TextUnderstandingEngine):
    """Text-understanding engine backed by the OpenAI chat completions API."""

    engine_name = "openai"

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,   # retries belong to RateLimitedExecutor
        )

    async def _complete_json(self, operation: str, model: str, prompt: str, usage=None) -> dict:
        """One JSON-mode completion. Returns the decoded object."""
        start = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=model,
                temperature=0,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            llm_requests_total.labels(operation=operation, outcome="rate_limited").inc()
            raise rate_limit_from_error(e) from e
        except openai.APIError as e:
            llm_requests_total.labels(operation=operation, outcome="error").inc()
            raise UpstreamExtractionError(f"{operation} call failed: {e}") from e

        llm_requests_total.labels(operation=operation, outcome="success").inc()
        latency_ms = int((time.monotonic() - start) * 1000)
        if usage is not None and response.usage is not None:
            usage.record(
                engine_name=self.engine_name,
                operation=operation,
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                latency_ms=latency_ms,
            )

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise UpstreamExtractionError(f"{operation} returned an empty response")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise UpstreamExtractionError(
                f"{operation} returned invalid JSON: {e}",
                error_code="ERR_UPSTREAM_INVALID_JSON",
            ) from e

        if not isinstance(parsed, dict):
            raise UpstreamExtractionError(
                f"{operation} returned {type(parsed).__name__}, expected an object",
                error_code="ERR_UPSTREAM_INVALID_JSON",
            )

        logger.debug("llm_call_complete", operation=operation, model=model, latency_ms=latency_ms)
        return parsed

    @staticmethod
    def _validate(model_cls: type[BaseModel], operation: str, payload: dict):
        try:
            return model_cls.model_validate(payload)
        except PydanticValidationError as e:
            raise UpstreamExtractionError(
                f"{operation} response failed validation: {e.error_count()} error(s)",
                error_code="ERR_UPSTREAM_SCHEMA",
            ) from e

    async def detect_context(self, first_page_text: str, usage=None) -> AccountContext:
        payload = await self._complete_json(
            "detect_context",
            settings.LLM_CONTEXT_MODEL,
            CONTEXT_PROMPT.format(text=first_page_text),
            usage,
        )
        return self._validate(AccountContext, "detect_context", payload)

    async def extract_transactions(
        self,
        context: AccountContext,
        chunk_text: str,
        session_id: str,
        usage=None,
    ) -> list[ExtractedTransaction]:
        prompt = EXTRACTION_PROMPT.format(
            account_id=context.account_id,
            account_type=context.account_type.value,
            bank_name=context.bank_name or "unknown",
            holder_name=context.holder_name or "unknown",
            text=chunk_text,
        )
        payload = await self._complete_json(
            "extract_transactions", settings.LLM_EXTRACTION_MODEL, prompt, usage,
        )
        result = self._validate(ExtractionResponse, "extract_transactions", payload)
        return result.transactions

    async def generate_narrative(self, snapshot: AnalysisSnapshot, usage=None) -> NarrativeResponse:
        payload = await self._complete_json(
            "generate_narrative",
            settings.LLM_NARRATIVE_MODEL,
            NARRATIVE_PROMPT.format(snapshot=snapshot.model_dump_json()),
            usage,
        )
        return self._validate(NarrativeResponse, "generate_narrative", payload)

    async def health_check(self) -> bool:
        return bool(settings.OPENAI_API_KEY)
