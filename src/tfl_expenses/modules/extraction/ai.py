from __future__ import annotations

import base64
import time
from typing import Any, Protocol

import httpx

from tfl_expenses.core.config import settings
from tfl_expenses.core.logging import get_logger, log_event, monotonic_ms
from tfl_expenses.modules.extraction.errors import ExtractionServiceError

logger = get_logger(__name__)

_JOURNEYS_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "journey_expenses",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "expenses": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "date": {
                                "type": "string",
                                "description": "The date of the journey in YYYY-MM-DD format.",
                            },
                            "amount": {
                                "type": "number",
                                "description": "The charge for the journey as a number.",
                            },
                        },
                        "required": ["date", "amount"],
                    },
                },
            },
            "required": ["expenses"],
        },
    },
}

_RULES = (
    "CRITICAL:\n"
    "- Dates are often printed once followed by multiple journey lines; subsequent journeys "
    "inherit the most recent date header until a new date appears.\n"
    "{chunk_rule}"
    "- Output date as YYYY-MM-DD. Output amount as a positive number (no currency symbols).\n"
    "- Strictly IGNORE non-journey lines: any line containing (case-insensitive): cap, capped, "
    "daily cap, weekly cap, total, payment, auto top up, auto topup, refund, credit, "
    "adjustment.\n"
    "- Do NOT output daily or weekly totals; only individual journeys.\n\n"
    "Return ONLY JSON in this schema:\n"
    '{{ "expenses": [ {{ "date": "YYYY-MM-DD", "amount": 0.00 }}, ... ] }}\n'
)

DOCUMENT_PROMPT = (
    "You are an expert data extraction agent for TfL contactless/Oyster statements "
    "(possibly OCR'd).\n"
    "Extract EVERY individual journey charge (one JSON item per journey). Aggregation to "
    "daily/monthly totals is handled downstream.\n\n" + _RULES.format(chunk_rule="")
)

CHUNK_PROMPT = (
    "You are an expert data extraction agent for TfL contactless/Oyster statements "
    "(possibly OCR'd).\n"
    "This is a CHUNK of a larger document. Extract EVERY individual journey charge from "
    "this section.\n\n"
    + _RULES.format(
        chunk_rule=(
            "- If this chunk starts without a date header, journeys may inherit dates from the "
            "previous chunk (this is handled during merging).\n"
        )
    )
)


def chunk_prompt(chunk_index: int, total_chunks: int) -> str:
    if total_chunks <= 1:
        return DOCUMENT_PROMPT
    return (
        f"{CHUNK_PROMPT}\n\nThis is chunk {chunk_index + 1} of {total_chunks} from the document."
    )


class JourneyExtractor(Protocol):
    async def extract(
        self,
        *,
        prompt: str,
        text: str | None = None,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> str: ...


class OpenAIJourneyExtractor:
    """
    Journey extraction against an OpenAI-compatible chat completions endpoint.

    Returns the raw message content; validation happens in the caller.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 60.0,
        max_chars: int = 60000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.url = base_url.rstrip("/") + "/chat/completions"
        self.model = model
        self.timeout = timeout
        self.max_chars = max_chars
        self._client = client

    async def extract(
        self,
        *,
        prompt: str,
        text: str | None = None,
        image: bytes | None = None,
        mime_type: str | None = None,
    ) -> str:
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": _JOURNEYS_RESPONSE_FORMAT,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": self._user_content(text, image, mime_type)},
            ],
        }

        start = time.monotonic()
        log_event(
            logger,
            "ai.request.start",
            model=self.model,
            text_length=len(text) if text else None,
            image_bytes=len(image) if image else None,
        )
        if self._client is not None:
            resp = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await self._post(client, payload)

        try:
            raw = resp.json()
            msg = raw["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionServiceError("Extraction service returned an invalid envelope") from e

        content = msg.get("content") if isinstance(msg, dict) else None
        refused = isinstance(msg, dict) and bool(msg.get("refusal"))
        log_event(
            logger,
            "ai.request.finish",
            model=self.model,
            status_code=resp.status_code,
            refused=refused or None,
            content_length=len(content) if isinstance(content, str) else 0,
            duration_ms=monotonic_ms(start),
        )
        if refused or not isinstance(content, str):
            return ""
        return content

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = await client.post(self.url, headers=headers, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            # Some models/endpoints don't support Structured Outputs; fall back to JSON mode.
            if e.response.status_code not in {400, 422}:
                raise ExtractionServiceError(
                    f"Extraction service returned HTTP {e.response.status_code}"
                ) from e
        except httpx.HTTPError as e:
            raise ExtractionServiceError(f"Extraction service unreachable: {e}") from e

        log_event(logger, "ai.request.json_mode_fallback", model=self.model)
        fallback = {**payload, "response_format": {"type": "json_object"}}
        try:
            resp = await client.post(self.url, headers=headers, json=fallback, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExtractionServiceError(
                f"Extraction service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionServiceError(f"Extraction service unreachable: {e}") from e
        return resp

    def _user_content(
        self, text: str | None, image: bytes | None, mime_type: str | None
    ) -> str | list[dict[str, Any]]:
        if image is not None:
            data = base64.b64encode(image).decode("ascii")
            return [
                {"type": "text", "text": "Statement image:"},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type or 'image/png'};base64,{data}"},
                },
            ]
        return "Statement text:\n" + _truncate_text(text or "", max_chars=self.max_chars)


def extractor_from_settings() -> OpenAIJourneyExtractor:
    if not settings.openai_api_key:
        raise ExtractionServiceError("OPENAI_API_KEY is not configured")
    return OpenAIJourneyExtractor(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_model,
        timeout=float(settings.ai_timeout_seconds or 60.0),
        max_chars=int(settings.ai_max_chars or 0),
    )


def _truncate_text(text: str, *, max_chars: int) -> str:
    t = (text or "").replace("\u202f", " ").replace("\xa0", " ").strip()
    if not t:
        return ""
    if max_chars <= 0:
        return t
    if len(t) <= max_chars:
        return t
    return t[: max_chars - 20].rstrip() + "\n\n[TRUNCATED]"
