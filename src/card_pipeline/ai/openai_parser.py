"""OpenAI chat-completions client for business card parsing."""

import json
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..config import Settings, get_settings
from ..errors import (
    AIInvalidInput,
    AIQuotaExceeded,
    AIRateLimited,
    AIUnavailable,
    CredentialNotFound,
    DataSourceFailure,
    SecurityFailure,
    SecurityFailureKind,
)
from ..models import CARD_TEXT_FIELDS, AIServiceStatus, ParsedCardData, ParseHints, ParseSource
from ..security import SecurityGate
from ..vault import CredentialVault

logger = logging.getLogger(__name__)

QUOTA_ERROR_CODES = ("insufficient_quota", "quota_exceeded")
DEFAULT_RETRY_AFTER_SECONDS = 60.0
QUOTA_RESET_WINDOW = timedelta(hours=1)

# Rate-limit reset headers look like "1s", "6m0s" or "20ms"
RESET_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
RESET_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Accept camelCase keys as well as the snake_case ones the prompt asks for
FIELD_ALIASES = {
    "nameEnglish": "name_english",
    "companyEnglish": "company_english",
    "jobTitle": "job_title",
    "jobTitleEnglish": "job_title_english",
    "addressEnglish": "address_english",
    "fieldConfidence": "field_confidence",
}

SYSTEM_PROMPT = """You are an expert at reading business cards. Convert the card text you are given into JSON.

Rules:
1. Reply with a single valid JSON object and nothing else.
2. Use these keys: {fields}, confidence, field_confidence.
3. confidence is a number between 0 and 1 describing how accurate the parse is.
4. field_confidence maps each filled key to a number between 0 and 1.
5. Use null for anything that cannot be identified.
6. Keep phone numbers readable; drop decorative symbols.
7. email must be a valid address.

Preferred language: {language}
Country/region: {country}
"""

USER_PROMPT = """Parse the following business card text:

{text}
"""


class OpenAICardParser:
    """AI card parser backed by the OpenAI chat-completions API.

    Args:
        vault: Vault holding the API key under ``credential_service``
        client: Optional httpx client (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        vault: CredentialVault,
        client: httpx.AsyncClient | None = None,
        gate: SecurityGate | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._vault = vault
        self._gate = gate or SecurityGate(self._settings)
        self._client = client
        self.credential_service = self._settings.ai_service_name

    async def parse(self, text: str, hints: ParseHints | None = None) -> ParsedCardData:
        self._check_input(text)
        api_key = await self._get_api_key()
        payload = self._build_request(text, hints)

        try:
            response = await self._post(payload, api_key)
        except httpx.TimeoutException as e:
            raise AIUnavailable(f"OpenAI request timed out: {type(e).__name__}", "AI service request timed out.") from e
        except httpx.TransportError as e:
            raise AIUnavailable(f"OpenAI transport error: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise self._error_for_status(response)

        return self._parse_response(response)

    async def status(self) -> AIServiceStatus:
        """Check the service by listing models with the stored key.

        Never raises for service problems; a missing key or a failed request
        is reported as not available.
        """
        service = self.credential_service
        try:
            api_key = await self._vault.get(service)
        except (CredentialNotFound, DataSourceFailure) as e:
            logger.info(f"AI status check skipped: {type(e).__name__}")
            return AIServiceStatus(service=service, is_available=False, error="not configured")

        start = time.perf_counter()
        try:
            response = await self._get_client().get("/models", headers={"Authorization": f"Bearer {api_key}"})
        except httpx.TransportError as e:
            logger.warning(f"AI status check failed: {type(e).__name__}")
            return AIServiceStatus(service=service, is_available=False, error=type(e).__name__)
        elapsed_ms = (time.perf_counter() - start) * 1000

        remaining = _int_header(response, "x-ratelimit-remaining-requests")
        reset_time = _reset_time(response.headers.get("x-ratelimit-reset-requests"))
        if reset_time is None and remaining == 0:
            reset_time = datetime.now(timezone.utc) + QUOTA_RESET_WINDOW

        return AIServiceStatus(
            service=service,
            is_available=response.status_code < 400,
            response_time_ms=elapsed_ms,
            remaining_requests=remaining,
            reset_time=reset_time,
            error=None if response.status_code < 400 else f"HTTP {response.status_code}",
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # Request

    def _check_input(self, text: str) -> None:
        if not text or not text.strip():
            raise AIInvalidInput("OCR text is empty", "There is no text to parse.", field="ocr_text")
        if len(text) > self._settings.max_ai_text_length:
            raise AIInvalidInput(
                f"OCR text has {len(text)} characters (limit {self._settings.max_ai_text_length})",
                "The text is too long to parse.",
                field="ocr_text",
            )
        if self._gate.contains_malicious_payload(text):
            raise AIInvalidInput("OCR text carries a malicious payload", "The text contains unsafe content.", field="ocr_text")

    async def _get_api_key(self) -> str:
        try:
            return await self._vault.get(self.credential_service)
        except CredentialNotFound as e:
            raise AIUnavailable(
                f"no API key stored for {self.credential_service}",
                "AI service is not configured.",
            ) from e

    def _build_request(self, text: str, hints: ParseHints | None) -> dict[str, Any]:
        hints = hints or ParseHints()
        system_prompt = SYSTEM_PROMPT.format(
            fields=", ".join(CARD_TEXT_FIELDS),
            language=hints.language or "Traditional Chinese",
            country=hints.country or "Taiwan",
        )
        if hints.industry:
            system_prompt += f"Industry: {hints.industry}\n"
        if hints.card_type:
            system_prompt += f"Card type: {hints.card_type}\n"

        return {
            "model": self._settings.openai_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": USER_PROMPT.format(text=self._gate.sanitize(text))},
            ],
            "temperature": self._settings.openai_temperature,
            "max_tokens": self._settings.openai_max_tokens,
            "response_format": {"type": "json_object"},
        }

    async def _post(self, payload: dict[str, Any], api_key: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {api_key}"}
        return await self._get_client().post("/chat/completions", json=payload, headers=headers)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.openai_base_url,
                timeout=self._settings.openai_timeout_seconds,
            )
        return self._client

    # Response

    def _error_for_status(self, response: httpx.Response):
        status = response.status_code
        error_code = None
        try:
            body = response.json()
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                error_code = body["error"].get("code") or body["error"].get("type")
        except ValueError:
            body = None

        if status == 429:
            if error_code in QUOTA_ERROR_CODES:
                return AIQuotaExceeded(
                    f"OpenAI quota exceeded ({error_code})",
                    reset_time=datetime.now(timezone.utc) + QUOTA_RESET_WINDOW,
                )
            return AIRateLimited(f"OpenAI rate limited ({error_code})", retry_after=self._retry_after(response))
        if status == 400:
            return AIInvalidInput(f"OpenAI rejected request ({error_code})")
        return AIUnavailable(f"OpenAI returned HTTP {status} ({error_code})")

    @staticmethod
    def _retry_after(response: httpx.Response) -> float:
        header = response.headers.get("retry-after")
        try:
            return float(header) if header is not None else DEFAULT_RETRY_AFTER_SECONDS
        except ValueError:
            return DEFAULT_RETRY_AFTER_SECONDS

    def _parse_response(self, response: httpx.Response) -> ParsedCardData:
        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AIUnavailable(f"unexpected OpenAI response shape: {type(e).__name__}", "Failed to read the AI response.") from e

        if not isinstance(content, str):
            raise AIUnavailable("OpenAI message content is not a string", "Failed to read the AI response.")

        self._gate.validate_api_response(content)
        data = json.loads(content) if content.lstrip().startswith("{") else None
        if not isinstance(data, dict):
            raise SecurityFailure(
                SecurityFailureKind.MALFORMED_RESPONSE,
                "AI response content is not a JSON object",
                "The AI service returned an unreadable response.",
            )
        return self._to_parsed(data)

    def _to_parsed(self, data: dict[str, Any]) -> ParsedCardData:
        data = {FIELD_ALIASES.get(key, key): value for key, value in data.items()}

        fields: dict[str, str] = {}
        for field in CARD_TEXT_FIELDS:
            value = data.get(field)
            if value is None or isinstance(value, (dict, list)):
                continue
            cleaned = self._gate.sanitize(str(value))
            if cleaned:
                fields[field] = cleaned

        field_confidence = {}
        raw_scores = data.get("field_confidence")
        if isinstance(raw_scores, dict):
            for field, score in raw_scores.items():
                field = FIELD_ALIASES.get(field, field)
                if field in fields:
                    field_confidence[field] = _clamp(score)

        return ParsedCardData(
            **fields,
            confidence=_clamp(data.get("confidence")),
            field_confidence=field_confidence,
            source=ParseSource.AI,
        )


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _reset_time(header: str | None) -> datetime | None:
    if not header:
        return None
    parts = RESET_DURATION_RE.findall(header)
    if not parts or "".join(n + u for n, u in parts) != header.strip():
        return None
    seconds = sum(float(number) * RESET_UNITS[unit] for number, unit in parts)
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)
