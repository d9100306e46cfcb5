"""Security gate for untrusted text.

Text reaches the pipeline from two untrusted places: the OCR engine (anything
printed on a card) and the AI parsing service. The gate sanitizes that text,
rejects known attack signatures, and masks secrets before anything is logged.

None of the functions here log the content they inspect.
"""

import json
import re
from collections.abc import Mapping

from .config import Settings, get_settings
from .errors import SecurityFailure, SecurityFailureKind

MASK = "***"

# Statement-shaped SQL fragments. Lone keywords ("select", "from") are left
# alone because they are ordinary words on business cards.
SQL_INJECTION_PATTERNS = (
    re.compile(r"\b(?:DROP|TRUNCATE|ALTER)\s+(?:TABLE|DATABASE)\b", re.IGNORECASE),
    re.compile(r"\bDELETE\s+FROM\b", re.IGNORECASE),
    re.compile(r"\bINSERT\s+INTO\b", re.IGNORECASE),
    re.compile(r"\bUNION\s+(?:ALL\s+)?SELECT\b", re.IGNORECASE),
    re.compile(r"\bUPDATE\s+\w+\s+SET\b", re.IGNORECASE),
    re.compile(r";\s*(?:DROP|DELETE|INSERT|UPDATE|SELECT)\b", re.IGNORECASE),
    re.compile(r"'\s*(?:OR|AND)\s*'[^']*'\s*=\s*'[^']*'?", re.IGNORECASE),
    re.compile(r"'\s*(?:OR|AND)\s+\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"'\s*;"),
    re.compile(r"--"),
    re.compile(r"/\*|\*/"),
)

XSS_PATTERNS = (
    re.compile(r"<script\b[^>]{0,500}>.{0,5000}?</script\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<iframe\b[^>]{0,500}>.{0,5000}?</iframe\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<script\b[^>]{0,500}>", re.IGNORECASE),
    re.compile(r"</script\s*>", re.IGNORECASE),
    re.compile(r"<iframe\b[^>]{0,500}>", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"<[^>]{0,500}\son\w+\s*=[^>]{0,500}>?", re.IGNORECASE),
    re.compile(r"\bon(?:load|error|click|mouse\w*|focus|blur|change|submit|key\w*)\s*=", re.IGNORECASE),
    re.compile(r"<svg[^>]{0,500}onload[^>]{0,500}>", re.IGNORECASE),
    re.compile(r"<img[^>]{0,500}onerror[^>]{0,500}>", re.IGNORECASE),
    re.compile(r"\balert\([^)]{0,500}\)?", re.IGNORECASE),
)

CODE_EXECUTION_PATTERNS = (
    re.compile(r"\beval\("),
    re.compile(r"\bexec\("),
    re.compile(r"\bsystem\("),
    re.compile(r"\bshell_exec\b", re.IGNORECASE),
    re.compile(r"\bbase64_decode\b", re.IGNORECASE),
    re.compile(r"window\.location", re.IGNORECASE),
    re.compile(r"document\.cookie", re.IGNORECASE),
)

HTML_TAG_PATTERN = re.compile(r"<[^>]{0,500}>")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
HORIZONTAL_SPACE_PATTERN = re.compile(r"[^\S\n]+")
LINE_BREAK_PATTERN = re.compile(r" ?\n[\s]*")

# (pattern, replacement). Labelled secrets keep their label.
SENSITIVE_PATTERNS = (
    (re.compile(r"\b(authorization)\s*[:=]\s*(?:(?:bearer|basic)\s+)?[\w\-.~+/=]+", re.IGNORECASE), r"\1: " + MASK),
    (re.compile(r"\b(api[_-]?key|apikey)\s*[:=]\s*[\w\-.]+", re.IGNORECASE), r"\1: " + MASK),
    (re.compile(r"\b(password|passwd|pwd|pass)\s*[:=]\s*[^\s*]\S*", re.IGNORECASE), r"\1: " + MASK),
    (re.compile(r"\b(password\s+is)\s*:?\s*[^\s*:]\S*", re.IGNORECASE), r"\1: " + MASK),
    (re.compile(r"\bbearer\s+[\w\-.~+/]+=*", re.IGNORECASE), MASK),
    (re.compile(r"\bsk-[\w\-]+"), MASK),
)

CARD_NUMBER_PATTERNS = (
    re.compile(r"\b4\d{3}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),  # Visa
    re.compile(r"\b5[1-5]\d{2}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"),  # MasterCard
    re.compile(r"\b3[47]\d{2}[-\s]?\d{6}[-\s]?\d{5}\b"),  # Amex
    re.compile(r"\b3(?:0[0-5]|[68]\d)\d[-\s]?\d{6}[-\s]?\d{4}\b"),  # Diners
)

SUSPICIOUS_ACTIVITY_PHRASES = (
    "multiple failed",
    "unusual api call",
    "high frequency",
    "brute force",
    "rate limit exceeded",
)

# Signatures rejected outright when storing secrets.
MALICIOUS_PAYLOAD_MARKERS = ("<script", "</script>", "drop table", ";--")
RAW_CONTROL_BYTES = ("\x00", "\x01", "\x02")

REQUIRED_SECURITY_HEADERS = ("X-Content-Type-Options", "X-Frame-Options")


def _mask_card_number(match: re.Match) -> str:
    digits = re.sub(r"\D", "", match.group(0))
    return f"****-****-****-{digits[-4:]}"


class SecurityGate:
    """Sanitizes, validates and masks untrusted text."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def sanitize(self, text: str) -> str:
        """Remove injection payloads, markup and control characters.

        Removal passes repeat until the text stops changing, so the result
        is a fixed point: ``sanitize(sanitize(x)) == sanitize(x)``.
        """
        if not text:
            return ""

        previous = None
        current = text
        while current != previous:
            previous = current
            current = self._sanitize_once(current)
        return current

    def _sanitize_once(self, text: str) -> str:
        for pattern in SQL_INJECTION_PATTERNS:
            text = pattern.sub("", text)
        for pattern in XSS_PATTERNS:
            text = pattern.sub("", text)
        text = HTML_TAG_PATTERN.sub("", text)
        text = CONTROL_CHAR_PATTERN.sub("", text)
        text = HORIZONTAL_SPACE_PATTERN.sub(" ", text)
        text = LINE_BREAK_PATTERN.sub("\n", text)
        return text.strip()

    def validate_api_response(self, text: str) -> str:
        """Check a response from the AI service before it is used.

        Raises:
            SecurityFailure: MALICIOUS_CONTENT on XSS or code-execution
                signatures, MALFORMED_RESPONSE on empty or unparseable JSON.
        """
        if not text or not text.strip():
            raise SecurityFailure(
                SecurityFailureKind.MALFORMED_RESPONSE,
                "AI response is empty",
                "The AI service returned an empty response.",
            )

        for pattern in XSS_PATTERNS + CODE_EXECUTION_PATTERNS:
            if pattern.search(text):
                raise SecurityFailure(
                    SecurityFailureKind.MALICIOUS_CONTENT,
                    f"AI response matched signature {pattern.pattern!r}",
                    "The AI service returned unsafe content.",
                )

        stripped = text.lstrip()
        if stripped.startswith(("{", "[")):
            try:
                json.loads(stripped)
            except json.JSONDecodeError as e:
                raise SecurityFailure(
                    SecurityFailureKind.MALFORMED_RESPONSE,
                    f"AI response is not valid JSON: {e.msg} at position {e.pos}",
                    "The AI service returned an unreadable response.",
                ) from e
        return text

    def mask_sensitive(self, text: str) -> str:
        """Mask credentials and payment card numbers. Idempotent."""
        if not text:
            return text
        for pattern, replacement in SENSITIVE_PATTERNS:
            text = pattern.sub(replacement, text)
        for pattern in CARD_NUMBER_PATTERNS:
            text = pattern.sub(_mask_card_number, text)
        return text

    def validate_content(self, text: str) -> str:
        """Reject oversized or control-character-heavy text; otherwise return it unchanged."""
        max_size = self._settings.max_content_size
        if len(text) > max_size:
            raise SecurityFailure(
                SecurityFailureKind.SIZE_LIMIT_EXCEEDED,
                f"content length {len(text)} exceeds limit {max_size}",
                "The content is too large to process.",
            )

        if text:
            control_count = len(CONTROL_CHAR_PATTERN.findall(text))
            ratio = control_count / len(text)
            if ratio > self._settings.max_control_char_ratio:
                raise SecurityFailure(
                    SecurityFailureKind.SUSPICIOUS_CONTENT,
                    f"control character ratio {ratio:.2f} exceeds {self._settings.max_control_char_ratio}",
                    "The content looks corrupted and cannot be processed.",
                )
        return text

    def detect_suspicious_activity(self, log_text: str) -> str:
        lowered = log_text.lower()
        for phrase in SUSPICIOUS_ACTIVITY_PHRASES:
            if phrase in lowered:
                raise SecurityFailure(
                    SecurityFailureKind.SUSPICIOUS_ACTIVITY,
                    f"activity log contains {phrase!r}",
                    "Unusual activity was detected.",
                )
        return log_text

    def contains_malicious_payload(self, text: str) -> bool:
        """Whether text carries a script tag, SQL drop, comment injection or raw control byte."""
        lowered = text.lower()
        if any(marker in lowered for marker in MALICIOUS_PAYLOAD_MARKERS):
            return True
        return any(byte in text for byte in RAW_CONTROL_BYTES)

    def validate_security_headers(self, headers: Mapping[str, str]) -> list[str]:
        """Return the required security headers missing from ``headers``."""
        present = {key.lower() for key in headers}
        return [header for header in REQUIRED_SECURITY_HEADERS if header.lower() not in present]
