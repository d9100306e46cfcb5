"""Field validation and normalization for business card data.

All checks are pure. Each returns the normalized value or raises
``ValidationFailure`` tagged with the offending field name.
"""

import re
import unicodedata

from .errors import ValidationFailure

MAX_EMAIL_LENGTH = 254
MAX_EMAIL_LOCAL_LENGTH = 64
NAME_LENGTH = (1, 100)
COMPANY_LENGTH = (2, 200)

TAIWAN_AREA_CODES = ("02", "03", "04", "05", "06", "07", "08")
DENYLISTED_URL_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")

_EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_URL_RE = re.compile(r"^(?:https?|ftp)://[^\s/$.?#][^\s]*$", re.IGNORECASE)
_PHONE_STRIP_RE = re.compile(r"[\s\-()+]")
_INTERNATIONAL_RE = re.compile(r"^886\d{9,10}$")
_MOBILE_RE = re.compile(r"^09\d{8}$")
_LANDLINE_RE = re.compile(r"^0[2-8]\d{7,8}$")

_NAME_PUNCTUATION = frozenset(" '-.·‧")
_COMPANY_PUNCTUATION = frozenset(" .,()&'-·‧（）")
_LINE_BREAKS = ("\n", "\t", "\r")


def _is_letter_or_mark(char: str) -> bool:
    return unicodedata.category(char)[0] in ("L", "M")


def _is_number(char: str) -> bool:
    return unicodedata.category(char)[0] == "N"


class FieldValidator:
    """Stateless validators for structured card fields."""

    @staticmethod
    def required(value: str | None, field: str = "text") -> str:
        if value is None or not value.strip():
            raise ValidationFailure(field, f"{field} is required", "This field is required.")
        return value.strip()

    @staticmethod
    def min_length(value: str, minimum: int, field: str = "text") -> str:
        if len(value) < minimum:
            raise ValidationFailure(
                field,
                f"{field} length {len(value)} is below minimum {minimum}",
                f"Must be at least {minimum} characters.",
            )
        return value

    @staticmethod
    def max_length(value: str, maximum: int, field: str = "text") -> str:
        if len(value) > maximum:
            raise ValidationFailure(
                field,
                f"{field} length {len(value)} exceeds maximum {maximum}",
                f"Must be at most {maximum} characters.",
            )
        return value

    @staticmethod
    def length_range(value: str, minimum: int, maximum: int, field: str = "text") -> str:
        FieldValidator.min_length(value, minimum, field)
        return FieldValidator.max_length(value, maximum, field)

    @staticmethod
    def email(value: str) -> str:
        """Validate an email address.

        Leading/trailing whitespace is rejected rather than trimmed so that
        OCR noise around an address is never silently accepted.
        """
        field = "email"
        if not value:
            raise ValidationFailure(field, "email is empty", "Email address is required.")
        if len(value) > MAX_EMAIL_LENGTH:
            raise ValidationFailure(field, f"email length {len(value)} exceeds {MAX_EMAIL_LENGTH}", "Email address is too long.")
        if value != value.strip():
            raise ValidationFailure(field, "email has surrounding whitespace", "Email address contains extra spaces.")
        if value.count("@") != 1:
            raise ValidationFailure(field, "email must contain exactly one @", "Email address is not valid.")

        local, domain = value.split("@")
        if not local or len(local) > MAX_EMAIL_LOCAL_LENGTH:
            raise ValidationFailure(field, f"email local part length {len(local)} is invalid", "Email address is not valid.")
        if not domain or domain.startswith(".") or domain.endswith(".") or ".." in domain:
            raise ValidationFailure(field, f"email domain {domain!r} is malformed", "Email domain is not valid.")
        if not _EMAIL_RE.match(value):
            raise ValidationFailure(field, "email does not match local@domain.tld", "Email address is not valid.")
        return value

    @staticmethod
    def phone(value: str) -> str:
        """Validate a Taiwanese phone number (international, mobile or landline)."""
        field = "phone"
        value = value.strip() if value else ""
        if not value:
            raise ValidationFailure(field, "phone is empty", "Phone number is required.")

        digits = _PHONE_STRIP_RE.sub("", value)
        if not digits.isdigit():
            raise ValidationFailure(field, "phone contains non-digit characters", "Phone number may only contain digits.")

        if digits.startswith("886"):
            if _INTERNATIONAL_RE.match(digits):
                return value
        elif digits.startswith("09"):
            if _MOBILE_RE.match(digits):
                return value
        elif digits[:2] in TAIWAN_AREA_CODES:
            if _LANDLINE_RE.match(digits):
                return value

        raise ValidationFailure(
            field,
            f"phone with {len(digits)} digits matches no accepted format",
            "Phone number format is not valid.",
        )

    @staticmethod
    def url(value: str) -> str:
        field = "website"
        if not value or not value.strip():
            raise ValidationFailure(field, "url is empty", "Website is required.")
        if any(char.isspace() for char in value):
            raise ValidationFailure(field, "url contains whitespace", "Website address is not valid.")
        lowered = value.lower()
        for scheme in DENYLISTED_URL_SCHEMES:
            if lowered.startswith(scheme):
                raise ValidationFailure(field, f"url uses denylisted scheme {scheme}", "Website address is not allowed.")
        if not _URL_RE.match(value):
            raise ValidationFailure(field, "url does not match scheme://host[/path]", "Website address is not valid.")
        return value

    @staticmethod
    def name(value: str) -> str:
        return _validate_label(value, "name", NAME_LENGTH, _NAME_PUNCTUATION, allow_numbers=False)

    @staticmethod
    def company_name(value: str) -> str:
        return _validate_label(value, "company", COMPANY_LENGTH, _COMPANY_PUNCTUATION, allow_numbers=True)


def _validate_label(
    value: str,
    field: str,
    length: tuple[int, int],
    punctuation: frozenset[str],
    allow_numbers: bool,
) -> str:
    """Shared rules for person and company names."""
    value = value.strip() if value else ""
    if not value:
        raise ValidationFailure(field, f"{field} is empty", "This field is required.")
    if any(char in value for char in _LINE_BREAKS):
        raise ValidationFailure(field, f"{field} contains a line break or tab", "Must be on a single line.")
    if value.isdigit():
        raise ValidationFailure(field, f"{field} is digits only", "Cannot be only numbers.")

    minimum, maximum = length
    FieldValidator.length_range(value, minimum, maximum, field)

    for char in value:
        if _is_letter_or_mark(char) or char in punctuation:
            continue
        if allow_numbers and _is_number(char):
            continue
        raise ValidationFailure(
            field,
            f"{field} contains disallowed character U+{ord(char):04X}",
            "Contains characters that are not allowed.",
        )
    return value
