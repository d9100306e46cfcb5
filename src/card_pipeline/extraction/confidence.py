"""Confidence model for locally extracted card fields."""

from collections.abc import Mapping

CANONICAL_FIELDS = ("name", "email", "phone", "mobile", "company", "job_title", "address")

NAME_BONUS = 0.10
EMAIL_BONUS = 0.05
CONTACT_BONUS = 0.05


def score_confidence(fields: Mapping[str, str | None]) -> float:
    """Score how complete and usable a set of extracted fields is.

    The base score is the fraction of canonical fields present. Identity
    (name) and reachability (email, phone or mobile) add fixed bonuses on
    top. The result is clamped to [0, 1] and never decreases when another
    field is filled.

    Args:
        fields: Mapping of field name to extracted value (None or "" = absent)

    Returns:
        Confidence in [0, 1]
    """

    def present(field: str) -> bool:
        value = fields.get(field)
        return bool(value and value.strip())

    filled = sum(1 for field in CANONICAL_FIELDS if present(field))
    score = filled / len(CANONICAL_FIELDS)

    if present("name"):
        score += NAME_BONUS
    if present("email"):
        score += EMAIL_BONUS
    if present("phone") or present("mobile"):
        score += CONTACT_BONUS

    return max(0.0, min(1.0, score))
