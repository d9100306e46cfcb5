"""Local heuristic extraction of business card fields from raw OCR text.

Used when the AI parser is unavailable, slow or out of quota. Each field is
found by an ordered list of ``FieldRule`` entries evaluated first-match-wins,
so every rule can be tested on its own.
"""

import logging
import re
import unicodedata
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ..models import ParsedCardData, ParseSource
from .confidence import score_confidence
from .patterns import CJK_RANGE, PatternTables, default_pattern_tables

logger = logging.getLogger(__name__)

Extractor = Callable[[re.Match], str | None]

# Upper bounds on the text preceding a company suffix or job title
MAX_COMPANY_PREFIX = 40
MAX_LATIN_COMPANY_PREFIX = 80
MAX_TITLE_PREFIX = 10


def _group_one(match: re.Match) -> str | None:
    value = match.group(1).strip()
    return value or None


@dataclass(frozen=True)
class FieldRule:
    """A single (pattern, extractor) pair for one field.

    Per-line rules run against each stripped non-empty line, others against
    the whole text. The extractor may return None to reject a match, in
    which case the search continues with the next match.
    """

    field: str
    pattern: re.Pattern
    extract: Extractor = _group_one
    per_line: bool = False
    skip_line: Callable[[str], bool] | None = None

    def apply(self, text: str, lines: list[str]) -> str | None:
        targets = lines if self.per_line else [text]
        for target in targets:
            if self.skip_line is not None and self.skip_line(target):
                continue
            for match in self.pattern.finditer(target):
                value = self.extract(match)
                if value:
                    return value
        return None


def _alternation(items: Iterable[str], escape: bool = True) -> str:
    """Build a regex alternation with longer entries first."""
    parts = sorted(set(items), key=len, reverse=True)
    if escape:
        parts = [re.escape(part) for part in parts]
    return "|".join(parts)


def _has_contact_marker(line: str) -> bool:
    return "@" in line or "://" in line or "www." in line.lower()


def _has_email(line: str) -> bool:
    return "@" in line


def _strip_trailing_punctuation(match: re.Match) -> str | None:
    value = match.group(1).rstrip(".,;:)]}")
    return value or None


class LocalHeuristicExtractor:
    """Pattern-based card field extractor.

    Args:
        tables: Vocabulary to build rules from. Defaults to the shared
            ``default_pattern_tables()``.
    """

    def __init__(self, tables: PatternTables | None = None):
        self.tables = tables or default_pattern_tables()
        self._non_name_words = frozenset(word.lower() for word in self.tables.non_name_words)
        self.rules = self._build_rules(self.tables)

    def parse(self, ocr_text: str) -> ParsedCardData:
        """Extract card fields from OCR text. Never raises.

        Returns:
            ParsedCardData with ``source=local``. Empty input yields
            confidence 0 and no fields.
        """
        text, lines = self._prepare(ocr_text)
        if not lines:
            return ParsedCardData(confidence=0.0, source=ParseSource.LOCAL)

        fields: dict[str, str] = {}
        for rule in self.rules:
            if rule.field in fields:
                continue
            value = rule.apply(text, lines)
            if value:
                fields[rule.field] = value

        confidence = score_confidence(fields)
        logger.debug(
            f"Local extraction filled {len(fields)} fields "
            f"({', '.join(sorted(fields))}), confidence={confidence:.2f}"
        )
        return ParsedCardData(**fields, confidence=confidence, source=ParseSource.LOCAL)

    def extract_field(self, field: str, ocr_text: str) -> str | None:
        """Run only the rules for ``field`` and return the first hit."""
        text, lines = self._prepare(ocr_text)
        for rule in self.rules:
            if rule.field != field:
                continue
            value = rule.apply(text, lines)
            if value:
                return value
        return None

    def rules_for(self, field: str) -> list[FieldRule]:
        return [rule for rule in self.rules if rule.field == field]

    @staticmethod
    def _prepare(ocr_text: str | None) -> tuple[str, list[str]]:
        # NFKC folds full-width digits and punctuation (０９１２, ：) to ASCII
        text = unicodedata.normalize("NFKC", ocr_text or "")
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        return text, lines

    # -------------------------------------------------------------------------
    # Rule construction
    # -------------------------------------------------------------------------

    def _build_rules(self, t: PatternTables) -> list[FieldRule]:
        cjk = CJK_RANGE
        surnames = _alternation(t.surnames)
        cjk_titles = _alternation(t.cjk_job_titles)
        cjk_company = _alternation(t.cjk_company_suffixes)
        latin_company = _alternation(t.latin_company_suffixes, escape=False)
        seniority = _alternation(t.latin_seniority)
        disciplines = _alternation(t.latin_disciplines)
        latin_titles = _alternation(t.latin_job_titles)

        self._not_a_cjk_name = re.compile(f"(?:{cjk_titles}|{cjk_company})")
        self._cjk_unit = re.compile(f"(?:{_alternation(t.cjk_address_units)})")
        self._ends_with_company = re.compile(f"(?:{cjk_company})$")

        phone_label = f"(?<![A-Za-z])(?:{_alternation(t.phone_labels)})"
        mobile_label = f"(?<![A-Za-z])(?:{_alternation(t.mobile_labels)})"
        fax_label = f"(?<![A-Za-z])(?:{_alternation(t.fax_labels)})"
        self._any_label = re.compile(
            f"(?<![A-Za-z])(?:{_alternation(t.phone_labels + t.mobile_labels + t.fax_labels)})"
        )
        self._fax_labels = frozenset(t.fax_labels)
        separator = r"[ \t]*[:.]?[ \t]*"

        landline = r"\(?0[2-8]\)?[ \-]?\d{3,4}[ \-]?\d{4}"
        mobile = r"09\d{2}[ \-]?\d{3}[ \-]?\d{3}"

        address_unit = (
            f"(?:{_alternation(t.cjk_address_units)}"
            f"|(?<![A-Za-z])(?:{_alternation(t.latin_address_units, escape=False)})(?![A-Za-z]))"
        )
        address_label = f"(?:{_alternation(t.address_labels)}){separator}"

        return [
            # Name: CJK line starting with a known surname, any short CJK line,
            # a spaced CJK name, then capitalized Latin words
            FieldRule("name", re.compile(f"^(?:{surnames})[{cjk}]+$"), self._cjk_name, per_line=True),
            FieldRule("name", re.compile(f"^[{cjk}]{{2,4}}$"), self._cjk_name, per_line=True),
            FieldRule("name", re.compile(f"^[{cjk}](?:[ \\t]+[{cjk}]+)+$"), self._spaced_cjk_name, per_line=True),
            FieldRule(
                "name",
                re.compile(r"\b([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+)\b"),
                self._latin_name,
                per_line=True,
                skip_line=_has_contact_marker,
            ),
            # Company
            FieldRule(
                "company",
                re.compile(f"([{cjk}A-Za-z0-9]{{1,{MAX_COMPANY_PREFIX}}}(?:{cjk_company}))"),
                per_line=True,
            ),
            FieldRule(
                "company",
                re.compile(
                    f"\\b([A-Za-z0-9&][A-Za-z0-9&.,' \\-]{{0,{MAX_LATIN_COMPANY_PREFIX}}}[ \\t](?:{latin_company}))(?![A-Za-z])",
                    re.IGNORECASE,
                ),
                per_line=True,
                skip_line=_has_contact_marker,
            ),
            # Job title
            FieldRule("job_title", re.compile(f"([{cjk}]{{0,{MAX_TITLE_PREFIX}}}(?:{cjk_titles}))"), per_line=True),
            FieldRule(
                "job_title",
                re.compile(
                    f"\\b((?:(?:{seniority})[ \\t]+)*(?:(?:{disciplines})[ \\t]+)?(?:{latin_titles}))\\b",
                    re.IGNORECASE,
                ),
                per_line=True,
                skip_line=_has_contact_marker,
            ),
            # Email
            FieldRule(
                "email",
                re.compile(
                    r"(?<![A-Za-z0-9._%+-])"
                    r"([A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,})"
                    r"(?![A-Za-z0-9-])"
                ),
            ),
            # Phone: labeled landline, bare landline, +886 landline
            FieldRule("phone", re.compile(f"{phone_label}{separator}({landline})(?!\\d)"), self._unless_fax),
            FieldRule("phone", re.compile(f"(?<!\\d)({landline})(?!\\d)"), self._unless_fax),
            FieldRule(
                "phone",
                re.compile(r"(?<!\d)(\+?886[ \-]?(?:\(0\))?[2-8][ \-]?\d{3,4}[ \-]?\d{4})(?!\d)"),
                self._unless_fax,
            ),
            # Mobile: labeled 09xx, bare 09xx, +886 9xx
            FieldRule("mobile", re.compile(f"{mobile_label}{separator}({mobile})(?!\\d)"), self._unless_fax),
            FieldRule("mobile", re.compile(f"(?<!\\d)({mobile})(?!\\d)"), self._unless_fax),
            FieldRule(
                "mobile",
                re.compile(r"(?<!\d)(\+?886[ \-]?9\d{2}[ \-]?\d{3}[ \-]?\d{3})(?!\d)"),
                self._unless_fax,
            ),
            # Fax (labeled only)
            FieldRule("fax", re.compile(f"{fax_label}{separator}(\\+?[\\d(][\\d() \\-]{{6,}}\\d)")),
            # Address
            FieldRule(
                "address",
                re.compile(f"^(?:{address_label})?(.*{address_unit}.*)$"),
                self._address,
                per_line=True,
                skip_line=_has_email,
            ),
            # Website: schemed or www. hosts first, then bare hosts
            FieldRule(
                "website",
                re.compile(
                    r"(?<![A-Za-z0-9.\-])((?:https?://|www\.)[A-Za-z0-9][A-Za-z0-9\-]*"
                    r"(?:\.[A-Za-z0-9][A-Za-z0-9\-]*)+(?:/\S*)?)",
                    re.IGNORECASE,
                ),
                _strip_trailing_punctuation,
                per_line=True,
                skip_line=_has_email,
            ),
            FieldRule(
                "website",
                re.compile(
                    r"(?<![A-Za-z0-9.\-])([A-Za-z0-9][A-Za-z0-9\-]*(?:\.[A-Za-z0-9][A-Za-z0-9\-]*)*"
                    r"\.[a-z]{2,}(?:/\S*)?)(?![A-Za-z0-9\-])"
                ),
                _strip_trailing_punctuation,
                per_line=True,
                skip_line=_has_email,
            ),
        ]

    # -------------------------------------------------------------------------
    # Extractors
    # -------------------------------------------------------------------------

    def _cjk_name(self, match: re.Match) -> str | None:
        value = match.group(0)
        if not 2 <= len(value) <= 4:
            return None
        if self._not_a_cjk_name.search(value):
            return None
        return value

    def _spaced_cjk_name(self, match: re.Match) -> str | None:
        value = "".join(match.group(0).split())
        if not 2 <= len(value) <= 4:
            return None
        if self._not_a_cjk_name.search(value):
            return None
        return value

    def _latin_name(self, match: re.Match) -> str | None:
        value = match.group(1)
        if any(word.lower() in self._non_name_words for word in value.split()):
            return None
        return value

    def _unless_fax(self, match: re.Match) -> str | None:
        """Reject a number whose nearest preceding label on the same line is a fax label."""
        line_start = match.string.rfind("\n", 0, match.start()) + 1
        prefix = match.string[line_start:match.start()]
        labels = self._any_label.findall(prefix)
        if labels and labels[-1] in self._fax_labels:
            return None
        return _group_one(match)

    def _address(self, match: re.Match) -> str | None:
        value = match.group(1).strip()
        if len(value) < self.tables.min_address_length:
            return None
        if self._ends_with_company.search(value):
            return None
        # Latin-only unit words ("Lane", "Room") also appear in names; require a number
        if not self._cjk_unit.search(value) and not any(char.isdigit() for char in value):
            return None
        return value
