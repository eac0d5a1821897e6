"""Deterministic field extractors over inbound message text.

Each extractor is a :class:`FieldExtractor` registered in ``EXTRACTORS``.
``try_extract`` scans free text (general extraction); ``answer`` interprets a
reply to a question that was explicitly asked and may accept shorter forms
(a bare name, a bare country, a bare number). Both return ``None`` when
nothing was found.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable, Iterator, Optional

from app.logging_config import get_logger
from app.models.types import utcnow
from app.services.service_catalog import is_service_term, match_service

logger = get_logger("extractors")

MIN_ANSWER_LENGTH = 2
MAX_EXPIRY_AHEAD = timedelta(days=365 * 20 + 5)
EXPIRY_LOOKAHEAD = 100
EXPIRY_LOOKBEHIND = 50

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "for", "with", "need", "want", "looking", "interested",
        "hi", "hello", "hey", "salam", "thanks", "thank", "please", "ok", "okay", "yes", "no",
        "sure", "fine", "good", "here", "there", "not", "just", "also", "from", "about", "in",
        "my", "is", "am", "me", "you", "we", "it", "this", "that", "going", "planning", "new",
        "urgent", "asap", "now", "still", "currently", "working", "living", "based",
    }
)

NAME_BLOCKLIST = frozenset(
    {"business", "setup", "visa", "family", "mainland", "freezone", "dubai", "uae", "abu", "dhabi",
     "sharjah", "ajman", "morning", "evening", "afternoon", "regards", "sir", "madam"}
)

# Demonyms and country names; matched case-insensitively, stored as written.
NATIONALITY_TERMS = (
    "south african", "sri lankan", "united kingdom", "united states", "saudi arabia", "south africa", "sri lanka",
    "indian", "pakistani", "bangladeshi", "filipino", "filipina", "egyptian", "syrian", "lebanese", "jordanian",
    "british", "american", "canadian", "australian", "chinese", "japanese", "korean", "russian", "turkish",
    "iranian", "iraqi", "sudanese", "ethiopian", "kenyan", "nigerian", "nepali", "nepalese", "german",
    "french", "italian", "spanish", "ukrainian", "moroccan", "tunisian", "algerian", "saudi", "emirati",
    "omani", "yemeni", "afghan", "uzbek", "kazakh", "zambian", "ugandan", "ghanaian",
    "india", "pakistan", "bangladesh", "philippines", "egypt", "syria", "lebanon", "jordan", "uk", "usa",
    "england", "canada", "australia", "china", "japan", "korea", "russia", "turkey", "iran", "iraq", "sudan",
    "ethiopia", "kenya", "nigeria", "nepal", "germany", "france", "italy", "spain", "ukraine", "morocco",
    "tunisia", "algeria", "oman", "yemen", "afghanistan", "uzbekistan", "kazakhstan", "zambia", "uganda",
    "ghana",
)

NATIONALITY_PATTERNS = (
    re.compile(r"\bnationality\s*(?:is|:)?\s*([A-Za-z][A-Za-z ]{1,30})", re.IGNORECASE),
    re.compile(r"\b(?:i am|i'm|im)\s+from\s+([A-Za-z][A-Za-z ]{1,30})", re.IGNORECASE),
    re.compile(r"\bfrom\s+([A-Za-z][A-Za-z ]{1,30})", re.IGNORECASE),
    re.compile(r"\b([A-Za-z]+)\s+(?:national|citizen|passport holder)\b", re.IGNORECASE),
)

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
FULL_NAME_RE = re.compile(r"\b([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+){1,2})\b")
# "my name is ahmed" is accepted in any case; "I am X" / "this is X" only when X is capitalised.
NAME_IS_RE = re.compile(r"\b(?:my name is|my name's|name is|name:)\s+([A-Za-z][A-Za-z' \-]{1,60})", re.IGNORECASE)
NAME_INTRO_RE = re.compile(r"\b(?:[Ii] am|[Ii]'m|[Tt]his is)\s+([A-Z][A-Za-z'\-]+(?:[ \t]+[A-Z][A-Za-z'\-]+){0,2})")

MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_MONTH_RE = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*"
DATE_PATTERNS = (
    ("ymd", re.compile(r"\b(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})\b")),
    ("dmy", re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})\b")),
    ("d_mon_y", re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)?\s+" + _MONTH_RE + r",?\s+(\d{2,4})\b", re.IGNORECASE)),
    ("mon_d_y", re.compile(r"\b" + _MONTH_RE + r"\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{2,4})\b", re.IGNORECASE)),
)
RELATIVE_DATE_PATTERNS = (
    re.compile(r"\b(next|this|in)\s+(\d+\s+)?(month|week|year|days?|weeks?|months?|years?)\b", re.IGNORECASE),
    re.compile(r"\b(soon|tomorrow|today|end of (the )?(month|year))\b", re.IGNORECASE),
    re.compile(r"\b(after|before)\s+(ramadan|eid|summer|winter)\b", re.IGNORECASE),
)

EXPIRY_KEYWORDS = ("expir", "valid until", "valid till")
EXPIRY_TYPES = (
    ("emirates id", "EMIRATES_ID_EXPIRY"),
    ("eid", "EMIRATES_ID_EXPIRY"),
    ("passport", "PASSPORT_EXPIRY"),
    ("trade license", "TRADE_LICENSE_EXPIRY"),
    ("establishment card", "ESTABLISHMENT_CARD_EXPIRY"),
    ("establishment", "ESTABLISHMENT_CARD_EXPIRY"),
    ("insurance", "INSURANCE_EXPIRY"),
    ("license", "TRADE_LICENSE_EXPIRY"),
    ("visa", "VISA_EXPIRY"),
)
DEFAULT_EXPIRY_TYPE = "VISA_EXPIRY"

NUMBER_WORDS = {
    "zero": 0, "none": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}
_COUNT = r"\b(\d{1,2}|zero|none|one|two|three|four|five|six|seven|eight|nine|ten)"
PARTNER_PATTERNS = (
    re.compile(_COUNT + r"\s+(?:partners?|shareholders?|owners?)\b", re.IGNORECASE),
    re.compile(r"\b(?:partners?|shareholders?)\s*[:=]?\s*" + _COUNT + r"\b", re.IGNORECASE),
)
VISA_COUNT_PATTERNS = (
    re.compile(_COUNT + r"\s+(?:visas?|residence visas?|employees?)\b", re.IGNORECASE),
    re.compile(r"\bvisas?\s*[:=]\s*" + _COUNT + r"\b", re.IGNORECASE),
)


def _plausible(text: Optional[str]) -> bool:
    return bool(text) and len(text.strip()) >= MIN_ANSWER_LENGTH


def _words(text: str) -> list[str]:
    return re.findall(r"[A-Za-z][A-Za-z'\-]*", text)


def _as_written(value: str) -> str:
    value = value.strip()
    return value.title() if value.islower() else value


def _term_re(term: str) -> str:
    return rf"(?<!\w){re.escape(term)}(?!\w)"


def _leading_nationality(candidate: str) -> Optional[str]:
    """The nationality term that ``candidate`` starts with, as written."""
    stripped = candidate.strip()
    lower = stripped.lower()
    for term in NATIONALITY_TERMS:
        if lower == term or lower.startswith(term + " "):
            return _as_written(stripped[: len(term)])
    return None


def _is_nationality_word(word: str) -> bool:
    return word.lower() in NATIONALITY_TERMS


# -- name -------------------------------------------------------------------


def _blocked_name_word(word: str) -> bool:
    lower = word.lower()
    return lower in STOPWORDS or lower in NAME_BLOCKLIST or is_service_term(lower) or _is_nationality_word(lower)


def _clean_name(candidate: str) -> Optional[str]:
    words = _words(candidate)
    if not words or len(words) > 3 or any(_blocked_name_word(word) for word in words):
        return None
    name = " ".join(word[:1].upper() + word[1:] for word in words)
    return name if _plausible(name) else None


def _leading_name(candidate: str) -> Optional[str]:
    """Words up to the first non-name word ("Ahmed and I need..." -> "Ahmed")."""
    taken = []
    for word in _words(candidate)[:3]:
        if _blocked_name_word(word):
            break
        taken.append(word)
    return _clean_name(" ".join(taken)) if taken else None


def extract_name(text: str) -> Optional[str]:
    if not _plausible(text):
        return None
    for pattern in (NAME_IS_RE, NAME_INTRO_RE):
        match = pattern.search(text)
        if match:
            name = _leading_name(match.group(1))
            if name:
                return name
    match = FULL_NAME_RE.search(text)
    if match:
        return _clean_name(match.group(1))
    return None


def answer_name(text: str) -> Optional[str]:
    """A reply to "what is your name" may be just the name."""
    name = extract_name(text)
    if name:
        return name
    stripped = text.strip().strip(".!")
    if "\n" in stripped:
        return None
    return _clean_name(stripped)


def extract_line_name(line: str) -> Optional[str]:
    """A line that is nothing but a capitalised name ("Abdurahman")."""
    stripped = line.strip().strip(".!")
    if not _plausible(stripped) or not stripped[:1].isupper():
        return extract_name(line)
    return extract_name(line) or _clean_name(stripped)


# -- nationality ------------------------------------------------------------


def extract_nationality(text: str) -> Optional[str]:
    if not _plausible(text):
        return None
    for pattern in NATIONALITY_PATTERNS:
        match = pattern.search(text)
        if match:
            value = _leading_nationality(match.group(1))
            if value:
                return value

    lower = text.lower()
    hits = []
    for term in NATIONALITY_TERMS:
        match = re.search(_term_re(term), lower)
        if match:
            hits.append((match.start(), -len(term), match))
    if not hits:
        return None
    _, _, match = min(hits)
    return _as_written(text[match.start() : match.end()])


def answer_nationality(text: str) -> Optional[str]:
    value = extract_nationality(text)
    if value:
        return value
    match = NATIONALITY_PATTERNS[0].search(text) or NATIONALITY_PATTERNS[1].search(text)
    candidate = match.group(1) if match else text.strip().strip(".!")
    words = _words(candidate)
    if len(words) != 1 or not _plausible(words[0]):
        return None
    word = words[0]
    if word.lower() in STOPWORDS or is_service_term(word):
        return None
    return _as_written(word)


# -- service / email --------------------------------------------------------


def extract_service(text: str) -> Optional[str]:
    if not _plausible(text):
        return None
    service = match_service(text)
    return service.value if service else None


def extract_email(text: str) -> Optional[str]:
    match = EMAIL_RE.search(text or "")
    return match.group(0).lower() if match else None


# -- expiries ---------------------------------------------------------------


def _year(raw: str) -> int:
    value = int(raw)
    if len(raw) == 2:
        return 2000 + value if value <= 49 else 1900 + value
    return value


def _month(raw: str) -> int:
    return MONTHS.index(raw.lower()[:3]) + 1


def _build_date(kind: str, groups) -> date:
    if kind == "ymd":
        return date(int(groups[0]), int(groups[1]), int(groups[2]))
    if kind == "dmy":
        return date(_year(groups[2]), int(groups[1]), int(groups[0]))
    if kind == "d_mon_y":
        return date(_year(groups[2]), _month(groups[1]), int(groups[0]))
    return date(_year(groups[2]), _month(groups[0]), int(groups[1]))


def _parse_dates(text: str) -> Iterator[tuple[int, date]]:
    for kind, pattern in DATE_PATTERNS:
        for match in pattern.finditer(text):
            try:
                yield match.start(), _build_date(kind, match.groups())
            except ValueError:
                continue


def has_relative_date(text: str) -> bool:
    return any(pattern.search(text) for pattern in RELATIVE_DATE_PATTERNS)


def _future_dates(text: str, today: Optional[date] = None) -> list[tuple[int, date]]:
    today = today or utcnow().date()
    latest = today + MAX_EXPIRY_AHEAD
    return sorted((pos, value) for pos, value in _parse_dates(text) if today < value <= latest)


def find_explicit_dates(text: str, today: Optional[date] = None) -> list[date]:
    """Explicit future dates (no more than 20 years out), in text order."""
    dates = []
    for _, value in _future_dates(text, today):
        if value not in dates:
            dates.append(value)
    return dates


def _mentions_expiry(lower: str) -> bool:
    return any(keyword in lower for keyword in EXPIRY_KEYWORDS)


def _expiry_types_in(lower: str) -> list[tuple[int, str]]:
    hits = []
    claimed = []
    for keyword, expiry_type in EXPIRY_TYPES:
        for match in re.finditer(_term_re(keyword), lower):
            if any(start <= match.start() < end for start, end in claimed):
                continue
            claimed.append(match.span())
            hits.append((match.start(), expiry_type))
    hits.sort()
    return hits


def extract_expiries(text: str, today: Optional[date] = None) -> Optional[list[dict[str, str]]]:
    """Explicit expiry dates per document type; relative dates are rejected."""
    if not _plausible(text) or has_relative_date(text):
        return None
    lower = text.lower()
    if not _mentions_expiry(lower):
        return None

    dated = _future_dates(text, today)
    expiries = []
    seen_types = set()
    for position, expiry_type in _expiry_types_in(lower):
        if expiry_type in seen_types:
            continue
        # nearest date after the document name, else the nearest one before it
        after = [value for pos, value in dated if position <= pos <= position + EXPIRY_LOOKAHEAD]
        before = [value for pos, value in dated if position - EXPIRY_LOOKBEHIND <= pos < position]
        chosen = after[0] if after else (before[-1] if before else None)
        if chosen is not None:
            expiries.append({"type": expiry_type, "date": chosen.isoformat()})
            seen_types.add(expiry_type)
    return expiries or None


def answer_expiry(text: str) -> Optional[list[dict[str, str]]]:
    """A reply to "when does it expire" may be a bare date."""
    expiries = extract_expiries(text)
    if expiries:
        return expiries
    if has_relative_date(text):
        return None
    dates = find_explicit_dates(text)
    if not dates:
        return None
    types = _expiry_types_in(text.lower())
    expiry_type = types[0][1] if types else DEFAULT_EXPIRY_TYPE
    return [{"type": expiry_type, "date": dates[0].isoformat()}]


def extract_expiry_hint(text: str) -> Optional[str]:
    """The sentence mentioning an expiry when no explicit date is given."""
    if not _plausible(text):
        return None
    lower = text.lower()
    if not _mentions_expiry(lower) or not _expiry_types_in(lower):
        return None
    if next(_parse_dates(text), None) is not None:
        return None
    for sentence in re.split(r"(?<=[.!?])\s+|\n", text):
        sentence_lower = sentence.lower()
        if _mentions_expiry(sentence_lower) and _expiry_types_in(sentence_lower):
            return sentence.strip()
    return text.strip()[:200]


# -- counts -----------------------------------------------------------------


def _count_value(raw: str) -> int:
    raw = raw.lower()
    return NUMBER_WORDS[raw] if raw in NUMBER_WORDS else int(raw)


def _extract_count(text: str, patterns, minimum: int, maximum: int) -> Optional[int]:
    for pattern in patterns:
        match = pattern.search(text or "")
        if match:
            value = _count_value(match.group(1))
            if minimum <= value <= maximum:
                return value
    return None


def extract_partners_count(text: str) -> Optional[int]:
    return _extract_count(text, PARTNER_PATTERNS, 1, 10)


def extract_visas_count(text: str) -> Optional[int]:
    return _extract_count(text, VISA_COUNT_PATTERNS, 0, 10)


def _bare_count(text: str, minimum: int, maximum: int) -> Optional[int]:
    stripped = (text or "").strip().strip(".!").lower()
    if stripped.isdigit() or stripped in NUMBER_WORDS:
        value = _count_value(stripped)
        if minimum <= value <= maximum:
            return value
    return None


def answer_partners_count(text: str) -> Optional[int]:
    value = extract_partners_count(text)
    return value if value is not None else _bare_count(text, 1, 10)


def answer_visas_count(text: str) -> Optional[int]:
    value = extract_visas_count(text)
    return value if value is not None else _bare_count(text, 0, 10)


# -- registry ---------------------------------------------------------------


@dataclass(frozen=True)
class FieldExtractor:
    name: str
    try_extract: Callable[[str], Any]
    try_answer: Optional[Callable[[str], Any]] = None
    per_line: Optional[Callable[[str], Any]] = None
    # bare digits ("2") are valid answers below the minimum answer length
    numeric: bool = False

    def answer(self, text: str) -> Any:
        if not self.numeric and not _plausible(text):
            return None
        return (self.try_answer or self.try_extract)(text)

    def scan_line(self, line: str) -> Any:
        return (self.per_line or self.try_extract)(line)


EXTRACTORS: dict[str, FieldExtractor] = {
    extractor.name: extractor
    for extractor in (
        FieldExtractor("name", extract_name, try_answer=answer_name, per_line=extract_line_name),
        FieldExtractor("nationality", extract_nationality, try_answer=answer_nationality),
        FieldExtractor("service", extract_service),
        FieldExtractor("email", extract_email),
        FieldExtractor("expiries", extract_expiries, try_answer=answer_expiry),
        FieldExtractor("expiry_hint", extract_expiry_hint),
        FieldExtractor("partners_count", extract_partners_count, try_answer=answer_partners_count, numeric=True),
        FieldExtractor("visas_count", extract_visas_count, try_answer=answer_visas_count, numeric=True),
    )
}


def get_extractor(name: str) -> FieldExtractor:
    try:
        return EXTRACTORS[name]
    except KeyError:
        raise KeyError(f"No extractor registered for field {name!r}") from None


def run_general_extraction(text: str) -> dict[str, Any]:
    """Run every extractor over the whole text, then over each line.

    A whole-text match wins over a single line; one extractor matching does
    not stop the others.
    """
    found: dict[str, Any] = {}
    if not text or not text.strip():
        return found

    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for name, extractor in EXTRACTORS.items():
        value = extractor.try_extract(text)
        if value is None and len(lines) > 1:
            for line in lines:
                value = extractor.scan_line(line)
                if value is not None:
                    break
        if value is not None:
            found[name] = value

    if "expiries" in found:
        found.pop("expiry_hint", None)
    return found
