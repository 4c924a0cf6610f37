from __future__ import annotations

import difflib
import re
from typing import Any, Optional

from solar_quote import (
    CustomerProfile,
    DwellingType,
    Preference,
    dwelling_type_from_value,
    preference_from_value,
)

# Free-text synonyms -> dwelling type. Multi-word phrases are matched on the raw text,
# single words also fuzzily on tokens.
_DWELLING_PHRASES: tuple[tuple[str, DwellingType], ...] = (
    ("casa indipendente", DwellingType.DETACHED_HOUSE),
    ("abitazione singola", DwellingType.DETACHED_HOUSE),
    ("casa singola", DwellingType.DETACHED_HOUSE),
    ("casa_singola", DwellingType.DETACHED_HOUSE),
)
_DWELLING_WORDS: dict[str, DwellingType] = {
    "villa": DwellingType.DETACHED_HOUSE,
    "villetta": DwellingType.DETACHED_HOUSE,
    "app": DwellingType.APARTMENT,
    "appart": DwellingType.APARTMENT,
    "appartamento": DwellingType.APARTMENT,
    "condominio": DwellingType.APARTMENT,
    "capannone": DwellingType.BUSINESS,
    "ufficio": DwellingType.BUSINESS,
    "negozio": DwellingType.BUSINESS,
    "impresa": DwellingType.BUSINESS,
    "azienda": DwellingType.BUSINESS,
}
# Short tokens are too ambiguous for fuzzy matching ("app" vs "apro").
_FUZZY_MIN_LEN = 6

_UNKNOWN_WORDS = {"boh", "forse", "dipende", "vediamo"}
_NO_WORDS = {"no", "senza", "nessun", "nessuna", "niente"}
_YES_WORDS = {"si", "sì", "voglio", "vorrei", "con", "certo", "ok", "interessa", "interessato", "interessata"}
_NOT_INTERESTED_RE = re.compile(r"\bnon\s+(?:mi\s+)?(?:voglio|vorrei|interessa|serve|servono|ci\s+interessa)\b")

_STORAGE_RE = re.compile(r"accumul|batteri|storage")
_INCENTIVES_RE = re.compile(r"incentiv|bonus|detrazion|agevolazion|finanziament")

_NUMBER = r"(\d+(?:[.,]\d+)*)"
_KWH_RE = re.compile(_NUMBER + r"\s*(?:kwh|kw/h|kilowattora|chilowattora)", re.IGNORECASE)
_EUR_AFTER_RE = re.compile(_NUMBER + r"\s*(?:€|euro\b|eur\b)(?!\s*/\s*kwh)", re.IGNORECASE)
_EUR_BEFORE_RE = re.compile(r"€\s*" + _NUMBER, re.IGNORECASE)
_CAP_KEYWORD_RE = re.compile(r"\bcap\b\s*[:\-]?\s*(\d{4,5})", re.IGNORECASE)
_CAP_BARE_RE = re.compile(r"(?<![\d.,€])\b(\d{5})\b(?![.,]\d)")
_THOUSANDS_RE = re.compile(r"^\d{1,3}(?:\.\d{3})+$")
_QUANTITY_RE = re.compile(r"(-?\d+(?:[.,]\d+)*)")


def text_tokens(text: str) -> list[str]:
    return re.findall(r"[a-zàèéìòù]+", (text or "").lower())


def normalize_postal_code(value: Any) -> Optional[str]:
    """
    Keep digits only; valid when 4-5 digits remain. Longer runs are truncated to 5.
    """
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    if len(digits) < 4:
        return None
    return digits[:5]


def parse_quantity(value: Any) -> Optional[float]:
    """
    Parse a quantity like 95, "95 euro", "~300 kWh", "1.200,50" into a float.

    Returns None when no number is present.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return None if f != f else f
    m = _QUANTITY_RE.search(str(value))
    if not m:
        return None
    return _number_from_token(m.group(1))


def _number_from_token(token: str) -> Optional[float]:
    t = token.strip()
    sign = -1.0 if t.startswith("-") else 1.0
    t = t.lstrip("-")
    if "." in t and "," in t:
        # Italian style: dot thousands, comma decimals.
        t = t.replace(".", "").replace(",", ".")
    elif "," in t:
        t = t.replace(",", ".")
    elif _THOUSANDS_RE.match(t):
        t = t.replace(".", "")
    try:
        return sign * float(t)
    except ValueError:
        return None


def normalize_dwelling(value: Any) -> Optional[DwellingType]:
    """
    Map a wire value or a free-text mention ("villetta", "ufficio", ...) to a dwelling type.
    """
    direct = dwelling_type_from_value(value)
    if direct is not None:
        return direct
    t = str(value or "").lower()
    if not t.strip():
        return None
    for phrase, dwelling in _DWELLING_PHRASES:
        if phrase in t:
            return dwelling
    tokens = text_tokens(t)
    for tok in tokens:
        if tok in _DWELLING_WORDS:
            return _DWELLING_WORDS[tok]
    for tok in tokens:
        if len(tok) < _FUZZY_MIN_LEN:
            continue
        close = difflib.get_close_matches(tok, [w for w in _DWELLING_WORDS if len(w) >= _FUZZY_MIN_LEN], n=1, cutoff=0.82)
        if close:
            return _DWELLING_WORDS[close[0]]
    return None


def normalize_preference(value: Any) -> Optional[Preference]:
    """
    Map "si"/"sì"/"no"/"non so"/"boh"/"forse" (and wire values) to a preference.
    """
    direct = preference_from_value(value)
    if direct is not None:
        return direct
    t = str(value or "").strip().lower()
    if not t:
        return None
    if "non so" in t or "non_so" in t:
        return Preference.UNKNOWN
    tokens = set(text_tokens(t))
    if tokens & _UNKNOWN_WORDS:
        return Preference.UNKNOWN
    if _NOT_INTERESTED_RE.search(t) or tokens & _NO_WORDS:
        return Preference.NO
    if tokens & _YES_WORDS:
        return Preference.YES
    return None


def _clauses(text: str) -> list[str]:
    return [c.strip() for c in re.split(r"[.;!?\n,]", (text or "").lower()) if c.strip()]


def _preference_near(text: str, keyword_re: re.Pattern[str]) -> Optional[Preference]:
    for clause in _clauses(text):
        if keyword_re.search(clause):
            pref = normalize_preference(clause)
            if pref is not None:
                return pref
    return None


def _postal_code_from_text(text: str, *, taken_spans: list[tuple[int, int]]) -> Optional[str]:
    m = _CAP_KEYWORD_RE.search(text)
    if m:
        return normalize_postal_code(m.group(1))
    for m in _CAP_BARE_RE.finditer(text):
        start, end = m.span(1)
        if any(start < t_end and t_start < end for t_start, t_end in taken_spans):
            continue
        return m.group(1)
    return None


def extract_profile_from_text(text: str, *, expected_field: Optional[str] = None) -> CustomerProfile:
    """
    Rule-based extraction of profile fields from one chat message.

    `expected_field` is the field the assistant last asked for; it lets bare answers
    like "sì", "boh" or "300" land on the right field.
    """
    raw = text or ""
    lowered = raw.lower()
    taken: list[tuple[int, int]] = []

    monthly_kwh: Optional[float] = None
    m = _KWH_RE.search(raw)
    if m:
        monthly_kwh = _number_from_token(m.group(1))
        taken.append(m.span(1))

    monthly_bill: Optional[float] = None
    m = _EUR_AFTER_RE.search(raw) or _EUR_BEFORE_RE.search(raw)
    if m:
        monthly_bill = _number_from_token(m.group(1))
        taken.append(m.span(1))

    postal_code = _postal_code_from_text(raw, taken_spans=taken)
    dwelling = normalize_dwelling(lowered)
    storage = _preference_near(lowered, _STORAGE_RE)
    incentives = _preference_near(lowered, _INCENTIVES_RE)

    # Bare answers to the question just asked.
    if expected_field == "storage_pref" and storage is None:
        storage = normalize_preference(lowered)
    elif expected_field == "incentives" and incentives is None:
        incentives = normalize_preference(lowered)
    elif expected_field == "cap" and postal_code is None:
        postal_code = normalize_postal_code(raw) if re.fullmatch(r"\s*\d{4,5}\s*", raw) else None
    elif expected_field in ("monthly_kwh", "bill_eur") and monthly_kwh is None and monthly_bill is None:
        bare = parse_quantity(raw) if re.fullmatch(r"\s*~?\s*" + _NUMBER + r"\s*", raw) else None
        if bare is not None:
            if expected_field == "monthly_kwh":
                monthly_kwh = bare
            else:
                monthly_bill = bare

    return CustomerProfile(
        postal_code=postal_code,
        dwelling_type=dwelling,
        monthly_consumption_kwh=monthly_kwh,
        monthly_bill_eur=monthly_bill,
        storage_preference=storage,
        incentives_preference=incentives,
    )


DWELLING_LABELS: dict[DwellingType, str] = {
    DwellingType.APARTMENT: "Appartamento",
    DwellingType.DETACHED_HOUSE: "Casa Singola",
    DwellingType.BUSINESS: "Azienda",
}
PREFERENCE_LABELS: dict[Preference, str] = {
    Preference.YES: "Sì",
    Preference.NO: "No",
    Preference.UNKNOWN: "Non so",
}


def format_number_it(value: float, *, decimals: int = 0) -> str:
    """Italian grouping: 1.234,5"""
    s = f"{value:,.{decimals}f}"
    return s.replace(",", "_").replace(".", ",").replace("_", ".")
