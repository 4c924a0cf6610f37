from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from chat_parsing import normalize_dwelling, normalize_postal_code, normalize_preference, parse_quantity
from solar_quote import CustomerProfile


class UserIntent(str, Enum):
    GET_QUOTE = "GET_QUOTE"
    ASK_QUESTION = "ASK_QUESTION"
    BOOKING = "BOOKING"
    SUPPORT = "SUPPORT"
    OUT_OF_SCOPE = "OUT_OF_SCOPE"


class Confidence(str, Enum):
    LOW = "bassa"
    MEDIUM = "media"
    HIGH = "alta"


class ProfileField(str, Enum):
    CAP = "cap"
    DWELLING = "dwelling"
    MONTHLY_KWH = "monthly_kwh"
    BILL_EUR = "bill_eur"
    STORAGE_PREF = "storage_pref"
    INCENTIVES = "incentives"


MAX_SUGGESTED_ACTIONS = 3

FALLBACK_REPLY = "Mi dispiace, si è verificato un errore. Per favore, riprova più tardi."


class TurnPayloadError(ValueError):
    pass


@dataclass(frozen=True)
class TurnResult:
    """
    One interpreted chat turn: the fields extracted from the message plus the reply to show.
    """

    parsed: CustomerProfile
    user_intent: UserIntent
    reply: str
    next_missing_field: Optional[ProfileField] = None
    ask: Optional[str] = None
    suggest_actions: Tuple[str, ...] = ()
    confidence: Confidence = Confidence.MEDIUM
    notes: Tuple[str, ...] = ()
    raw_json: Optional[dict[str, Any]] = field(default=None, compare=False)

    def to_wire(self) -> dict[str, Any]:
        return {
            "parsed": self.parsed.to_wire(),
            "user_intent": self.user_intent.value,
            "reply": self.reply,
            "next_missing_field": self.next_missing_field.value if self.next_missing_field else None,
            "ask": self.ask,
            "suggest_actions": list(self.suggest_actions),
            "confidence": self.confidence.value,
            "notes": list(self.notes),
        }


def fallback_turn_result() -> TurnResult:
    return TurnResult(
        parsed=CustomerProfile(),
        user_intent=UserIntent.OUT_OF_SCOPE,
        reply=FALLBACK_REPLY,
        next_missing_field=None,
        ask=None,
        suggest_actions=(),
        confidence=Confidence.LOW,
        notes=("An error occurred on the server.",),
    )


def _enum_or(enum_cls: type, value: Any, default: Any) -> Any:
    key = str(value or "").strip()
    for candidate in (key, key.upper(), key.lower()):
        try:
            return enum_cls(candidate)
        except ValueError:
            continue
    return default


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _str_tuple(value: Any, *, limit: Optional[int] = None) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    out = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    if limit is not None:
        out = out[:limit]
    return tuple(out)


def _positive_quantity(value: Any) -> Optional[float]:
    q = parse_quantity(value)
    if q is None or q <= 0:
        return None
    return q


def parse_profile_payload(parsed: Any) -> CustomerProfile:
    """
    Coerce the `parsed` object of a turn payload into a profile update.

    Anything that doesn't normalize cleanly is dropped (None), never guessed.
    """
    if parsed is None:
        return CustomerProfile()
    if not isinstance(parsed, Mapping):
        raise TurnPayloadError(f"parsed must be an object (got {type(parsed).__name__})")
    return CustomerProfile(
        postal_code=normalize_postal_code(parsed.get("cap")),
        dwelling_type=normalize_dwelling(parsed.get("dwelling")),
        monthly_consumption_kwh=_positive_quantity(parsed.get("monthly_kwh")),
        monthly_bill_eur=_positive_quantity(parsed.get("bill_eur")),
        storage_preference=normalize_preference(parsed.get("storage_pref")),
        incentives_preference=normalize_preference(parsed.get("incentives")),
    )


def parse_turn_payload(payload: Any) -> TurnResult:
    """
    Validate a JSON object returned by the extraction model.

    Raises TurnPayloadError when the payload lacks the required `parsed`/`reply` fields.
    """
    if not isinstance(payload, Mapping):
        raise TurnPayloadError("turn payload must be a JSON object")
    if "parsed" not in payload:
        raise TurnPayloadError("turn payload is missing 'parsed'")
    reply = payload.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        raise TurnPayloadError("turn payload is missing a non-empty 'reply'")

    next_missing = payload.get("next_missing_field")
    return TurnResult(
        parsed=parse_profile_payload(payload.get("parsed")),
        user_intent=_enum_or(UserIntent, payload.get("user_intent"), UserIntent.OUT_OF_SCOPE),
        reply=reply.strip(),
        next_missing_field=_enum_or(ProfileField, next_missing, None) if next_missing else None,
        ask=_optional_str(payload.get("ask")),
        suggest_actions=_str_tuple(payload.get("suggest_actions"), limit=MAX_SUGGESTED_ACTIONS),
        confidence=_enum_or(Confidence, payload.get("confidence"), Confidence.LOW),
        notes=_str_tuple(payload.get("notes")),
        raw_json=dict(payload),
    )


_FIELD_ORDER: Tuple[ProfileField, ...] = (
    ProfileField.CAP,
    ProfileField.DWELLING,
    ProfileField.MONTHLY_KWH,
    ProfileField.STORAGE_PREF,
    ProfileField.INCENTIVES,
)


def missing_fields(profile: CustomerProfile) -> Tuple[ProfileField, ...]:
    """
    Fields still needed, most important first.

    Consumption and bill are interchangeable: either one satisfies MONTHLY_KWH.
    """
    present = {
        ProfileField.CAP: profile.postal_code is not None,
        ProfileField.DWELLING: profile.dwelling_type is not None,
        ProfileField.MONTHLY_KWH: (profile.monthly_consumption_kwh or 0) > 0 or (profile.monthly_bill_eur or 0) > 0,
        ProfileField.STORAGE_PREF: profile.storage_preference is not None,
        ProfileField.INCENTIVES: profile.incentives_preference is not None,
    }
    return tuple(f for f in _FIELD_ORDER if not present[f])


def next_missing_field(profile: CustomerProfile) -> Optional[ProfileField]:
    missing = missing_fields(profile)
    return missing[0] if missing else None
