from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Optional

try:
    from openai import OpenAI
except Exception:  # pragma: no cover - optional dependency
    OpenAI = None  # type: ignore[assignment]

from chat_parsing import DWELLING_LABELS, PREFERENCE_LABELS, extract_profile_from_text, format_number_it
from solar_quote import CustomerProfile
from turn_contract import (
    MAX_SUGGESTED_ACTIONS,
    Confidence,
    ProfileField,
    TurnPayloadError,
    TurnResult,
    UserIntent,
    fallback_turn_result,
    missing_fields,
    parse_turn_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_TIMEOUT_S = 20.0

QUICK_QUOTE_ACTION = "Calcola preventivo rapido"


def _falsy_env(name: str) -> bool:
    return str(os.getenv(name, "")).strip().lower() in {"0", "false", "no", "n", "off"}


def ai_intent_enabled() -> bool:
    """
    Whether chat turns go through the hosted model.

    On by default once an API key is configured; OPENAI_INTENT_ENABLED=false forces the
    offline rule-based extractor.
    """
    if _falsy_env("OPENAI_INTENT_ENABLED"):
        return False
    if not str(os.getenv("OPENAI_API_KEY", "")).strip():
        return False
    return OpenAI is not None


def ai_intent_model() -> str:
    return str(os.getenv("OPENAI_INTENT_MODEL", "")).strip() or DEFAULT_MODEL


def ai_timeout_s() -> float:
    try:
        value = float(os.getenv("OPENAI_TIMEOUT_S", "") or DEFAULT_TIMEOUT_S)
    except ValueError:
        return DEFAULT_TIMEOUT_S
    return value if value > 0 else DEFAULT_TIMEOUT_S


_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def _extract_json_object(text: str) -> Optional[Any]:
    """
    Extract and parse the first JSON object found in a string.
    """
    t = (text or "").strip()
    if not t:
        return None
    if t.startswith("{") and t.endswith("}"):
        try:
            return json.loads(t)
        except json.JSONDecodeError:
            pass

    m = _JSON_OBJECT_RE.search(t)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except json.JSONDecodeError:
        return None


_TURN_CONTRACT: dict[str, Any] = {
    "parsed": {
        "cap": None,
        "dwelling": None,
        "monthly_kwh": None,
        "bill_eur": None,
        "storage_pref": None,
        "incentives": None,
    },
    "user_intent": "GET_QUOTE",
    "reply": "",
    "next_missing_field": None,
    "ask": None,
    "suggest_actions": [],
    "confidence": "media",
    "notes": [],
}

_SHAPE_EXAMPLES: tuple[tuple[str, dict[str, Any]], ...] = (
    (
        "partial data plus a question",
        {
            "parsed": {
                "cap": "20100",
                "dwelling": "appartamento",
                "monthly_kwh": None,
                "bill_eur": 95.0,
                "storage_pref": "non_so",
                "incentives": "si",
            },
            "user_intent": "ASK_QUESTION",
            "reply": "In appartamento servono spesso verifiche condominiali e il tetto può limitare la taglia. "
            "Ho registrato CAP 20100 e bolletta di circa 95 €.",
            "next_missing_field": "monthly_kwh",
            "ask": "Quanti kWh consumi in media al mese?",
            "suggest_actions": [QUICK_QUOTE_ACTION, "Domande frequenti"],
            "confidence": "media",
            "notes": ["'95 euro' -> 95.0"],
        },
    ),
    (
        "messy input",
        {
            "parsed": {
                "cap": "50100",
                "dwelling": "casa_singola",
                "monthly_kwh": 300.0,
                "bill_eur": None,
                "storage_pref": "si",
                "incentives": None,
            },
            "user_intent": "GET_QUOTE",
            "reply": "Perfetto: casa singola e consumo di circa 300 kWh al mese, con accumulo.",
            "next_missing_field": "incentives",
            "ask": "Vuoi considerare incentivi o finanziamenti? (si/no/non so)",
            "suggest_actions": [QUICK_QUOTE_ACTION],
            "confidence": "alta",
            "notes": ["'villetta' -> 'casa_singola'", "'~300 kWh' -> 300.0"],
        },
    ),
)

_SYSTEM_PROMPT = (
    "You are Preventivatore AI, a conversational assistant that helps users in Italy get a "
    "photovoltaic quote pre-estimate and answers related questions.\n"
    "Per turn: extract the inputs needed for a base quote, answer questions briefly, and guide "
    "the user to the next missing field with ONE concise question.\n"
    "You MUST output ONLY a single JSON object (no markdown, no commentary) with this shape:\n"
    f"{json.dumps(_TURN_CONTRACT, indent=2)}\n\n"
    "Fields:\n"
    "- parsed.cap: string|null, digits only, valid length 4-5, truncate to 5.\n"
    '- parsed.dwelling: "appartamento" | "casa_singola" | "azienda" | null.\n'
    "- parsed.monthly_kwh: number|null (e.g. 300.0). parsed.bill_eur: number|null (e.g. 95.0).\n"
    '- parsed.storage_pref, parsed.incentives: "si" | "no" | "non_so" | null.\n'
    '- user_intent: "GET_QUOTE" | "ASK_QUESTION" | "BOOKING" | "SUPPORT" | "OUT_OF_SCOPE".\n'
    "- reply: Italian, 70-90 words max. Answer questions first, then summarize what you understood.\n"
    '- next_missing_field: "cap" | "dwelling" | "monthly_kwh" | "bill_eur" | "storage_pref" | "incentives" | null.\n'
    "- ask: one simple follow-up question for next_missing_field, or null.\n"
    "- suggest_actions: 0-3 short Italian button labels (e.g. "
    f'"{QUICK_QUOTE_ACTION}", "Aggiungi accumulo", "Domande frequenti").\n'
    '- confidence: "bassa" | "media" | "alta".\n'
    "- notes: brief strings explaining normalizations (e.g. \"'villa' -> 'casa_singola'\").\n\n"
    "Normalization rules (strict):\n"
    "- 'villa', 'casa indipendente', 'villetta', 'abitazione singola' -> casa_singola; "
    "'app', 'appart' -> appartamento; 'capannone', 'ufficio', 'negozio', 'impresa', 'azienda' -> azienda.\n"
    "- 'non so', 'boh', 'forse' -> non_so.\n"
    "- '95 euro' -> 95.0; '~300 kWh' -> 300.0. Use dot as decimal separator.\n"
    "- If a field isn't given, set it to null. Never invent values.\n"
    "Tone: Italian, clear, practical, no emojis, no marketing fluff. Do not give final prices: "
    "the calculator does that. You may mention qualitative effects (storage -> more self-consumption).\n\n"
    "Examples (shape only, do not copy values):\n"
    + "\n".join(
        f"{label}:\n{json.dumps(example, ensure_ascii=False)}" for label, example in _SHAPE_EXAMPLES
    )
    + "\n"
)


def _build_turn_prompt(*, user_text: str, history: Optional[CustomerProfile]) -> tuple[str, str]:
    """
    Build the (system, user) prompt pair for one chat turn.
    """
    user = f"USER_TEXT={user_text}\n"
    if history is not None and any(v is not None for v in history.to_wire().values()):
        user += (
            "\nInformation collected so far (authoritative, do not ask for it again):\n"
            f"{json.dumps(history.to_wire(), indent=2, ensure_ascii=False)}\n"
        )
    return _SYSTEM_PROMPT, user


def _make_client() -> Any:
    if OpenAI is None:
        raise RuntimeError("openai package is not installed")
    return OpenAI(api_key=str(os.getenv("OPENAI_API_KEY", "")).strip(), timeout=ai_timeout_s())


def _response_text(resp: Any) -> str:
    text = getattr(resp, "output_text", None)
    if isinstance(text, str):
        return text.strip()
    return str(resp or "")


def recognize_turn(
    *, user_text: str, history: Optional[CustomerProfile] = None, client: Any = None
) -> Optional[TurnResult]:
    """
    Ask the hosted model to interpret one chat turn.

    Returns None when AI is disabled, the call fails, or the response is unusable.
    """
    if client is None:
        if not ai_intent_enabled():
            return None
        try:
            client = _make_client()
        except Exception:
            logger.exception("could not create OpenAI client")
            return None

    system, user = _build_turn_prompt(user_text=user_text, history=history)
    try:
        resp = client.responses.create(
            model=ai_intent_model(),
            input=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
    except Exception:
        logger.exception("turn extraction request failed")
        return None

    payload = _extract_json_object(_response_text(resp))
    if payload is None:
        logger.warning("turn extraction returned no JSON object")
        return None
    try:
        return parse_turn_payload(payload)
    except TurnPayloadError as exc:
        logger.warning("turn extraction payload rejected: %s", exc)
        return None


def recommend_actions(turn: TurnResult, *, client: Any = None) -> tuple[str, ...]:
    """
    Ask the model for 1-3 follow-up button labels for a turn.

    Falls back to the turn's own suggestions on any failure.
    """
    if client is None:
        if not ai_intent_enabled():
            return turn.suggest_actions
        try:
            client = _make_client()
        except Exception:
            logger.exception("could not create OpenAI client")
            return turn.suggest_actions

    parsed_lines = "\n".join(f"- {k}: {v}" for k, v in turn.parsed.to_wire().items())
    prompt = (
        "Given the following user information, suggest 1-3 relevant next actions as short Italian "
        "button labels. Return ONLY a JSON object {\"actions\": [string, ...]}; use an empty list if "
        "nothing is relevant.\n\n"
        f"Parsed data:\n{parsed_lines}\n\n"
        f"User intent: {turn.user_intent.value}\n"
        f"Reply: {turn.reply}\n"
        f"Next missing field: {turn.next_missing_field.value if turn.next_missing_field else None}\n"
        f"Ask: {turn.ask}\n"
        f"Confidence: {turn.confidence.value}\n"
        f"Notes: {', '.join(turn.notes)}\n\n"
        f"Examples: {QUICK_QUOTE_ACTION}; Aggiungi accumulo; Domande frequenti; "
        "Ottieni un preventivo personalizzato; Parla con un esperto"
    )
    try:
        resp = client.responses.create(model=ai_intent_model(), input=[{"role": "user", "content": prompt}])
    except Exception:
        logger.exception("action recommendation request failed")
        return turn.suggest_actions

    payload = _extract_json_object(_response_text(resp))
    actions = payload.get("actions") if isinstance(payload, dict) else None
    if not isinstance(actions, list):
        return turn.suggest_actions
    labels = tuple(str(a).strip() for a in actions if isinstance(a, str) and a.strip())
    return labels[:MAX_SUGGESTED_ACTIONS]


# region offline extraction
FIELD_QUESTIONS: dict[ProfileField, str] = {
    ProfileField.CAP: "Qual è il CAP dell'immobile dove vorresti installare l'impianto?",
    ProfileField.DWELLING: "Si tratta di un appartamento, di una casa singola o di un'azienda?",
    ProfileField.MONTHLY_KWH: (
        "Quanti kWh consumi in media al mese? Se non lo sai, dimmi l'importo medio della bolletta."
    ),
    ProfileField.BILL_EUR: "A quanto ammonta in media la tua bolletta elettrica mensile?",
    ProfileField.STORAGE_PREF: "Ti interessa un sistema di accumulo? (si/no/non so)",
    ProfileField.INCENTIVES: "Vuoi considerare incentivi o finanziamenti? (si/no/non so)",
}

_FAQ_ANSWERS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"villa|appartamento|casa singola|condomin"),
        "In un appartamento possono servire verifiche condominiali e lo spazio sul tetto può limitare "
        "la taglia; una casa singola di solito consente una posa più semplice e più superficie utile. "
        "A parità di consumi il costo per kW può variare del 10-20%.",
    ),
    (
        re.compile(r"incentiv|bonus|detrazion"),
        "Per il fotovoltaico residenziale sono di norma disponibili detrazioni fiscali e, per l'energia "
        "immessa in rete, una remunerazione dedicata. Le condizioni cambiano nel tempo: le verifichiamo "
        "in fase di preventivo definitivo.",
    ),
    (
        re.compile(r"accumul|batteri"),
        "Un sistema di accumulo immagazzina l'energia prodotta di giorno per usarla la sera: aumenta "
        "l'autoconsumo e riduce l'energia prelevata dalla rete, a fronte di un investimento maggiore.",
    ),
    (
        re.compile(r"vantagg|convien|risparm"),
        "Un impianto fotovoltaico riduce la bolletta grazie all'autoconsumo e valorizza l'energia in "
        "eccesso immessa in rete; con i consumi tipici di una famiglia il risparmio è significativo.",
    ),
)

_BOOKING_RE = re.compile(r"appuntament|sopralluog|prenot|incontr|richiamat|chiamat")
_SUPPORT_RE = re.compile(r"assistenz|guast|non funziona|già cliente|gia cliente|inverter in errore|manutenzion")
_QUOTE_RE = re.compile(r"preventiv|stima|fotovoltaic|pannell|impiant|calcol|solare")
_QUESTION_START_RE = re.compile(r"^\s*(come|cosa|quanto|quanti|quale|quali|perch[eé]|posso|conviene|ci sono)\b")


def _detect_intent(text: str, *, extracted_any: bool) -> UserIntent:
    t = (text or "").lower()
    if _BOOKING_RE.search(t):
        return UserIntent.BOOKING
    if _SUPPORT_RE.search(t):
        return UserIntent.SUPPORT
    if "?" in t or _QUESTION_START_RE.search(t):
        return UserIntent.ASK_QUESTION
    if extracted_any or _QUOTE_RE.search(t):
        return UserIntent.GET_QUOTE
    return UserIntent.OUT_OF_SCOPE


def _understood_summary(update: CustomerProfile) -> list[str]:
    parts: list[str] = []
    if update.postal_code:
        parts.append(f"CAP {update.postal_code}")
    if update.dwelling_type is not None:
        parts.append(DWELLING_LABELS[update.dwelling_type].lower())
    if update.monthly_consumption_kwh:
        parts.append(f"consumo di circa {format_number_it(update.monthly_consumption_kwh)} kWh/mese")
    if update.monthly_bill_eur:
        parts.append(f"bolletta di circa {format_number_it(update.monthly_bill_eur)} € al mese")
    if update.storage_preference is not None:
        parts.append(f"accumulo: {PREFERENCE_LABELS[update.storage_preference].lower()}")
    if update.incentives_preference is not None:
        parts.append(f"incentivi: {PREFERENCE_LABELS[update.incentives_preference].lower()}")
    return parts


def _offline_actions(merged: CustomerProfile, intent: UserIntent) -> tuple[str, ...]:
    actions: list[str] = []
    if merged.monthly_consumption_kwh or merged.monthly_bill_eur:
        actions.append(QUICK_QUOTE_ACTION)
    if merged.storage_preference is None:
        actions.append("Aggiungi accumulo")
    if intent != UserIntent.BOOKING:
        actions.append("Domande frequenti")
    return tuple(actions[:3])


def extract_turn_offline(
    *, user_text: str, history: Optional[CustomerProfile] = None, expected_field: Optional[ProfileField] = None
) -> TurnResult:
    """
    Rule-based stand-in for the hosted model, same output contract.

    Used when no API key is configured so the assistant still collects data and quotes.
    """
    prior = history or CustomerProfile()
    update = extract_profile_from_text(user_text, expected_field=expected_field.value if expected_field else None)
    extracted_any = any(v is not None for v in update.to_wire().values())
    intent = _detect_intent(user_text, extracted_any=extracted_any)
    merged = prior.merged_with(update)

    lowered = (user_text or "").lower()
    reply_parts: list[str] = []
    if intent == UserIntent.ASK_QUESTION:
        for pattern, answer in _FAQ_ANSWERS:
            if pattern.search(lowered):
                reply_parts.append(answer)
                break
        else:
            reply_parts.append(
                "Posso aiutarti con stime di taglia, produzione e risparmio di un impianto fotovoltaico."
            )
    elif intent == UserIntent.BOOKING:
        reply_parts.append("Volentieri: un nostro consulente ti contatterà per fissare un sopralluogo.")
    elif intent == UserIntent.SUPPORT:
        reply_parts.append(
            "Per l'assistenza su un impianto esistente ti metteremo in contatto con il nostro supporto tecnico."
        )
    elif intent == UserIntent.OUT_OF_SCOPE:
        reply_parts.append(
            "Mi occupo di preventivi e domande sugli impianti fotovoltaici: posso aiutarti con una stima?"
        )

    understood = _understood_summary(update)
    if understood:
        reply_parts.append("Ho registrato: " + ", ".join(understood) + ".")

    missing = missing_fields(merged)
    next_field = missing[0] if missing else None
    ask = FIELD_QUESTIONS[next_field] if next_field is not None and intent != UserIntent.OUT_OF_SCOPE else None
    if next_field is None:
        reply_parts.append("Ho tutte le informazioni necessarie per la stima.")

    notes: list[str] = []
    if update.monthly_consumption_kwh:
        notes.append(f"consumo -> {update.monthly_consumption_kwh}")
    if update.monthly_bill_eur:
        notes.append(f"bolletta -> {update.monthly_bill_eur}")

    confidence = Confidence.LOW if intent == UserIntent.OUT_OF_SCOPE and not extracted_any else Confidence.MEDIUM

    return TurnResult(
        parsed=update,
        user_intent=intent,
        reply=" ".join(reply_parts) if reply_parts else "Perfetto.",
        next_missing_field=next_field,
        ask=ask,
        suggest_actions=_offline_actions(merged, intent),
        confidence=confidence,
        notes=tuple(notes),
    )


# endregion offline extraction


def extract_turn(
    *,
    user_text: str,
    history: Optional[CustomerProfile] = None,
    expected_field: Optional[ProfileField] = None,
    client: Any = None,
) -> TurnResult:
    """
    Interpret one chat turn.

    With the hosted model configured (or an explicit client), a failed call yields the
    apology fallback rather than an exception. Without it the offline extractor runs.
    """
    if client is None and not ai_intent_enabled():
        return extract_turn_offline(user_text=user_text, history=history, expected_field=expected_field)

    result = recognize_turn(user_text=user_text, history=history, client=client)
    if result is None:
        return fallback_turn_result()
    return result
