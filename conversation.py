from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Literal, Optional, Tuple

import ai_intent
from solar_quote import CustomerProfile, QuoteEstimate, estimate
from turn_contract import Confidence, ProfileField, TurnResult, missing_fields

logger = logging.getLogger(__name__)

WELCOME_MESSAGE = (
    "Ciao! Sono il tuo assistente AI per il fotovoltaico. Come posso aiutarti oggi? "
    "Puoi chiedermi un preventivo, farmi domande sugli impianti o sui bonus fiscali."
)
WELCOME_ACTIONS: Tuple[str, ...] = (
    "Vorrei un preventivo",
    "Come funzionano gli incentivi?",
    "Quali sono i vantaggi?",
)
QUOTE_INTRO = "Ecco la stima indicativa del tuo impianto fotovoltaico."

_QUICK_QUOTE_RE = re.compile(r"preventivo\s+rapido|\bcalcola\b|\bstima\s+(?:rapida|veloce)\b")

TurnExtractor = Callable[..., TurnResult]
ActionRecommender = Callable[[TurnResult], Tuple[str, ...]]


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["assistant", "user"]
    content: str
    actions: Tuple[str, ...] = ()
    quote: Optional[QuoteEstimate] = None
    # Profile the quote was computed from (for the PDF export of that message).
    profile_snapshot: Optional[CustomerProfile] = None
    created_at_ms: int = 0
    tag: Optional[str] = None


@dataclass(frozen=True)
class ConversationState:
    """
    Everything a chat session knows. Each turn returns a new value; nothing is mutated.
    """

    profile: CustomerProfile = field(default_factory=CustomerProfile)
    messages: Tuple[ChatMessage, ...] = ()
    confidence: Optional[Confidence] = None
    notes: Tuple[str, ...] = ()
    quote: Optional[QuoteEstimate] = None
    # Field the assistant asked for last; lets bare answers ("sì", "300") be attributed.
    expected_field: Optional[ProfileField] = None

    @property
    def last_assistant_message(self) -> Optional[ChatMessage]:
        for msg in reversed(self.messages):
            if msg.role == "assistant":
                return msg
        return None


def _now_ms() -> int:
    return int(time.time() * 1000)


def initial_state(*, now_ms: Optional[int] = None) -> ConversationState:
    welcome = ChatMessage(
        role="assistant",
        content=WELCOME_MESSAGE,
        actions=WELCOME_ACTIONS,
        created_at_ms=_now_ms() if now_ms is None else now_ms,
        tag="welcome",
    )
    return ConversationState(messages=(welcome,))


def merge_profile(prior: CustomerProfile, update: CustomerProfile) -> CustomerProfile:
    return prior.merged_with(update)


def is_quote_ready(profile: CustomerProfile) -> bool:
    return (profile.monthly_consumption_kwh or 0) > 0 or (profile.monthly_bill_eur or 0) > 0


def is_profile_complete(profile: CustomerProfile) -> bool:
    return not missing_fields(profile)


def wants_quick_quote(text: str) -> bool:
    return bool(_QUICK_QUOTE_RE.search((text or "").lower()))


def _should_attach_quote(*, prior: CustomerProfile, merged: CustomerProfile, user_text: str) -> bool:
    if not is_quote_ready(merged):
        return False
    if wants_quick_quote(user_text):
        return True
    # First completion, or a correction once complete.
    return is_profile_complete(merged) and merged != prior


def _assistant_content(turn: TurnResult, *, with_quote: bool) -> str:
    parts = [turn.reply.strip()]
    if turn.ask and turn.ask.strip() not in turn.reply:
        parts.append(turn.ask.strip())
    if with_quote:
        parts.append(QUOTE_INTRO)
    return "\n\n".join(p for p in parts if p)


def process_turn(
    state: ConversationState,
    text: str,
    *,
    extractor: Optional[TurnExtractor] = None,
    recommender: Optional[ActionRecommender] = None,
    now_ms: Optional[int] = None,
) -> tuple[ConversationState, Optional[TurnResult]]:
    """
    Fold one user message into the conversation.

    Blank input returns the state unchanged and no turn result. `recommender`, when
    given, replaces the extractor's suggested actions (an empty answer keeps them).
    """
    clean = (text or "").strip()
    if not clean:
        return state, None

    ts = _now_ms() if now_ms is None else now_ms
    extract = extractor or ai_intent.extract_turn

    user_msg = ChatMessage(role="user", content=clean, created_at_ms=ts)
    turn = extract(user_text=clean, history=state.profile, expected_field=state.expected_field)

    merged = merge_profile(state.profile, turn.parsed)
    attach = _should_attach_quote(prior=state.profile, merged=merged, user_text=clean)
    quote = estimate(merged) if attach else None

    actions = turn.suggest_actions
    if recommender is not None:
        actions = tuple(recommender(turn)) or actions

    assistant_msg = ChatMessage(
        role="assistant",
        content=_assistant_content(turn, with_quote=quote is not None),
        actions=actions,
        quote=quote,
        profile_snapshot=merged if quote is not None else None,
        created_at_ms=ts + 1,
    )

    if quote is not None:
        current_quote: Optional[QuoteEstimate] = quote
    elif merged == state.profile:
        current_quote = state.quote
    elif state.quote is not None and is_quote_ready(merged):
        # The held estimate always describes the current profile.
        current_quote = estimate(merged)
    else:
        current_quote = None

    remaining = missing_fields(merged)
    expected = turn.next_missing_field
    if expected is None and remaining:
        expected = remaining[0]

    logger.info(
        "chat turn: intent=%s confidence=%s missing=%s quote=%s",
        turn.user_intent.value,
        turn.confidence.value,
        ",".join(f.value for f in remaining) or "-",
        "yes" if quote is not None else "no",
    )

    new_state = replace(
        state,
        profile=merged,
        messages=state.messages + (user_msg, assistant_msg),
        confidence=turn.confidence,
        notes=turn.notes,
        quote=current_quote,
        expected_field=expected,
    )
    return new_state, turn
