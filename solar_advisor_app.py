from __future__ import annotations

import json
import logging
import os
from datetime import date
from typing import Optional

import streamlit as st
from dotenv import load_dotenv

import ai_intent
from chat_parsing import DWELLING_LABELS, PREFERENCE_LABELS, format_number_it
from conversation import ChatMessage, ConversationState, initial_state, process_turn
from quote_pdf import QuoteDocumentError, QuotePdfArtifact, format_eur, make_quote_pdf_bytes, quote_pdf_filename
from savings_chart import render_bill_comparison_png
from solar_quote import CustomerProfile, QuoteEstimate

logger = logging.getLogger(__name__)

APP_TITLE = "AI Solar Advisor"
CHAT_PLACEHOLDER = "Scrivi un messaggio (es. CAP 20121, casa singola, bolletta 95 euro)"


def _read_secret_or_env_str(key: str) -> str:
    """
    Read a configuration value from Streamlit Secrets (preferred) or environment variables.

    Returns a stripped string; returns "" when missing.
    """
    val: object = ""
    try:
        val = st.secrets.get(key, "")  # type: ignore[attr-defined]
    except Exception:
        # No secrets.toml: Streamlit raises instead of returning the default.
        val = ""
    if not val:
        val = os.environ.get(key, "")
    if isinstance(val, str):
        return val.strip()
    return str(val).strip() if val is not None else ""


def _sync_openai_env_from_secrets() -> None:
    """
    Mirror Streamlit secrets into environment variables so `ai_intent` stays Streamlit-free.
    """
    for key in ("OPENAI_API_KEY", "OPENAI_INTENT_MODEL", "OPENAI_INTENT_ENABLED", "OPENAI_TIMEOUT_S"):
        value = _read_secret_or_env_str(key)
        if value:
            os.environ[key] = value


def _configure_logging() -> None:
    level_name = (_read_secret_or_env_str("SOLAR_ADVISOR_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    for noisy in ("httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _truthy_str(value: str) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _init_state() -> None:
    if not isinstance(st.session_state.get("conversation"), ConversationState):
        st.session_state["conversation"] = initial_state()
    if "ai_intent_enabled_ui" not in st.session_state:
        has_key = bool(_read_secret_or_env_str("OPENAI_API_KEY"))
        flag = _read_secret_or_env_str("OPENAI_INTENT_ENABLED")
        st.session_state["ai_intent_enabled_ui"] = has_key and (not flag or _truthy_str(flag))
    if "ai_intent_model_ui" not in st.session_state:
        st.session_state["ai_intent_model_ui"] = (
            _read_secret_or_env_str("OPENAI_INTENT_MODEL") or ai_intent.DEFAULT_MODEL
        )


def _apply_ai_intent_env_from_ui_state() -> None:
    """
    Apply the sidebar toggle/model to env vars before chat handling runs.
    """
    enabled = bool(st.session_state.get("ai_intent_enabled_ui", False))
    os.environ["OPENAI_INTENT_ENABLED"] = "true" if enabled else "false"
    model = str(st.session_state.get("ai_intent_model_ui") or "").strip()
    if model:
        os.environ["OPENAI_INTENT_MODEL"] = model


def _conversation() -> ConversationState:
    state = st.session_state.get("conversation")
    if isinstance(state, ConversationState):
        return state
    state = initial_state()
    st.session_state["conversation"] = state
    return state


def _handle_user_text(text: str) -> bool:
    """
    Run one chat turn and store the new conversation value.

    Returns False when the text was blank and nothing changed.
    """
    state = _conversation()
    recommender = ai_intent.recommend_actions if ai_intent.ai_intent_enabled() else None
    new_state, turn = process_turn(state, text, recommender=recommender)
    if turn is None:
        return False
    st.session_state["conversation"] = new_state
    return True


def _reset_conversation() -> None:
    st.session_state["conversation"] = initial_state()


def _info_badges(state: ConversationState) -> list[tuple[str, str]]:
    """(label, value) pairs for the collected-info summary; only what is known so far."""
    p = state.profile
    badges: list[tuple[str, str]] = []
    if p.postal_code:
        badges.append(("CAP", p.postal_code))
    if p.dwelling_type is not None:
        badges.append(("Abitazione", DWELLING_LABELS[p.dwelling_type]))
    if p.monthly_consumption_kwh:
        badges.append(("Consumo", f"{format_number_it(p.monthly_consumption_kwh)} kWh/mese"))
    if p.monthly_bill_eur:
        badges.append(("Bolletta", f"{format_eur(p.monthly_bill_eur)}/mese"))
    if p.storage_preference is not None:
        badges.append(("Accumulo", PREFERENCE_LABELS[p.storage_preference]))
    if p.incentives_preference is not None:
        badges.append(("Incentivi", PREFERENCE_LABELS[p.incentives_preference]))
    if state.confidence is not None:
        badges.append(("Confidenza", state.confidence.value.capitalize()))
    if state.notes:
        badges.append(("Note", "; ".join(state.notes)))
    return badges


def _quote_export_payload(profile: CustomerProfile, est: QuoteEstimate, *, day: date) -> dict[str, object]:
    return {
        "date": day.isoformat(),
        "customer": profile.to_wire(),
        "quote": est.to_dict(),
    }


@st.cache_data(show_spinner=False)
def _cached_chart_png(current_bill: int, projected_bill: int) -> bytes:
    est = QuoteEstimate(
        system_size_kwp=0.0,
        annual_production_kwh=0,
        annual_savings_eur=0.0,
        self_sufficiency_percent=0,
        current_monthly_bill_eur=current_bill,
        projected_monthly_bill_eur=projected_bill,
    )
    return render_bill_comparison_png(est)


def _build_quote_pdf(profile: CustomerProfile, est: QuoteEstimate, *, day: date) -> bytes:
    chart: Optional[bytes]
    try:
        chart = _cached_chart_png(est.current_monthly_bill_eur, est.projected_monthly_bill_eur)
    except Exception:
        logger.warning("chart rendering failed; exporting the PDF without it", exc_info=True)
        chart = None
    return make_quote_pdf_bytes(QuotePdfArtifact(quote_date=day, profile=profile, estimate=est, chart_png_bytes=chart))


def _render_info_summary(state: ConversationState) -> None:
    badges = _info_badges(state)
    if not badges:
        st.caption("Nessuna informazione raccolta finora.")
        return
    cols = st.columns(min(4, len(badges)))
    for i, (label, value) in enumerate(badges):
        with cols[i % len(cols)]:
            st.markdown(f"**{label}**: {value}")


def _render_quote_card(msg: ChatMessage) -> None:
    est = msg.quote
    if est is None:
        return
    if est.is_sentinel:
        st.info("Servono consumi o bolletta mensile per calcolare la stima.")
        return

    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Potenza Impianto", f"{format_number_it(est.system_size_kwp, decimals=1)} kWp")
    m2.metric("Produzione Annua", f"{format_number_it(est.annual_production_kwh)} kWh")
    m3.metric("Risparmio Annuo", format_eur(est.annual_savings_eur))
    m4.metric("Autosufficienza", f"{est.self_sufficiency_percent}%")

    try:
        st.image(
            _cached_chart_png(est.current_monthly_bill_eur, est.projected_monthly_bill_eur),
            caption=(
                f"Bolletta mensile: {format_eur(est.current_monthly_bill_eur)} -> "
                f"{format_eur(est.projected_monthly_bill_eur)}"
            ),
        )
    except Exception:
        logger.warning("chart rendering failed", exc_info=True)

    today = date.today()
    profile = msg.profile_snapshot or _conversation().profile
    d1, d2 = st.columns(2)
    with d1:
        try:
            pdf_bytes = _build_quote_pdf(profile, est, day=today)
        except QuoteDocumentError as exc:
            st.error(f"Impossibile generare il PDF: {exc}")
        except Exception as exc:
            logger.warning("PDF generation failed", exc_info=True)
            st.error(f"Impossibile generare il PDF: {exc}")
        else:
            st.download_button(
                "Scarica preventivo (PDF)",
                data=pdf_bytes,
                file_name=quote_pdf_filename(today),
                mime="application/pdf",
                key=f"pdf_{msg.created_at_ms}",
                use_container_width=True,
            )
    with d2:
        st.download_button(
            "Scarica dati (JSON)",
            data=json.dumps(_quote_export_payload(profile, est, day=today), indent=2, ensure_ascii=False),
            file_name=f"preventivo-fotovoltaico-{today.isoformat()}.json",
            mime="application/json",
            key=f"json_{msg.created_at_ms}",
            use_container_width=True,
        )


def _render_chat(state: ConversationState) -> None:
    last_assistant = state.last_assistant_message
    for idx, msg in enumerate(state.messages):
        with st.chat_message(msg.role):
            st.markdown(msg.content)
            if msg.quote is not None:
                _render_quote_card(msg)
            if msg is last_assistant and msg.actions:
                cols = st.columns(len(msg.actions))
                for i, label in enumerate(msg.actions):
                    if cols[i].button(label, key=f"action_{idx}_{i}", use_container_width=True):
                        st.session_state["_pending_text"] = label
                        st.rerun()


def _render_sidebar() -> None:
    st.sidebar.header(APP_TITLE)
    with st.sidebar.expander("AI", expanded=False):
        st.caption("Usa il modello OpenAI per interpretare i messaggi; altrimenti regole locali.")
        has_key = bool(_read_secret_or_env_str("OPENAI_API_KEY"))
        st.checkbox("Abilita assistente AI", key="ai_intent_enabled_ui", disabled=not has_key)
        st.text_input("Modello", key="ai_intent_model_ui")
        if not has_key:
            st.caption("Imposta `OPENAI_API_KEY` per abilitarlo.")
        elif bool(st.session_state.get("ai_intent_enabled_ui", False)) and not ai_intent.ai_intent_enabled():
            st.caption("Installa il pacchetto `openai` per attivarlo.")

    if st.sidebar.button("Nuova conversazione", use_container_width=True):
        _reset_conversation()
        st.rerun()


def main() -> None:
    load_dotenv()
    st.set_page_config(page_title=APP_TITLE, layout="centered")
    _configure_logging()
    _sync_openai_env_from_secrets()

    _init_state()
    _apply_ai_intent_env_from_ui_state()
    _render_sidebar()

    st.title(APP_TITLE)
    st.caption("Stima indicativa di un impianto fotovoltaico in pochi messaggi.")

    pending = st.session_state.pop("_pending_text", None)
    if isinstance(pending, str):
        _handle_user_text(pending)

    state = _conversation()
    with st.container(border=True):
        _render_info_summary(state)
    _render_chat(state)

    user_text = st.chat_input(CHAT_PLACEHOLDER)
    if user_text is not None and _handle_user_text(user_text):
        st.rerun()


if __name__ == "__main__":
    main()
