from __future__ import annotations

import os
import unittest
from dataclasses import replace
from datetime import date
from unittest import mock

import solar_advisor_app
from conversation import ConversationState, initial_state
from solar_quote import CustomerProfile, estimate
from turn_contract import Confidence


class _FakeSessionState(dict):
    def __getattr__(self, name: str):
        return self.get(name)

    def __setattr__(self, name: str, value) -> None:
        self[name] = value

    def __delattr__(self, name: str) -> None:
        try:
            del self[name]
        except KeyError as e:
            raise AttributeError(name) from e


class TestAppHelpers(unittest.TestCase):
    def setUp(self) -> None:
        self._original_session_state = solar_advisor_app.st.session_state
        self.session = _FakeSessionState()
        solar_advisor_app.st.session_state = self.session  # type: ignore[assignment]
        env = mock.patch.dict(
            os.environ, {"OPENAI_API_KEY": "", "OPENAI_INTENT_ENABLED": "false", "OPENAI_INTENT_MODEL": ""}
        )
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self) -> None:
        solar_advisor_app.st.session_state = self._original_session_state

    def test_init_state_seeds_conversation_and_ai_defaults(self) -> None:
        solar_advisor_app._init_state()
        self.assertIsInstance(self.session["conversation"], ConversationState)
        self.assertFalse(self.session["ai_intent_enabled_ui"])
        self.assertEqual(self.session["ai_intent_model_ui"], "gpt-5-mini")

    def test_init_state_keeps_existing_conversation(self) -> None:
        state = initial_state(now_ms=1)
        self.session["conversation"] = state
        solar_advisor_app._init_state()
        self.assertIs(self.session["conversation"], state)

    def test_handle_user_text_replaces_conversation(self) -> None:
        solar_advisor_app._init_state()
        before = self.session["conversation"]
        self.assertTrue(solar_advisor_app._handle_user_text("CAP 20121, bolletta 95 euro"))
        after = self.session["conversation"]
        self.assertIsNot(after, before)
        self.assertEqual(after.profile.postal_code, "20121")
        self.assertEqual(after.profile.monthly_bill_eur, 95.0)
        self.assertEqual(len(after.messages), len(before.messages) + 2)

    def test_blank_text_is_not_handled(self) -> None:
        solar_advisor_app._init_state()
        before = self.session["conversation"]
        self.assertFalse(solar_advisor_app._handle_user_text("  "))
        self.assertIs(self.session["conversation"], before)

    def test_reset_conversation(self) -> None:
        solar_advisor_app._init_state()
        solar_advisor_app._handle_user_text("CAP 20121")
        solar_advisor_app._reset_conversation()
        self.assertEqual(self.session["conversation"].profile, CustomerProfile())
        self.assertEqual(len(self.session["conversation"].messages), 1)

    def test_apply_ai_env_from_ui_state(self) -> None:
        self.session["ai_intent_enabled_ui"] = True
        self.session["ai_intent_model_ui"] = "gpt-test"
        with mock.patch.dict(os.environ, {}):
            solar_advisor_app._apply_ai_intent_env_from_ui_state()
            self.assertEqual(os.environ["OPENAI_INTENT_ENABLED"], "true")
            self.assertEqual(os.environ["OPENAI_INTENT_MODEL"], "gpt-test")

    def test_info_badges_only_show_known_fields(self) -> None:
        state = initial_state(now_ms=0)
        self.assertEqual(solar_advisor_app._info_badges(state), [])

        state = replace(
            state,
            profile=CustomerProfile(postal_code="20121", monthly_consumption_kwh=1200),
            confidence=Confidence.HIGH,
            notes=("'villa' -> 'casa_singola'",),
        )
        self.assertEqual(
            solar_advisor_app._info_badges(state),
            [
                ("CAP", "20121"),
                ("Consumo", "1.200 kWh/mese"),
                ("Confidenza", "Alta"),
                ("Note", "'villa' -> 'casa_singola'"),
            ],
        )

    def test_export_payload_and_pdf(self) -> None:
        profile = CustomerProfile(postal_code="20121", monthly_bill_eur=95)
        est = estimate(profile)
        payload = solar_advisor_app._quote_export_payload(profile, est, day=date(2026, 10, 19))
        self.assertEqual(payload["date"], "2026-10-19")
        self.assertEqual(payload["customer"]["cap"], "20121")  # type: ignore[index]
        self.assertEqual(payload["quote"]["systemSizeKWp"], 3.5)  # type: ignore[index]

        pdf = solar_advisor_app._build_quote_pdf(profile, est, day=date(2026, 10, 19))
        self.assertTrue(pdf.startswith(b"%PDF"))

    def test_sidebar_ai_captions_render_inside_expander(self) -> None:
        with mock.patch.object(solar_advisor_app, "st") as fake_st:
            fake_st.secrets.get.return_value = ""
            fake_st.sidebar.button.return_value = False
            solar_advisor_app._render_sidebar()

        fake_st.sidebar.expander.assert_called_once_with("AI", expanded=False)
        fake_st.sidebar.caption.assert_not_called()
        captions = [c.args[0] for c in fake_st.caption.call_args_list]
        self.assertEqual(len(captions), 2)
        self.assertIn("OPENAI_API_KEY", captions[1])

    def test_read_secret_or_env_str_falls_back_to_env(self) -> None:
        with mock.patch.dict(os.environ, {"SOLAR_ADVISOR_TEST_KEY": "  value  "}):
            self.assertEqual(solar_advisor_app._read_secret_or_env_str("SOLAR_ADVISOR_TEST_KEY"), "value")
        self.assertEqual(solar_advisor_app._read_secret_or_env_str("SOLAR_ADVISOR_MISSING_KEY"), "")


if __name__ == "__main__":
    unittest.main()
