from __future__ import annotations

import unittest

from solar_quote import CustomerProfile, DwellingType, Preference
from turn_contract import (
    FALLBACK_REPLY,
    Confidence,
    ProfileField,
    TurnPayloadError,
    UserIntent,
    fallback_turn_result,
    missing_fields,
    next_missing_field,
    parse_turn_payload,
)


def _payload(**overrides):
    payload = {
        "parsed": {
            "cap": "20121",
            "dwelling": "casa_singola",
            "monthly_kwh": None,
            "bill_eur": 95.0,
            "storage_pref": None,
            "incentives": None,
        },
        "user_intent": "GET_QUOTE",
        "reply": "Perfetto, ho registrato CAP e bolletta.",
        "next_missing_field": "storage_pref",
        "ask": "Ti interessa un sistema di accumulo?",
        "suggest_actions": ["Calcola preventivo rapido", "Aggiungi accumulo"],
        "confidence": "alta",
        "notes": ["'villa' -> 'casa_singola'"],
    }
    payload.update(overrides)
    return payload


class TestParseTurnPayload(unittest.TestCase):
    def test_valid_payload(self) -> None:
        turn = parse_turn_payload(_payload())
        self.assertEqual(turn.parsed.postal_code, "20121")
        self.assertEqual(turn.parsed.dwelling_type, DwellingType.DETACHED_HOUSE)
        self.assertEqual(turn.parsed.monthly_bill_eur, 95.0)
        self.assertIsNone(turn.parsed.monthly_consumption_kwh)
        self.assertEqual(turn.user_intent, UserIntent.GET_QUOTE)
        self.assertEqual(turn.next_missing_field, ProfileField.STORAGE_PREF)
        self.assertEqual(turn.confidence, Confidence.HIGH)
        self.assertEqual(turn.suggest_actions, ("Calcola preventivo rapido", "Aggiungi accumulo"))
        self.assertEqual(turn.notes, ("'villa' -> 'casa_singola'",))
        self.assertIsNotNone(turn.raw_json)

    def test_missing_parsed_or_reply_is_rejected(self) -> None:
        payload = _payload()
        del payload["parsed"]
        with self.assertRaises(TurnPayloadError):
            parse_turn_payload(payload)
        with self.assertRaises(TurnPayloadError):
            parse_turn_payload(_payload(reply="   "))
        with self.assertRaises(TurnPayloadError):
            parse_turn_payload(["not", "an", "object"])
        with self.assertRaises(TurnPayloadError):
            parse_turn_payload(_payload(parsed="cap 20121"))

    def test_loose_values_are_coerced(self) -> None:
        turn = parse_turn_payload(
            _payload(
                parsed={
                    "cap": "CAP 201219",
                    "dwelling": "villetta",
                    "monthly_kwh": "~300 kWh",
                    "bill_eur": "0",
                    "storage_pref": "boh",
                    "incentives": "sì",
                },
                user_intent="get_quote",
                confidence="Media",
            )
        )
        self.assertEqual(turn.parsed.postal_code, "20121")
        self.assertEqual(turn.parsed.dwelling_type, DwellingType.DETACHED_HOUSE)
        self.assertEqual(turn.parsed.monthly_consumption_kwh, 300.0)
        self.assertIsNone(turn.parsed.monthly_bill_eur)
        self.assertEqual(turn.parsed.storage_preference, Preference.UNKNOWN)
        self.assertEqual(turn.parsed.incentives_preference, Preference.YES)
        self.assertEqual(turn.user_intent, UserIntent.GET_QUOTE)
        self.assertEqual(turn.confidence, Confidence.MEDIUM)

    def test_negative_quantities_are_dropped(self) -> None:
        turn = parse_turn_payload(_payload(parsed={"bill_eur": "-50", "monthly_kwh": -50}))
        self.assertIsNone(turn.parsed.monthly_bill_eur)
        self.assertIsNone(turn.parsed.monthly_consumption_kwh)

        turn = parse_turn_payload(_payload(parsed={"monthly_kwh": "-1.200 kWh"}))
        self.assertIsNone(turn.parsed.monthly_consumption_kwh)

    def test_unknown_enums_fall_back(self) -> None:
        turn = parse_turn_payload(
            _payload(user_intent="CHITCHAT", confidence="sure", next_missing_field="roof_area", parsed=None)
        )
        self.assertEqual(turn.user_intent, UserIntent.OUT_OF_SCOPE)
        self.assertEqual(turn.confidence, Confidence.LOW)
        self.assertIsNone(turn.next_missing_field)
        self.assertEqual(turn.parsed, CustomerProfile())

    def test_actions_are_limited_and_lists_validated(self) -> None:
        turn = parse_turn_payload(_payload(suggest_actions=["a", "b", "c", "d"], notes="not a list"))
        self.assertEqual(turn.suggest_actions, ("a", "b", "c"))
        self.assertEqual(turn.notes, ())

    def test_to_wire_uses_contract_values(self) -> None:
        wire = parse_turn_payload(_payload()).to_wire()
        self.assertEqual(wire["parsed"]["dwelling"], "casa_singola")
        self.assertEqual(wire["confidence"], "alta")
        self.assertEqual(wire["next_missing_field"], "storage_pref")


class TestFallbackAndMissingFields(unittest.TestCase):
    def test_fallback_result(self) -> None:
        turn = fallback_turn_result()
        self.assertEqual(turn.user_intent, UserIntent.OUT_OF_SCOPE)
        self.assertEqual(turn.reply, FALLBACK_REPLY)
        self.assertEqual(turn.confidence, Confidence.LOW)
        self.assertEqual(turn.parsed, CustomerProfile())
        self.assertEqual(turn.suggest_actions, ())
        self.assertEqual(turn.notes, ("An error occurred on the server.",))

    def test_missing_fields_order(self) -> None:
        self.assertEqual(
            missing_fields(CustomerProfile()),
            (
                ProfileField.CAP,
                ProfileField.DWELLING,
                ProfileField.MONTHLY_KWH,
                ProfileField.STORAGE_PREF,
                ProfileField.INCENTIVES,
            ),
        )

    def test_bill_satisfies_consumption_requirement(self) -> None:
        profile = CustomerProfile(postal_code="20121", dwelling_type=DwellingType.APARTMENT, monthly_bill_eur=80)
        self.assertEqual(next_missing_field(profile), ProfileField.STORAGE_PREF)

    def test_complete_profile_has_nothing_missing(self) -> None:
        profile = CustomerProfile(
            postal_code="20121",
            dwelling_type=DwellingType.APARTMENT,
            monthly_consumption_kwh=250,
            storage_preference=Preference.NO,
            incentives_preference=Preference.UNKNOWN,
        )
        self.assertEqual(missing_fields(profile), ())
        self.assertIsNone(next_missing_field(profile))


if __name__ == "__main__":
    unittest.main()
