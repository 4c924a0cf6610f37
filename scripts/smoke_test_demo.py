from __future__ import annotations

"""
Smoke test for the advisor (local, offline).

This script replays a few scripted chat conversations through the offline extractor
(no API key needed), then for every turn that produced a quote:
- checks the estimate is usable
- renders the bill comparison chart (savings_chart)
- generates the quote PDF (quote_pdf)

It writes PDFs to `out/smoke_test_demo/` and exits non-zero if anything breaks.

Usage:
  python3 scripts/smoke_test_demo.py
  python3 scripts/smoke_test_demo.py --out-dir out/smoke_test_demo
"""

import argparse
import sys
import traceback
from datetime import date
from pathlib import Path
from typing import Optional

# Allow running as `python3 scripts/smoke_test_demo.py` (module imports live at repo root).
_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from ai_intent import extract_turn_offline
from conversation import initial_state, process_turn
from quote_pdf import QuotePdfArtifact, make_quote_pdf_bytes
from savings_chart import render_bill_comparison_png


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


class SmokeFailure(RuntimeError):
    pass


def _run_scenario(*, name: str, messages: list[str], out_dir: Path, day: date) -> int:
    """
    Replay `messages` and export every attached quote. Returns the number of PDFs written.
    """
    state = initial_state(now_ms=0)

    print("")
    print("=" * 72)
    print(f"SCENARIO: {name}")
    print("=" * 72)

    written = 0
    for i, text in enumerate(messages, start=1):
        state, turn = process_turn(state, text, extractor=extract_turn_offline, now_ms=i * 10)
        if turn is None:
            raise SmokeFailure(f"{name}: blank message at step {i}")

        print(f"[{i}/{len(messages)}] {text}")
        print(f"  - intent: {turn.user_intent.value}  confidence: {turn.confidence.value}")
        print(f"  - next field: {turn.next_missing_field.value if turn.next_missing_field else '-'}")

        msg = state.last_assistant_message
        if msg is None or msg.quote is None:
            continue
        est = msg.quote
        if est.is_sentinel:
            raise SmokeFailure(f"{name}: step {i} attached an empty estimate")

        chart = render_bill_comparison_png(est)
        pdf = make_quote_pdf_bytes(
            QuotePdfArtifact(
                quote_date=day,
                profile=msg.profile_snapshot or state.profile,
                estimate=est,
                chart_png_bytes=chart,
            )
        )
        if not pdf.startswith(b"%PDF"):
            raise SmokeFailure(f"{name}: step {i} produced an invalid PDF")

        label = f"{name}_{i:02d}"
        (out_dir / f"{label}.pdf").write_bytes(pdf)
        written += 1
        print(
            f"  - quote: {est.system_size_kwp} kWp, {est.annual_production_kwh} kWh/anno, "
            f"EUR {est.annual_savings_eur}/anno, bolletta {est.current_monthly_bill_eur} -> "
            f"{est.projected_monthly_bill_eur}"
        )
        print(f"  - pdf: {label}.pdf")

    return written


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--out-dir",
        default=str(_repo_root() / "out" / "smoke_test_demo"),
        help="Directory to write PDFs into (default: out/smoke_test_demo).",
    )
    args = parser.parse_args(argv)

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    day = date.today()

    scenarios: list[tuple[str, list[str]]] = [
        (
            "guided_full_profile",
            [
                "Vorrei un preventivo per il fotovoltaico",
                "CAP 20121, casa singola",
                "La bolletta è di circa 95 euro al mese",
                "sì",
                "non so",
            ],
        ),
        (
            "quick_quote_from_consumption",
            [
                "Appartamento a Roma 00184, consumo 300 kWh al mese",
                "Calcola preventivo rapido",
            ],
        ),
        (
            "business_with_correction",
            [
                "Ho un capannone, CAP 40127, spendiamo 1.200 euro al mese di luce",
                "Niente accumulo, incentivi sì",
                "Scusa, la bolletta è 1.500 euro",
            ],
        ),
    ]

    total = 0
    for name, messages in scenarios:
        written = _run_scenario(name=name, messages=messages, out_dir=out_dir, day=day)
        if written == 0:
            raise SmokeFailure(f"{name}: no quote was produced")
        total += written

    print("")
    print(f"OK: wrote {total} PDFs to {out_dir}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except SmokeFailure as exc:
        print(f"FAIL: {exc}", file=sys.stderr)
        raise SystemExit(2)
    except Exception:
        traceback.print_exc()
        raise SystemExit(1)
