from __future__ import annotations

import unittest
from datetime import date

from quote_pdf import (
    QuoteDocumentError,
    QuotePdfArtifact,
    assumption_lines,
    customer_info_lines,
    format_date_it,
    format_eur,
    make_quote_pdf_bytes,
    preference_lines,
    quote_pdf_filename,
)
from savings_chart import render_bill_comparison_png
from solar_quote import ITALY_DEFAULTS, SENTINEL_ESTIMATE, CustomerProfile, DwellingType, Preference, estimate


def _profile() -> CustomerProfile:
    return CustomerProfile(
        postal_code="20121",
        dwelling_type=DwellingType.DETACHED_HOUSE,
        monthly_bill_eur=95,
        storage_preference=Preference.UNKNOWN,
        incentives_preference=Preference.YES,
    )


class TestQuotePdf(unittest.TestCase):
    def _count_pdf_pages(self, pdf: bytes) -> int:
        """
        Best-effort page count: each page object carries "/Type /Page", the page
        tree "/Type /Pages".
        """
        return max(0, pdf.count(b"/Type /Page") - pdf.count(b"/Type /Pages"))

    def test_make_quote_pdf_bytes_returns_pdf(self) -> None:
        profile = _profile()
        pdf = make_quote_pdf_bytes(
            QuotePdfArtifact(quote_date=date(2026, 3, 5), profile=profile, estimate=estimate(profile))
        )
        self.assertTrue(pdf.startswith(b"%PDF"))
        self.assertGreater(len(pdf), 1000)
        for marker in (
            b"Preventivo Impianto Fotovoltaico",
            b"Generato il 5/3/2026",
            b"Informazioni Cliente",
            b"CAP: 20121",
            b"Dettagli Impianto Consigliato",
            b"Analisi Economica",
            b"Preferenze Cliente",
            b"Assunzioni di Calcolo",
        ):
            with self.subTest(marker=marker):
                self.assertIn(marker, pdf)
        self.assertEqual(self._count_pdf_pages(pdf), 1)

    def test_chart_adds_a_page(self) -> None:
        profile = _profile()
        est = estimate(profile)
        pdf = make_quote_pdf_bytes(
            QuotePdfArtifact(
                quote_date=date(2026, 3, 5),
                profile=profile,
                estimate=est,
                chart_png_bytes=render_bill_comparison_png(est),
            )
        )
        self.assertEqual(self._count_pdf_pages(pdf), 2)
        self.assertIn(b"Confronto Bollette Mensili", pdf)

    def test_sections_without_data_are_omitted(self) -> None:
        profile = CustomerProfile(monthly_consumption_kwh=300)
        pdf = make_quote_pdf_bytes(
            QuotePdfArtifact(quote_date=date(2026, 3, 5), profile=profile, estimate=estimate(profile))
        )
        self.assertNotIn(b"Preferenze Cliente", pdf)
        self.assertNotIn(b"CAP:", pdf)

    def test_sentinel_estimate_is_rejected(self) -> None:
        with self.assertRaises(QuoteDocumentError):
            make_quote_pdf_bytes(
                QuotePdfArtifact(quote_date=date(2026, 3, 5), profile=CustomerProfile(), estimate=SENTINEL_ESTIMATE)
            )


class TestQuoteDocumentText(unittest.TestCase):
    def test_format_eur(self) -> None:
        self.assertEqual(format_eur(95), "€ 95")
        self.assertEqual(format_eur(916.65), "€ 916,65")
        self.assertEqual(format_eur(785.7), "€ 785,70")
        self.assertEqual(format_eur(1500), "€ 1.500")
        self.assertEqual(format_eur(0.25, decimals=2), "€ 0,25")
        self.assertEqual(format_eur(-12), "-€ 12")
        with self.assertRaises(TypeError):
            format_eur("95")  # type: ignore[arg-type]

    def test_filename_and_date(self) -> None:
        self.assertEqual(quote_pdf_filename(date(2026, 10, 19)), "preventivo-fotovoltaico-2026-10-19.pdf")
        self.assertEqual(format_date_it(date(2026, 10, 9)), "9/10/2026")

    def test_customer_lines(self) -> None:
        lines = customer_info_lines(_profile())
        self.assertEqual(
            lines,
            ("CAP: 20121", "Tipo Abitazione: Casa Singola", "Bolletta Mensile: € 95"),
        )

    def test_preference_lines(self) -> None:
        self.assertEqual(
            preference_lines(_profile()),
            ("Sistema di Accumulo: Da Valutare", "Incentivi e Finanziamenti: Interessato"),
        )
        self.assertEqual(preference_lines(CustomerProfile()), ())

    def test_assumption_lines_follow_constants(self) -> None:
        lines = assumption_lines(ITALY_DEFAULTS)
        self.assertIn("- Produzione annuale: 1.350 kWh per kWp installato (media Italia)", lines)
        self.assertIn("- Costo energia elettrica: € 0,25/kWh", lines)
        self.assertIn("- Autoconsumo: 60% dell'energia prodotta", lines)
        self.assertIn("- Tariffa cessione eccedenze: € 0,11/kWh", lines)


if __name__ == "__main__":
    unittest.main()
