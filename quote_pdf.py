from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from io import BytesIO
from typing import Optional, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from chat_parsing import DWELLING_LABELS, format_number_it
from solar_quote import ITALY_DEFAULTS, CustomerProfile, EstimatorConstants, Preference, QuoteEstimate

logger = logging.getLogger(__name__)

TITLE = "Preventivo Impianto Fotovoltaico"
FOOTER = (
    "Preventivo generato automaticamente - Per informazioni dettagliate contattare il nostro team commerciale"
)

_PRIMARY = colors.Color(37 / 255, 99 / 255, 235 / 255)
_MUTED = colors.Color(107 / 255, 114 / 255, 128 / 255)
_HEADING = colors.Color(31 / 255, 41 / 255, 55 / 255)
_HIGHLIGHT_BG = colors.Color(219 / 255, 234 / 255, 254 / 255)
_HIGHLIGHT_FG = colors.Color(30 / 255, 64 / 255, 175 / 255)

_INTEREST_LABELS: dict[Preference, str] = {
    Preference.YES: "Interessato",
    Preference.NO: "Non Interessato",
    Preference.UNKNOWN: "Da Valutare",
}


class QuoteDocumentError(ValueError):
    pass


@dataclass(frozen=True)
class QuotePdfArtifact:
    quote_date: date
    profile: CustomerProfile
    estimate: QuoteEstimate
    chart_png_bytes: Optional[bytes] = None
    constants: EstimatorConstants = ITALY_DEFAULTS


def format_eur(amount: float, *, decimals: Optional[int] = None) -> str:
    """
    Format a euro amount the Italian way: "€ 1.234,56".

    With `decimals=None`, whole amounts print without cents and anything else with two.
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise TypeError(f"amount must be a number (got {type(amount).__name__})")
    if decimals is None:
        decimals = 0 if float(amount).is_integer() else 2
    sign = "-" if amount < 0 else ""
    return f"{sign}€ {format_number_it(abs(amount), decimals=decimals)}"


def format_date_it(day: date) -> str:
    return f"{day.day}/{day.month}/{day.year}"


def quote_pdf_filename(day: date) -> str:
    return f"preventivo-fotovoltaico-{day.isoformat()}.pdf"


def customer_info_lines(profile: CustomerProfile) -> Tuple[str, ...]:
    """Customer rows for the document; fields the customer never gave are left out."""
    lines: list[str] = []
    if profile.postal_code:
        lines.append(f"CAP: {profile.postal_code}")
    if profile.dwelling_type is not None:
        lines.append(f"Tipo Abitazione: {DWELLING_LABELS[profile.dwelling_type]}")
    if profile.monthly_consumption_kwh:
        lines.append(f"Consumo Mensile: {format_number_it(profile.monthly_consumption_kwh)} kWh")
    if profile.monthly_bill_eur:
        lines.append(f"Bolletta Mensile: {format_eur(profile.monthly_bill_eur)}")
    return tuple(lines)


def preference_lines(profile: CustomerProfile) -> Tuple[str, ...]:
    lines: list[str] = []
    if profile.storage_preference is not None:
        lines.append(f"Sistema di Accumulo: {_INTEREST_LABELS[profile.storage_preference]}")
    if profile.incentives_preference is not None:
        lines.append(f"Incentivi e Finanziamenti: {_INTEREST_LABELS[profile.incentives_preference]}")
    return tuple(lines)


def assumption_lines(constants: EstimatorConstants) -> Tuple[str, ...]:
    return (
        f"- Produzione annuale: {format_number_it(constants.kwh_per_kwp_year)} kWh per kWp installato (media Italia)",
        f"- Costo energia elettrica: {format_eur(constants.avg_electricity_cost, decimals=2)}/kWh",
        f"- Autoconsumo: {format_number_it(constants.self_consumption_rate * 100)}% dell'energia prodotta",
        f"- Tariffa cessione eccedenze: {format_eur(constants.feed_in_tariff, decimals=2)}/kWh",
        f"- Taglia minima impianto: {format_number_it(constants.min_system_size_kwp, decimals=1)} kWp",
        "- I calcoli sono indicativi e basati su dati medi nazionali",
    )


def make_quote_pdf_bytes(artifact: QuotePdfArtifact) -> bytes:
    """
    Render the customer-facing quote document.

    Page 1 carries the customer data, the recommended system, the economics and the
    assumptions; when a chart is attached it gets a second page.
    """
    est = artifact.estimate
    if est.is_sentinel:
        raise QuoteDocumentError("no consumption or bill data: nothing to export")

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    # Uncompressed so tests can find the text markers in the bytes.
    c.setPageCompression(0)
    c.setTitle(TITLE)
    w, h = A4

    margin = 0.8 * inch
    x0 = margin
    content_w = w - 2 * margin
    y = h - margin - 0.2 * inch

    c.setFont("Helvetica-Bold", 20)
    c.setFillColor(_PRIMARY)
    c.drawString(x0, y, TITLE)
    y -= 0.3 * inch

    c.setFont("Helvetica", 10)
    c.setFillColor(_MUTED)
    c.drawString(x0, y, f"Generato il {format_date_it(artifact.quote_date)}")
    y -= 0.5 * inch

    info = customer_info_lines(artifact.profile)
    if info:
        y = _section_heading(c, x0, y, "Informazioni Cliente")
        y = _body_lines(c, x0, y, info, max_width=content_w)
        y -= 0.15 * inch

    y = _section_heading(c, x0, y, "Dettagli Impianto Consigliato")
    y = _body_lines(
        c,
        x0,
        y,
        (
            f"Potenza Impianto: {format_number_it(est.system_size_kwp, decimals=1)} kWp",
            f"Produzione Annuale Stimata: {format_number_it(est.annual_production_kwh)} kWh",
            f"Autosufficienza Energetica: {format_number_it(est.self_sufficiency_percent, decimals=1)}%",
        ),
        max_width=content_w,
    )
    y -= 0.2 * inch

    band_h = 0.4 * inch
    c.setFillColor(_HIGHLIGHT_BG)
    _rect(c, x0, y - band_h, content_w, band_h, stroke=0, fill=1)
    c.setFont("Helvetica-Bold", 14)
    c.setFillColor(_HIGHLIGHT_FG)
    c.drawString(
        x0 + 0.2 * inch,
        y - band_h + 0.14 * inch,
        f"Risparmio Annuale Stimato: {format_eur(est.annual_savings_eur)}",
    )
    y -= band_h + 0.4 * inch

    y = _section_heading(c, x0, y, "Analisi Economica")
    y = _body_lines(
        c,
        x0,
        y,
        (
            f"Bolletta Attuale (mensile): {format_eur(est.current_monthly_bill_eur)}",
            f"Bolletta con Fotovoltaico (mensile): {format_eur(est.projected_monthly_bill_eur)}",
            f"Risparmio Mensile: {format_eur(est.monthly_savings_eur)}",
            f"Risparmio Annuale: {format_eur(est.annual_savings_eur)}",
        ),
        max_width=content_w,
    )
    y -= 0.15 * inch

    prefs = preference_lines(artifact.profile)
    if prefs:
        y = _section_heading(c, x0, y, "Preferenze Cliente")
        y = _body_lines(c, x0, y, prefs, max_width=content_w)
        y -= 0.15 * inch

    y = _section_heading(c, x0, y, "Assunzioni di Calcolo")
    c.setFont("Helvetica", 10)
    c.setFillColor(_MUTED)
    for line in assumption_lines(artifact.constants):
        _draw_truncated(c, x0, y, line, max_width=content_w)
        y -= 0.2 * inch

    _footer(c, x0, margin, content_w)
    c.showPage()

    if artifact.chart_png_bytes:
        _render_chart_page(c, png_bytes=artifact.chart_png_bytes, title="Confronto Bollette Mensili")
        _footer(c, x0, margin, content_w)
        c.showPage()

    c.save()
    return buf.getvalue()


def _rect(c: canvas.Canvas, x: float, y: float, w: float, h: float, *, stroke: int, fill: int) -> None:
    c.rect(x, y, w, h, stroke=stroke, fill=fill)


def _section_heading(c: canvas.Canvas, x: float, y: float, title: str) -> float:
    c.setFont("Helvetica-Bold", 16)
    c.setFillColor(_HEADING)
    c.drawString(x, y, title)
    return y - 0.3 * inch


def _body_lines(c: canvas.Canvas, x: float, y: float, lines: Tuple[str, ...], *, max_width: float) -> float:
    c.setFont("Helvetica", 12)
    c.setFillColor(colors.black)
    for line in lines:
        _draw_truncated(c, x, y, line, max_width=max_width)
        y -= 0.25 * inch
    return y


def _footer(c: canvas.Canvas, x: float, margin: float, max_width: float) -> None:
    c.setFont("Helvetica", 8)
    c.setFillColor(_MUTED)
    _draw_truncated(c, x, margin * 0.6, FOOTER, max_width=max_width)
    c.setFillColor(colors.black)


def _draw_truncated(c: canvas.Canvas, x: float, y: float, text: str, *, max_width: float) -> None:
    """
    Draw text truncated with ellipsis so it stays inside the page.
    """
    t = (text or "").strip()
    if not t or max_width <= 0:
        return
    if c.stringWidth(t) <= max_width:
        c.drawString(x, y, t)
        return
    # ASCII ellipsis for compatibility with ReportLab's built-in fonts.
    ell = "..."
    lo = 0
    hi = len(t)
    best = ""
    while lo <= hi:
        mid = (lo + hi) // 2
        cand = (t[:mid].rstrip() + ell) if mid < len(t) else t
        if c.stringWidth(cand) <= max_width:
            best = cand
            lo = mid + 1
        else:
            hi = mid - 1
    if best:
        c.drawString(x, y, best)


def _render_chart_page(c: canvas.Canvas, *, png_bytes: bytes, title: str) -> None:
    """
    Render the bill comparison chart framed on its own page.
    """
    w, h = A4
    margin = 0.8 * inch
    pad = 0.18 * inch

    c.setFont("Helvetica-Bold", 16)
    c.setFillColor(_HEADING)
    c.drawString(margin, h - margin, title)
    c.setFillColor(colors.black)

    frame_x = margin
    frame_w = w - 2 * margin
    frame_h = frame_w * 0.55
    frame_y = h - margin - 0.3 * inch - frame_h
    c.setStrokeColor(_MUTED)
    _rect(c, frame_x, frame_y, frame_w, frame_h, stroke=1, fill=0)
    c.setStrokeColor(colors.black)

    try:
        img = ImageReader(BytesIO(png_bytes))
        c.drawImage(
            img,
            frame_x + pad,
            frame_y + pad,
            width=frame_w - 2 * pad,
            height=frame_h - 2 * pad,
            preserveAspectRatio=True,
            anchor="c",
            mask="auto",
        )
    except Exception:
        logger.warning("could not embed the bill comparison chart", exc_info=True)
