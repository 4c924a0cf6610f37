from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageColor, ImageDraw, ImageFont

from solar_quote import QuoteEstimate


@dataclass(frozen=True)
class ChartPalette:
    current_bill: str = "#9aa0a6"
    projected_bill: str = "#2563eb"
    background: str = "#ffffff"
    axis: str = "#6b7280"
    text: str = "#1f2937"


BAR_LABELS: Tuple[str, str] = ("Bolletta attuale", "Bolletta con FV")


def _clamp_int(name: str, value: int, *, min_value: int, max_value: int) -> int:
    if not isinstance(value, int):
        raise TypeError(f"{name} must be int (got {type(value).__name__})")
    return max(min_value, min(max_value, value))


def _encode_png(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


def _text_width(d: ImageDraw.ImageDraw, text: str, font: ImageFont.ImageFont) -> int:
    left, _, right, _ = d.textbbox((0, 0), text, font=font)
    return int(right - left)


def render_bill_comparison_png(
    estimate: QuoteEstimate,
    *,
    palette: ChartPalette = ChartPalette(),
    canvas_px: Tuple[int, int] = (720, 360),
) -> bytes:
    """
    Render the current vs projected monthly bill as a two-bar PNG chart.

    Bars are scaled to the current bill; a sentinel estimate renders empty bars.
    """
    cw, ch = canvas_px
    cw = _clamp_int("canvas_width_px", int(cw), min_value=320, max_value=2400)
    ch = _clamp_int("canvas_height_px", int(ch), min_value=200, max_value=1600)

    img = Image.new("RGB", (cw, ch), ImageColor.getrgb(palette.background))
    d = ImageDraw.Draw(img)
    font = ImageFont.load_default()
    text_rgb = ImageColor.getrgb(palette.text)
    axis_rgb = ImageColor.getrgb(palette.axis)

    title = "Confronto costi mensili (EUR)"
    d.text(((cw - _text_width(d, title, font)) / 2, 14), title, fill=text_rgb, font=font)

    plot_left = 60
    plot_right = cw - 40
    plot_top = 48
    plot_bottom = ch - 48
    d.line([(plot_left, plot_bottom), (plot_right, plot_bottom)], fill=axis_rgb, width=2)

    values = (estimate.current_monthly_bill_eur, estimate.projected_monthly_bill_eur)
    colors = (ImageColor.getrgb(palette.current_bill), ImageColor.getrgb(palette.projected_bill))
    top_value = max(1, max(values))
    usable_h = plot_bottom - plot_top - 24

    slot_w = (plot_right - plot_left) / len(values)
    bar_w = int(slot_w * 0.45)
    for i, (label, value, color) in enumerate(zip(BAR_LABELS, values, colors)):
        cx = plot_left + slot_w * (i + 0.5)
        bar_h = int(usable_h * max(0, value) / top_value)
        x0 = int(cx - bar_w / 2)
        x1 = int(cx + bar_w / 2)
        if bar_h > 0:
            d.rectangle([x0, plot_bottom - bar_h, x1, plot_bottom - 1], fill=color)

        value_txt = f"{value} EUR"
        d.text(
            (cx - _text_width(d, value_txt, font) / 2, plot_bottom - bar_h - 18),
            value_txt,
            fill=text_rgb,
            font=font,
        )
        d.text((cx - _text_width(d, label, font) / 2, plot_bottom + 10), label, fill=text_rgb, font=font)

    d.rectangle([4, 4, cw - 5, ch - 5], outline=(220, 220, 220), width=1)
    return _encode_png(img)
