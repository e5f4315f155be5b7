"""
report.py
Statistics report as a multi-page PDF (reportlab canvas, vector charts).
Input is the dict returned by generate_stats_report (or stats.build_report_data).
"""

from __future__ import annotations

from datetime import date, datetime
from io import BytesIO

from reportlab.graphics import renderPDF
from reportlab.graphics.charts.barcharts import VerticalBarChart
from reportlab.graphics.charts.linecharts import HorizontalLineChart
from reportlab.graphics.charts.piecharts import Pie
from reportlab.graphics.shapes import Drawing, String
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from models import TIME_SLOTS

COLOR_BLUE = colors.HexColor("#3498db")
COLOR_GREEN = colors.HexColor("#2ecc71")
COLOR_TEXT = colors.HexColor("#2c3e50")
COLOR_MUTED = colors.HexColor("#7f8c8d")
PIE_COLORS = [colors.HexColor(c) for c in ("#3498db", "#e74c3c", "#2ecc71", "#f1c40f", "#9b59b6")]

CHART_W = 170 * mm
CHART_H = 113 * mm


def report_filename(start, end) -> str:
    return f"BodyForce_Rapport_{_d(start)}_{_d(end)}.pdf"


def _d(value) -> str:
    return value.isoformat() if isinstance(value, (date, datetime)) else str(value)


def _fmt_int(n) -> str:
    return f"{int(n or 0):,}".replace(",", " ")


def _title(c, text: str, y: float, color=COLOR_BLUE) -> float:
    c.setFont("Helvetica-Bold", 16)
    c.setFillColor(color)
    c.drawString(20 * mm, y, text)
    c.setFillColor(colors.black)
    return y - 10 * mm


def _footer(c, page: int):
    w, _ = A4
    c.setFont("Helvetica", 8)
    c.setFillColor(COLOR_MUTED)
    c.drawRightString(w - 20 * mm, 10 * mm, f"Page {page}")
    c.setFillColor(colors.black)


def _table(c, x, y, header, rows, col_widths, head_color) -> float:
    """Simple grid table; returns the y below the last row."""
    row_h = 8 * mm
    c.setStrokeColor(colors.HexColor("#bdc3c7"))

    c.setFillColor(head_color)
    c.rect(x, y - row_h, sum(col_widths), row_h, stroke=1, fill=1)
    c.setFillColor(colors.white)
    c.setFont("Helvetica-Bold", 11)
    cur = x
    for col, w in zip(header, col_widths):
        c.drawString(cur + 2 * mm, y - row_h + 2.5 * mm, str(col))
        cur += w
    y -= row_h

    c.setFillColor(colors.black)
    c.setFont("Helvetica", 10)
    for row in rows:
        cur = x
        for cell, w in zip(row, col_widths):
            c.rect(cur, y - row_h, w, row_h, stroke=1, fill=0)
            c.drawString(cur + 2 * mm, y - row_h + 2.5 * mm, str(cell)[:70])
            cur += w
        y -= row_h
    return y


def _chart_title(d: Drawing, text: str):
    d.add(String(d.width / 2, d.height - 12, text, fontName="Helvetica-Bold", fontSize=12,
                 textAnchor="middle", fillColor=COLOR_TEXT))


def bar_chart(labels: list[str], values: list[float], title: str,
              width: float = CHART_W, height: float = CHART_H) -> Drawing:
    d = Drawing(width, height)
    chart = VerticalBarChart()
    chart.x, chart.y = 40, 60
    chart.width, chart.height = width - 60, height - 90
    chart.data = [list(values)]
    chart.categoryAxis.categoryNames = [str(label)[:18] for label in labels]
    chart.categoryAxis.labels.angle = 30
    chart.categoryAxis.labels.boxAnchor = "ne"
    chart.categoryAxis.labels.fontSize = 7
    chart.valueAxis.valueMin = 0
    if not any(values):
        chart.valueAxis.valueMax = 1
    chart.bars[0].fillColor = COLOR_BLUE
    d.add(chart)
    _chart_title(d, title)
    return d


def line_chart(labels: list[str], values: list[float], title: str,
               width: float = CHART_W, height: float = CHART_H) -> Drawing:
    d = Drawing(width, height)
    chart = HorizontalLineChart()
    chart.x, chart.y = 40, 50
    chart.width, chart.height = width - 60, height - 80
    chart.data = [list(values)]
    chart.categoryAxis.categoryNames = list(labels)
    chart.categoryAxis.labels.angle = 30
    chart.categoryAxis.labels.boxAnchor = "ne"
    chart.categoryAxis.labels.fontSize = 7
    chart.valueAxis.valueMin = 0
    if not any(values):
        chart.valueAxis.valueMax = 1
    chart.lines[0].strokeColor = COLOR_BLUE
    chart.lines[0].strokeWidth = 2
    d.add(chart)
    _chart_title(d, title)
    return d


def pie_chart(labels: list[str], values: list[float], title: str,
              width: float = 150 * mm, height: float = 100 * mm) -> Drawing:
    d = Drawing(width, height)
    pie = Pie()
    size = min(width, height) - 60
    pie.x, pie.y = (width - size) / 2, 15
    pie.width = pie.height = size
    pie.data = list(values)
    pie.labels = [f"{label} ({v})" for label, v in zip(labels, values)]
    pie.sideLabels = True
    for i in range(len(values)):
        pie.slices[i].fillColor = PIE_COLORS[i % len(PIE_COLORS)]
    d.add(pie)
    _chart_title(d, title)
    return d


def _draw(c, drawing: Drawing, x: float, y_top: float) -> float:
    renderPDF.draw(drawing, c, x, y_top - drawing.height)
    return y_top - drawing.height - 10 * mm


def build_stats_report(stats: dict, start, end, club_name: str = "BodyForce",
                       generated_at: datetime | None = None) -> bytes:
    """Render the statistics report; sections missing from `stats` are skipped."""
    generated_at = generated_at or datetime.now()
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"{club_name} - Rapport statistique")
    w, h = A4
    page = 1

    def new_page():
        nonlocal page
        _footer(c, page)
        c.showPage()
        page += 1
        return h - 20 * mm

    # Cover
    c.setFillColor(COLOR_BLUE)
    c.setFont("Helvetica-Bold", 28)
    c.drawCentredString(w / 2, h - 60 * mm, club_name.upper())
    c.setFillColor(COLOR_TEXT)
    c.setFont("Helvetica-Bold", 18)
    c.drawCentredString(w / 2, h - 75 * mm, "Rapport Statistique de Fréquentation")
    c.setFont("Helvetica", 12)
    c.drawCentredString(w / 2, h - 90 * mm, f"Période : {_d(start)} au {_d(end)}")
    c.setFillColor(COLOR_MUTED)
    c.drawCentredString(w / 2, h - 100 * mm, f"Généré le : {generated_at.strftime('%d/%m/%Y %H:%M')}")

    # Overview
    y = _title(c, "Vue d'ensemble", new_page())
    total = stats.get("total_presences") or 0
    active = stats.get("membres_actifs") or 0
    overview = [
        ("Total des présences", _fmt_int(total)),
        ("Membres actifs", str(active)),
        ("Total membres inscrits", str(stats.get("total_membres") or 0)),
        ("Taux d'activation", f"{stats.get('taux_activation') or 0}%"),
        ("Moyenne présences/membre", f"{total / active:.1f}" if active else "0"),
    ]
    y = _table(c, 20 * mm, y, ("Indicateur", "Valeur"), overview, (110 * mm, 60 * mm), COLOR_BLUE)

    top = stats.get("top_10_assidus") or []
    y = _title(c, "Top 10 - Membres les plus assidus", y - 15 * mm, COLOR_GREEN)
    if top:
        rows = [(i + 1, t.get("membre", ""), t.get("presences", 0)) for i, t in enumerate(top)]
        _table(c, 20 * mm, y, ("Rang", "Membre", "Présences"), rows, (20 * mm, 120 * mm, 30 * mm),
               COLOR_GREEN)
        y = new_page()
        _draw(c, bar_chart([t.get("membre", "") for t in top], [t.get("presences", 0) for t in top],
                           "Top 10 des membres les plus assidus"), 20 * mm, y)

    genders = stats.get("repartition_genre")
    if genders and any(genders.values()):
        y = _title(c, "Répartition par genre", new_page())
        y = _draw(c, pie_chart(list(genders), list(genders.values()), "Répartition Hommes / Femmes"),
                  30 * mm, y)
        students = stats.get("repartition_etudiant")
        if students and any(students.values()):
            y = _title(c, "Répartition Étudiants / Non-étudiants", y)
            _draw(c, pie_chart(list(students), list(students.values()), "Répartition Étudiants"),
                  30 * mm, y)

    days = stats.get("frequentation_jours") or []
    if days:
        y = _title(c, "Fréquentation par jour de la semaine", new_page())
        _draw(c, bar_chart([str(d.get("jour", "")).strip() for d in days],
                           [d.get("presences", 0) for d in days], "Fréquentation par jour"), 20 * mm, y)

    slots = stats.get("frequentation_plages")
    if slots:
        labels = [label for label, _, _ in TIME_SLOTS if slots.get(label)]
        if labels:
            y = _title(c, "Fréquentation par plage horaire", new_page())
            _draw(c, bar_chart(labels, [slots[label] for label in labels],
                               "Fréquentation par plage horaire"), 20 * mm, y)

    months = stats.get("evolution_mensuelle")
    if months:
        labels = sorted(months)
        y = _title(c, "Évolution mensuelle", new_page())
        _draw(c, line_chart(labels, [months[m] for m in labels], "Évolution mensuelle des présences"),
              20 * mm, y)

    _footer(c, page)
    c.save()
    return buf.getvalue()
