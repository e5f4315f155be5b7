from __future__ import annotations

from datetime import date, datetime

import pytest

import report

FULL_STATS = {
    "total_presences": 1234,
    "membres_actifs": 80,
    "total_membres": 120,
    "taux_activation": 66.7,
    "top_10_assidus": [{"membre": f"Membre {i}", "presences": 50 - i} for i in range(10)],
    "repartition_genre": {"Homme": 50, "Femme": 30},
    "repartition_etudiant": {"Étudiants": 20, "Non-étudiants": 60},
    "frequentation_jours": [{"jour": "Lundi   ", "presences": 300}, {"jour": "Mardi", "presences": 250}],
    "frequentation_plages": {"Nuit (22h-5h)": 4, "Matin (5h-9h)": 100, "Soirée (18h-22h)": 0},
    "evolution_mensuelle": {"2025-03": 400, "2025-01": 500, "2025-02": 334},
}


def test_report_filename():
    assert report.report_filename(date(2025, 1, 1), date(2025, 12, 31)) == \
        "BodyForce_Rapport_2025-01-01_2025-12-31.pdf"
    assert report.report_filename("2025-01-01", "2025-01-31") == "BodyForce_Rapport_2025-01-01_2025-01-31.pdf"


def test_full_report_is_a_pdf():
    pdf = report.build_stats_report(FULL_STATS, date(2025, 1, 1), date(2025, 12, 31),
                                    generated_at=datetime(2025, 6, 15, 9, 30))
    assert pdf.startswith(b"%PDF")
    assert pdf.rstrip().endswith(b"%%EOF")


def test_sections_without_data_are_skipped():
    full = report.build_stats_report(FULL_STATS, "2025-01-01", "2025-12-31")
    minimal = report.build_stats_report({"total_presences": 0}, "2025-01-01", "2025-12-31")
    assert minimal.startswith(b"%PDF")
    assert len(minimal) < len(full)


@pytest.mark.parametrize("key", ["repartition_genre", "frequentation_plages", "evolution_mensuelle"])
def test_all_zero_sections_render(key):
    stats = {key: dict.fromkeys(FULL_STATS[key], 0)}
    assert report.build_stats_report(stats, "2025-01-01", "2025-01-31").startswith(b"%PDF")


def test_charts_are_drawings():
    d = report.bar_chart(["a", "b"], [1, 2], "title")
    assert d.width == report.CHART_W
    assert report.line_chart(["2025-01"], [3], "t").height == report.CHART_H
    assert len(report.pie_chart(["x", "y"], [1, 1], "t").contents) == 2
