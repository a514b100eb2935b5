"""
Unit tests for test-report trend comparison.
"""

import pytest

from clinic_access.analysis import (
    analyze_trend,
    build_comparison_summary,
    build_parameter_frame,
    compare_parameters,
    compare_reports,
    report_date_range,
    summarize_comparison,
)
from clinic_access.errors import ValidationError


# ── Helpers ──────────────────────────────────────────────────────────

class FakeLLMResponse:
    def __init__(self, content: str):
        self.content = content


class FakeLLM:
    def __init__(self, content: str):
        self._content = content
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        return FakeLLMResponse(self._content)


class BrokenLLM:
    def invoke(self, messages):
        raise RuntimeError("rate limited")


def report(date, *results, name="r.pdf"):
    return {
        "file_name": name,
        "analysis_date": date,
        "test_results": [
            {"parameter": p, "value": v, "unit": "u", "reference_range": "", "status": "normal"}
            for p, v in results
        ],
    }


# ── Tests: analyze_trend ─────────────────────────────────────────────

def test_rising_glucose_is_concerning():
    out = analyze_trend("Fasting Glucose", [100.0, 130.0])
    assert out["trend"] == "increasing"
    assert out["is_concerning"] is True
    assert out["clinical_significance"] == "Concerning increasing trend in Fasting Glucose requires attention"


def test_falling_cholesterol_is_not_concerning():
    out = analyze_trend("LDL Cholesterol", [200.0, 150.0])
    assert out["trend"] == "decreasing"
    assert out["is_concerning"] is False
    assert out["clinical_significance"] == ""


def test_hemoglobin_drop_is_concerning():
    out = analyze_trend("Hemoglobin", [15.0, 11.0])
    assert out["trend"] == "decreasing"
    assert out["is_concerning"] is True


def test_other_parameters_change_without_concern():
    out = analyze_trend("Vitamin D", [20.0, 30.0])
    assert out["trend"] == "increasing"
    assert out["is_concerning"] is False


def test_small_change_is_stable():
    out = analyze_trend("Sodium", [140.0, 142.0])
    assert out["trend"] == "stable"
    assert out["analysis"] == (
        "Sodium shows a stable pattern over time. "
        "Change from first to last: 1.4%. Values range: 140 to 142."
    )


def test_fluctuation_detected_with_three_points():
    out = analyze_trend("Platelets", [100.0, 150.0, 100.0])
    assert out["trend"] == "fluctuating"
    assert out["is_concerning"] is True


def test_non_numeric_values():
    out = analyze_trend("Urine colour", [None, 5.0])
    assert out["trend"] == "insufficient_data"
    assert out["analysis"] == "Values cannot be numerically compared"


def test_single_value():
    out = analyze_trend("TSH", [2.0])
    assert out["trend"] == "insufficient_data"
    assert out["analysis"] == "Not enough data points for trend analysis"


def test_zero_baseline_does_not_divide_by_zero():
    out = analyze_trend("CRP", [0.0, 3.0])
    assert out["trend"] == "increasing"


# ── Tests: compare_parameters ────────────────────────────────────────

def test_parameters_merge_case_insensitively_and_sort_by_date():
    reports = [
        report("2024-03-01", ("Glucose", "130 mg/dL"), ("Sodium", "140"), name="march.pdf"),
        report("2024-01-01", ("glucose ", "100"), ("Potassium", "4.1"), name="jan.pdf"),
    ]
    comparisons = compare_parameters(reports)
    assert [c["parameter"] for c in comparisons] == ["Glucose", "Sodium", "Potassium"]

    glucose = comparisons[0]
    assert [v["report_index"] for v in glucose["values"]] == [1, 0]
    assert [v["value"] for v in glucose["values"]] == ["100", "130 mg/dL"]
    assert glucose["trend"] == "increasing"

    sodium = comparisons[1]
    assert sodium["trend"] == "insufficient_data"
    assert sodium["trend_analysis"] == (
        "Sodium has only one data point. Trend analysis requires multiple values over time."
    )


def test_numeric_extraction():
    df = build_parameter_frame([report("2024-01-01", ("A", "<0.5"), ("B", "positive"), ("C", "7.25 g/dL"))])
    assert df["numeric_value"].iloc[0] == 0.5
    assert df["numeric_value"].isna().iloc[1]
    assert df["numeric_value"].iloc[2] == 7.25


def test_empty_reports_have_no_parameters():
    assert compare_parameters([report("2024-01-01"), report("2024-02-01")]) == []


# ── Tests: summary ───────────────────────────────────────────────────

def test_summary_flags_concerning_parameters():
    reports = [
        report("2024-01-01", ("Glucose", "100"), ("Sodium", "140")),
        report("2024-02-01", ("Glucose", "130"), ("Sodium", "141")),
    ]
    summary = build_comparison_summary(2, compare_parameters(reports))
    assert summary["concerning_parameters"] == ["Glucose"]
    assert summary["stable_parameters"] == ["Sodium"]
    assert summary["key_changes"] == ["Glucose: increasing trend"]
    assert summary["overall_trend"] == "Generally stable with some variations"
    assert summary["patient_summary"]["main_findings"] == (
        "Compared 2 test reports. 1 parameters need attention, 1 are stable."
    )


def test_summary_counts_improvements():
    reports = [
        report("2024-01-01", ("Total Cholesterol", "250")),
        report("2024-02-01", ("Total Cholesterol", "180")),
    ]
    summary = build_comparison_summary(2, compare_parameters(reports))
    assert summary["improved_parameters"] == ["Total Cholesterol"]
    assert summary["patient_summary"]["overall_status"] == (
        "Your test results show good consistency over time"
    )


def test_report_date_range_ignores_bad_dates():
    reports = [report("2024-05-02"), report("not a date"), report("2023-12-31")]
    assert report_date_range(reports) == {"start": "2023-12-31", "end": "2024-05-02"}


# ── Tests: compare_reports ───────────────────────────────────────────

@pytest.mark.parametrize("reports", [
    None,
    [report("2024-01-01")],
    [report("2024-01-01")] * 11,
    [report("2024-01-01"), {"file_name": "x"}],
])
def test_compare_reports_validation(reports):
    with pytest.raises(ValidationError):
        compare_reports(reports)


def test_compare_reports_with_llm():
    llm = FakeLLM("  Your glucose went up.  ")
    reports = [report("2024-01-01", ("Glucose", "100")), report("2024-02-01", ("Glucose", "130"))]
    out = compare_reports(reports, llm=llm)
    assert out["ai_summary"] == "Your glucose went up."
    assert len(llm.calls) == 1
    assert "Glucose" in llm.calls[0][1].content


def test_compare_reports_survives_llm_failure(capsys):
    reports = [report("2024-01-01", ("Glucose", "100")), report("2024-02-01", ("Glucose", "130"))]
    out = compare_reports(reports, llm=BrokenLLM())
    assert out["ai_summary"] == "AI summary unavailable."
    assert "[WARN] AI comparison summary failed" in capsys.readouterr().err


def test_summarize_comparison_returns_text():
    llm = FakeLLM("Summary.")
    assert summarize_comparison(llm, [], build_comparison_summary(2, [])) == "Summary."
