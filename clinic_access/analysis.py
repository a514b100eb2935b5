"""
Test-report trend comparison – parameter merging, trend classification,
overall summary, and AI narrative.
"""

import sys
from typing import Any, Dict, List, Optional

import pandas as pd
from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage

from clinic_access.config import (
    FLUCTUATION_THRESHOLD,
    HEMATOLOGY_CHANGE_THRESHOLD,
    MAX_COMPARISON_REPORTS,
    MIN_COMPARISON_REPORTS,
    TREND_CHANGE_THRESHOLD,
)
from clinic_access.errors import ValidationError

RISING_IS_BAD = ("cholesterol", "glucose", "pressure")
HEMATOLOGY = ("hemoglobin", "rbc")
IMPROVING_WHEN_FALLING = ("cholesterol", "glucose")

NUMBER_PATTERN = r"(\d*\.?\d+)"

RECOMMENDATIONS = [
    {
        "category": "follow_up",
        "action": "Review these results with your healthcare provider for proper interpretation",
        "priority": "high",
        "timeline": "Within 1-2 weeks",
    },
    {
        "category": "lifestyle",
        "action": "Maintain consistent lifestyle and medication compliance between tests",
        "priority": "medium",
        "timeline": "Ongoing",
    },
]


def _fmt(x: float) -> str:
    return f"{x:g}"


# ── Input validation ─────────────────────────────────────────────────

def validate_reports(reports: Any) -> List[Dict[str, Any]]:
    """Check the shape of the incoming report list."""
    if not isinstance(reports, list):
        raise ValidationError("reports must be an array")
    if not MIN_COMPARISON_REPORTS <= len(reports) <= MAX_COMPARISON_REPORTS:
        raise ValidationError(
            f"Between {MIN_COMPARISON_REPORTS} and {MAX_COMPARISON_REPORTS} reports are required"
        )
    for i, report in enumerate(reports):
        if not isinstance(report, dict) or not isinstance(report.get("test_results"), list):
            raise ValidationError(f"Report {i} must contain a test_results array")
        for result in report["test_results"]:
            if not isinstance(result, dict) or not str(result.get("parameter", "")).strip():
                raise ValidationError(f"Report {i} has a test result without a parameter")
    return reports


# ── Parameter frame ──────────────────────────────────────────────────

def build_parameter_frame(reports: List[Dict[str, Any]]) -> pd.DataFrame:
    """
    One row per (report, test result).

    ``key`` is the case-insensitive parameter name used to merge values
    across reports; ``numeric_value`` is the first number found in the
    reported value (NaN when there is none).
    """
    rows = []
    for index, report in enumerate(reports):
        for result in report.get("test_results", []):
            rows.append({
                "key": str(result["parameter"]).strip().lower(),
                "parameter": result["parameter"],
                "unit": result.get("unit", ""),
                "reference_range": result.get("reference_range", ""),
                "report_index": index,
                "date": report.get("analysis_date"),
                "value": "" if result.get("value") is None else str(result.get("value")),
                "status": result.get("status", ""),
                "file_name": report.get("file_name", ""),
            })

    columns = ["key", "parameter", "unit", "reference_range", "report_index",
               "date", "value", "status", "file_name"]
    df = pd.DataFrame(rows, columns=columns)
    df["numeric_value"] = pd.to_numeric(
        df["value"].astype(str).str.extract(NUMBER_PATTERN, expand=False), errors="coerce"
    )
    df["parsed_date"] = pd.to_datetime(df["date"], errors="coerce")
    return df


# ── Trend classification ─────────────────────────────────────────────

def _percent_change(first: float, last: float) -> float:
    if first == 0:
        return 0.0 if last == 0 else (100.0 if last > 0 else -100.0)
    return (last - first) / first * 100.0


def analyze_trend(parameter: str, values: List[Optional[float]]) -> Dict[str, Any]:
    """
    Classify the trend of one parameter from its date-ordered values.

    Non-numeric entries (None/NaN) are ignored. A first→last change above
    the trend threshold is increasing/decreasing; otherwise, with more than
    two points, a mean step variation above the fluctuation threshold is
    fluctuating; anything else is stable.
    """
    if len(values) < 2:
        return {
            "trend": "insufficient_data",
            "analysis": "Not enough data points for trend analysis",
            "is_concerning": False,
            "clinical_significance": "",
        }

    numeric = [float(v) for v in values if v is not None and not pd.isna(v)]
    if len(numeric) < 2:
        return {
            "trend": "insufficient_data",
            "analysis": "Values cannot be numerically compared",
            "is_concerning": False,
            "clinical_significance": "",
        }

    name = parameter.lower()
    change = _percent_change(numeric[0], numeric[-1])
    trend = "stable"
    is_concerning = False

    if abs(change) > TREND_CHANGE_THRESHOLD:
        trend = "increasing" if change > 0 else "decreasing"
        if any(k in name for k in RISING_IS_BAD):
            is_concerning = change > 0
        elif any(k in name for k in HEMATOLOGY):
            is_concerning = abs(change) > HEMATOLOGY_CHANGE_THRESHOLD
    elif len(numeric) > 2:
        steps = pd.Series(numeric)
        previous = steps.shift(1)
        variations = ((steps - previous) / previous).abs().iloc[1:] * 100.0
        # Steps starting from zero have no relative variation.
        variations = variations.replace(float("inf"), float("nan")).dropna()
        if not variations.empty and float(variations.mean()) > FLUCTUATION_THRESHOLD:
            trend = "fluctuating"
            is_concerning = True

    analysis = (
        f"{parameter} shows a {trend} pattern over time. "
        f"Change from first to last: {change:.1f}%. "
        f"Values range: {_fmt(min(numeric))} to {_fmt(max(numeric))}."
    )
    return {
        "trend": trend,
        "analysis": analysis,
        "is_concerning": is_concerning,
        "clinical_significance": (
            f"Concerning {trend} trend in {parameter} requires attention" if is_concerning else ""
        ),
    }


def compare_parameters(reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge parameters across reports and classify each one's trend."""
    df = build_parameter_frame(reports)
    if df.empty:
        return []

    comparisons = []
    for _key, group in df.groupby("key", sort=False):
        first = group.iloc[0]
        ordered = group.sort_values("parsed_date", kind="stable", na_position="last")
        values = [
            {
                "report_index": int(row.report_index),
                "date": row.date,
                "value": row.value,
                "status": row.status,
                "file_name": row.file_name,
            }
            for row in ordered.itertuples(index=False)
        ]

        param = {
            "parameter": first["parameter"],
            "unit": first["unit"],
            "reference_range": first["reference_range"],
            "values": values,
            "trend": "insufficient_data",
            "trend_analysis": "",
            "is_concerning": False,
            "clinical_significance": "",
        }

        if len(values) >= 2:
            numeric = [None if pd.isna(v) else float(v) for v in ordered["numeric_value"]]
            result = analyze_trend(str(first["parameter"]), numeric)
            param["trend"] = result["trend"]
            param["trend_analysis"] = result["analysis"]
            param["is_concerning"] = result["is_concerning"]
            param["clinical_significance"] = result["clinical_significance"]
        else:
            param["trend_analysis"] = (
                f"{first['parameter']} has only one data point. "
                "Trend analysis requires multiple values over time."
            )
        comparisons.append(param)

    return comparisons


# ── Overall summary ──────────────────────────────────────────────────

def build_comparison_summary(report_count: int, comparisons: List[Dict[str, Any]]) -> Dict[str, Any]:
    concerning = [p["parameter"] for p in comparisons if p["is_concerning"]]
    improving = [
        p["parameter"] for p in comparisons
        if p["trend"] == "decreasing"
        and any(k in p["parameter"].lower() for k in IMPROVING_WHEN_FALLING)
    ]
    stable = [p["parameter"] for p in comparisons if p["trend"] == "stable"]
    key_changes = [
        f"{p['parameter']}: {p['trend']} trend"
        for p in comparisons
        if p["trend"] not in {"stable", "insufficient_data"}
    ][:5]

    if len(concerning) > len(improving) + len(stable):
        overall = "Some concerning changes noted"
    else:
        overall = "Generally stable with some variations"

    return {
        "overall_trend": overall,
        "key_changes": key_changes,
        "concerning_parameters": concerning,
        "improved_parameters": improving,
        "stable_parameters": stable[:10],
        "recommendations": [dict(r) for r in RECOMMENDATIONS],
        "patient_summary": {
            "overall_status": (
                "Your test results show good consistency over time" if not concerning
                else "Some parameters show changes that may need attention"
            ),
            "main_findings": (
                f"Compared {report_count} test reports. {len(concerning)} parameters "
                f"need attention, {len(stable)} are stable."
            ),
            "next_steps": "Discuss these trends with your doctor to understand their clinical significance.",
        },
    }


def report_date_range(reports: List[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    dates = pd.to_datetime(pd.Series([r.get("analysis_date") for r in reports]), errors="coerce").dropna()
    if dates.empty:
        return {"start": None, "end": None}
    return {"start": dates.min().date().isoformat(), "end": dates.max().date().isoformat()}


# ── AI narrative summary ─────────────────────────────────────────────

def summarize_comparison(llm: ChatOpenAI, comparisons: List[Dict[str, Any]],
                         summary: Dict[str, Any]) -> str:
    """Ask the LLM for a patient-friendly narrative of the comparison."""
    table = pd.DataFrame([
        {
            "parameter": p["parameter"],
            "unit": p["unit"],
            "values": ", ".join(v["value"] for v in p["values"]),
            "trend": p["trend"],
            "concerning": p["is_concerning"],
        }
        for p in comparisons
    ])
    preview = table.to_markdown(index=False) if not table.empty else "(no parameters)"

    system = SystemMessage(
        content=(
            "You are a clinical assistant explaining lab results over time.\n"
            "You will see a table of test parameters with their values across\n"
            "several reports (oldest first) and an automatic trend summary.\n\n"
            "Write a short plain-language explanation for the patient:\n"
            "- Say which values changed and in which direction.\n"
            "- Point out the parameters flagged as concerning.\n"
            "- Do not diagnose; recommend discussing results with a doctor.\n"
            "Write 3–6 sentences, no markdown."
        )
    )
    human = HumanMessage(
        content=(
            f"Parameters across reports:\n{preview}\n\n"
            f"Overall trend: {summary['overall_trend']}\n"
            f"Concerning parameters: {', '.join(summary['concerning_parameters']) or 'none'}\n"
            f"Key changes: {'; '.join(summary['key_changes']) or 'none'}\n"
        )
    )
    resp = llm.invoke([system, human])
    return resp.content.strip()


def compare_reports(reports: Any, llm: Optional[ChatOpenAI] = None) -> Dict[str, Any]:
    """Full comparison: validation, per-parameter trends, summary, narrative."""
    reports = validate_reports(reports)
    comparisons = compare_parameters(reports)
    summary = build_comparison_summary(len(reports), comparisons)

    ai_summary = None
    if llm is not None:
        try:
            ai_summary = summarize_comparison(llm, comparisons, summary)
        except Exception as e:
            print(f"[WARN] AI comparison summary failed: {e}", file=sys.stderr)
            ai_summary = "AI summary unavailable."

    return {
        "report_count": len(reports),
        "date_range": report_date_range(reports),
        "parameter_comparisons": comparisons,
        "comparison_analysis": summary,
        "ai_summary": ai_summary,
    }
