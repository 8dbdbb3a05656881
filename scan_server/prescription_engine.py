# Prescription Engine - Groq AI daily plans and trend insights (Procedural)
from typing import Dict, List, Mapping, Optional

from scan_server import config
from scan_server import logger

PRESCRIPTION_SYSTEM_PROMPT = "You are a facial biometric optimization expert. Always respond with valid JSON only, no additional text."
WORKOUT_SYSTEM_PROMPT = "You are a facial exercise expert. Always respond with valid JSON only."
INSIGHT_SYSTEM_PROMPT = "You are a facial biometric analyst. Always respond with valid JSON only."

WORKOUT_TYPES = ("lymph_drainage", "neck_posture", "blood_flow", "inflammation_flush", "eye_depuff", "jaw_release")

MIN_SCANS_FOR_INSIGHTS = 2


def _metric(metrics: Mapping, name: str) -> float:
    value = metrics.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return config.DEFAULT_METRICS[name]
    return float(value)


def _signed(value: float) -> str:
    return f"{value:+.1f}"


def severity(metrics: Mapping, name: str) -> float:
    """How bad a metric is on a common 0-100 scale (higher is worse)"""
    value = _metric(metrics, name)
    if name in config.HIGHER_IS_BETTER:
        return round(config.METRIC_MAX - value, config.METRIC_DECIMALS)
    return value


# ============================================================================
# PRESCRIPTIONS
# ============================================================================

def build_prescription_prompt(metrics: Mapping) -> str:
    return f"""You are a facial biometric optimization expert. Based on these facial scan metrics, provide specific daily prescriptions:

Water Retention: {_metric(metrics, 'water_retention')}%
Inflammation Index: {_metric(metrics, 'inflammation_index')}
Lymph Congestion Score: {_metric(metrics, 'lymph_congestion_score')}
Facial Fat Layer: {_metric(metrics, 'facial_fat_layer')}%
Definition Score: {_metric(metrics, 'definition_score')}

Provide a JSON response with these exact fields:
{{
  "potassium_target": number in mg,
  "sodium_limit": number in mg,
  "water_timing": "specific timing instructions",
  "magnesium_bedtime_dose": number in mg,
  "carb_type_recommendation": "specific recommendation",
  "step_count_goal": number,
  "recommendations": "brief summary of key actions"
}}

Be specific and actionable. Focus on reducing water retention, inflammation, and lymph congestion while improving definition."""


def get_fallback_prescriptions() -> Dict:
    logger.log_warning("Using Fallback Prescriptions", {"reason": "AI unavailable or invalid response"})
    return dict(config.DEFAULT_PRESCRIPTIONS)


def generate_prescriptions(oracle, metrics: Mapping) -> Dict:
    """
    Daily prescription for a set of scan metrics

    Missing fields in the AI answer are filled from the default prescription.

    Args:
        oracle: OracleClient
        metrics: Scan record or metric mapping

    Returns:
        Prescription dict with every DEFAULT_PRESCRIPTIONS key
    """
    ai_output = oracle.complete_json(PRESCRIPTION_SYSTEM_PROMPT, build_prescription_prompt(metrics))
    if not ai_output:
        return get_fallback_prescriptions()

    prescriptions = dict(config.DEFAULT_PRESCRIPTIONS)
    prescriptions.update({k: v for k, v in ai_output.items() if k in config.DEFAULT_PRESCRIPTIONS})

    logger.log_oracle("Prescriptions Generated", {
        "potassium_target": prescriptions["potassium_target"],
        "sodium_limit": prescriptions["sodium_limit"]
    })
    return prescriptions


# ============================================================================
# WORKOUTS
# ============================================================================

def build_workout_prompt(metrics: Mapping) -> str:
    return f"""Based on these facial metrics, recommend specific face workouts:

Water Retention: {_metric(metrics, 'water_retention')}%
Inflammation Index: {_metric(metrics, 'inflammation_index')}
Lymph Congestion Score: {_metric(metrics, 'lymph_congestion_score')}
Definition Score: {_metric(metrics, 'definition_score')}

Provide a JSON object with this structure:
{{
  "workouts": [
    {{
      "name": "workout name",
      "type": "{'|'.join(WORKOUT_TYPES)}",
      "duration": number in minutes,
      "instructions": "step-by-step instructions",
      "priority": "high|medium|low"
    }}
  ]
}}

Focus on workouts that address the highest priority issues."""


def _priority(score: float) -> str:
    if score >= 60:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


def get_fallback_workouts(metrics: Mapping, limit: int = 3) -> Dict:
    """Rule-based workouts for the worst metrics, worst first"""
    ranked = sorted(config.SCORED_METRICS, key=lambda name: severity(metrics, name), reverse=True)

    workouts = []
    for name in ranked[:limit]:
        workout = dict(config.METRIC_RULES[name]["workout"])
        workout["priority"] = _priority(severity(metrics, name))
        workout["target_metric"] = name
        workouts.append(workout)

    logger.log_warning("Using Fallback Workouts", {
        "worst_metric": ranked[0],
        "count": len(workouts)
    })
    return {"workouts": workouts}


def generate_workouts(oracle, metrics: Mapping) -> Dict:
    ai_output = oracle.complete_json(WORKOUT_SYSTEM_PROMPT, build_workout_prompt(metrics))

    workouts = ai_output.get("workouts") if ai_output else None
    if not isinstance(workouts, list) or not workouts:
        return get_fallback_workouts(metrics)

    logger.log_oracle("Workouts Generated", {"count": len(workouts)})
    return {"workouts": workouts}


# ============================================================================
# INSIGHTS
# ============================================================================

def compute_trends(scans: List[Dict]) -> Dict:
    """
    Per-metric change between the two most recent scans

    Args:
        scans: Scan records, newest first

    Returns:
        {metric: {"direction", "change", "latest"}}, empty with fewer than 2 scans
    """
    if len(scans) < MIN_SCANS_FOR_INSIGHTS:
        return {}

    latest, previous = scans[0], scans[1]
    trends = {}

    for name in config.SCORED_METRICS:
        change = round(_metric(latest, name) - _metric(previous, name), config.METRIC_DECIMALS)
        # Positive worsening delta means the metric moved the wrong way
        worsening = -change if name in config.HIGHER_IS_BETTER else change

        if worsening > config.TREND_THRESHOLD:
            direction = "WORSENING"
        elif worsening < -config.TREND_THRESHOLD:
            direction = "IMPROVING"
        else:
            direction = "STABLE"

        trends[name] = {
            "direction": direction,
            "change": change,
            "latest": _metric(latest, name)
        }

    return trends


def build_insight_prompt(latest: Mapping, trends: Dict) -> str:
    prompt = "Analyze these facial biometric changes over time:\n\n"
    for name, trend in trends.items():
        label = config.METRIC_RULES[name]["label"]
        prompt += f"{label}: {_signed(trend['change'])} ({trend['direction']})\n"

    prompt += "\nCurrent metrics:\n"
    for name in config.SCORED_METRICS:
        prompt += f"- {config.METRIC_RULES[name]['label']}: {_metric(latest, name)}\n"

    prompt += """
Provide insights in JSON format:
{
  "trend_analysis": "overall trend description",
  "key_improvements": ["improvement 1", "improvement 2"],
  "areas_of_concern": ["concern 1", "concern 2"],
  "recommendations": ["recommendation 1", "recommendation 2"]
}"""
    return prompt


def get_fallback_insights(trends: Dict) -> Dict:
    improvements = []
    concerns = []
    recommendations = []

    for name, trend in trends.items():
        label = config.METRIC_RULES[name]["label"]
        if trend["direction"] == "IMPROVING":
            improvements.append(f"{label} improved ({_signed(trend['change'])})")
        elif trend["direction"] == "WORSENING":
            concerns.append(f"{label} worsened ({_signed(trend['change'])})")
            recommendations.append(config.METRIC_RULES[name]["workout"]["name"])

    if improvements and not concerns:
        analysis = "Your metrics are improving since the previous scan."
    elif concerns and not improvements:
        analysis = "Some metrics have moved the wrong way since the previous scan."
    elif improvements:
        analysis = "Mixed progress since the previous scan."
    else:
        analysis = "Your metrics are stable since the previous scan."

    if not recommendations:
        recommendations.append(config.DEFAULT_PRESCRIPTIONS["recommendations"])

    logger.log_warning("Using Fallback Insights", {
        "improving": len(improvements),
        "worsening": len(concerns)
    })

    return {
        "trend_analysis": analysis,
        "key_improvements": improvements,
        "areas_of_concern": concerns,
        "recommendations": recommendations
    }


def generate_insights(oracle, scans: List[Dict]) -> Dict:
    """
    Trend insights from a user's scan history

    Args:
        oracle: OracleClient
        scans: Scan records, newest first

    Returns:
        Insight dict with "trends" attached, or {"insights": message} with
        fewer than 2 scans
    """
    if len(scans) < MIN_SCANS_FOR_INSIGHTS:
        return {"insights": "Need at least 2 scans to generate insights."}

    trends = compute_trends(scans)
    ai_output = oracle.complete_json(INSIGHT_SYSTEM_PROMPT, build_insight_prompt(scans[0], trends))

    if ai_output and isinstance(ai_output.get("trend_analysis"), str):
        insights = ai_output
        logger.log_oracle("Insights Generated", {"scans": len(scans)})
    else:
        insights = get_fallback_insights(trends)

    insights["trends"] = trends
    return insights


def build_daily_plan(oracle, scan: Optional[Dict]) -> Optional[Dict]:
    """Prescriptions and workouts for the latest scan; None without a scan"""
    if not scan:
        return None

    return {
        "scan_id": scan["id"],
        "scan_date": scan.get("scan_date"),
        "metrics": {name: scan.get(name) for name in config.ALL_METRICS},
        "prescriptions": generate_prescriptions(oracle, scan),
        "workouts": generate_workouts(oracle, scan)["workouts"]
    }
