"""
Reglas de puntaje por etapa del funnel.
Funciones puras: no dependen de base de datos ni de APIs externas.
"""

import math
from typing import Any, Dict, List, Optional

from ..domain.enums import AnalysisStage
from ..utils.helpers import round2

# Puntaje fijo por clasificación
STAGE_CLASSIFICATIONS: Dict[str, Dict[str, Any]] = {
    AnalysisStage.TOFU.value: {
        "mentioned": {1: 100, 2: 75, 3: 50, 4: 25, 5: 10},
        "not_mentioned": 0,
    },
    AnalysisStage.MOFU.value: {
        "mofu_positive": 100,
        "mofu_conditional": 75,
        "mofu_neutral": 50,
        "mofu_negative": 25,
        "mofu_absent": 0,
    },
    AnalysisStage.BOFU.value: {
        "bofu_yes": 100,
        "bofu_partial": 75,
        "bofu_unclear": 50,
        "bofu_no": 25,
        "bofu_absent": 0,
    },
    AnalysisStage.EVFU.value: {
        "evfu_recommend": 100,
        "evfu_caveat": 75,
        "evfu_neutral": 50,
        "evfu_negative": 25,
        "evfu_absent": 0,
    },
}

POSITION_KEYS = {1: "first", 2: "second", 3: "third", 4: "fourth", 5: "fifth"}

SENTIMENT_MULTIPLIERS = {"positive": 1.0, "neutral": 0.5, "negative": 0.3}


def calculate_score(stage: str, classification: str, mention_position: Optional[int] = None) -> float:
    """Puntaje 0-100 de un prompt según etapa, clasificación y posición"""
    classifications = STAGE_CLASSIFICATIONS.get(stage)
    if classifications is None:
        return 0

    if stage == AnalysisStage.TOFU.value:
        if classification == "mentioned" and isinstance(mention_position, int) and 1 <= mention_position <= 5:
            return classifications["mentioned"][mention_position]
        return 0

    value = classifications.get(classification, 0)
    return value if isinstance(value, (int, float)) else 0


def apply_stage_specific_weighting(stage: str, sentiment: Dict[str, Any]) -> float:
    """Multiplicador por sentimiento. TOFU no se pondera por sentimiento"""
    if stage not in (AnalysisStage.MOFU.value, AnalysisStage.BOFU.value, AnalysisStage.EVFU.value):
        return 1.0
    return SENTIMENT_MULTIPLIERS.get((sentiment or {}).get("overall"), 0)


def stage_weight(stage: str, weights: Dict[str, Any], classification: str,
                 mention_position: int, sentiment: Dict[str, Any]) -> float:
    """
    Peso de la configuración CSV que se aplica al puntaje crudo.

    TOFU usa el peso por posición (first..fifth, absent). Las demás etapas usan
    la escala de su clasificación (p.ej. mofu_conditional -> mofu_scale.conditional)
    y, si la escala no la define, el multiplicador por sentimiento.
    """
    base_weight = weights.get("base_weight") or 1.0

    if stage == AnalysisStage.TOFU.value:
        position_weights = weights.get("position_weights") or {}
        key = POSITION_KEYS.get(mention_position, "absent")
        if key in position_weights:
            return base_weight * position_weights[key]
        return base_weight

    scale_name = f"{stage.lower()}_scale"
    scale = weights.get(scale_name) or {}
    prefix = f"{stage.lower()}_"
    label = classification[len(prefix):] if classification.startswith(prefix) else classification
    if label in scale and any(scale.values()):
        return base_weight * scale[label]
    return base_weight * apply_stage_specific_weighting(stage, sentiment)


def calculate_weighted_score(score: float, stage: str, weights: Dict[str, Any], classification: str,
                             mention_position: int, sentiment: Dict[str, Any]) -> float:
    """Puntaje crudo por peso de la configuración, acotado a 0-100"""
    weighted = score * stage_weight(stage, weights, classification, mention_position, sentiment)
    return round2(min(max(weighted, 0), 100))


def get_stage_specific_classification(stage: str, sentiment: Dict[str, Any], mention_position: int) -> str:
    """Etiqueta legible del desempeño de la marca en la etapa"""
    if mention_position == 0:
        return "not_mentioned"

    overall = (sentiment or {}).get("overall")
    if stage == AnalysisStage.TOFU.value:
        if mention_position <= 2:
            return "high_awareness"
        if mention_position <= 3:
            return "moderate_awareness"
        return "low_awareness"

    labels = {
        AnalysisStage.MOFU.value: {
            "positive": "strong_consideration",
            "neutral": "conditional_consideration",
            "negative": "weak_consideration",
        },
        AnalysisStage.BOFU.value: {
            "positive": "purchase_ready",
            "neutral": "purchase_uncertain",
            "negative": "purchase_unlikely",
        },
        AnalysisStage.EVFU.value: {
            "positive": "strong_advocacy",
            "neutral": "neutral_experience",
            "negative": "poor_experience",
        },
    }
    return labels.get(stage, {}).get(overall, "unknown")


def _is_valid_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not math.isnan(value)


def calculate_aggregate_scores(results: List[Dict[str, Any]]) -> Dict[str, float]:
    """
    Promedios de una lista de resultados con raw_score,
    position_weighted_score y mention_position.
    """
    empty = {"overall_score": 0, "weighted_score": 0, "mention_rate": 0, "top_position_rate": 0}
    valid = [
        r for r in results
        if _is_valid_number(r.get("raw_score")) and _is_valid_number(r.get("position_weighted_score"))
    ]
    if not valid:
        return empty

    total = len(valid)
    mentioned = [r for r in valid if r.get("mention_position", 0) > 0]
    top_positions = [r for r in valid if 1 <= r.get("mention_position", 0) <= 2]

    return {
        "overall_score": round2(sum(r["raw_score"] for r in valid) / total),
        "weighted_score": round2(sum(r["position_weighted_score"] for r in valid) / total),
        "mention_rate": round2(len(mentioned) / total * 100),
        "top_position_rate": round2(len(top_positions) / total * 100),
    }


def performance_level(weighted_score: float, mention_rate: float) -> str:
    if weighted_score >= 80 and mention_rate >= 70:
        return "excellent"
    if weighted_score >= 60 and mention_rate >= 50:
        return "good"
    if weighted_score >= 40 and mention_rate >= 30:
        return "fair"
    return "poor"


def generate_insights(results: List[Dict[str, Any]], stage: str) -> Dict[str, Any]:
    """Insight principal, nivel de desempeño y recomendaciones de la etapa"""
    aggregates = calculate_aggregate_scores(results)
    weighted = aggregates["weighted_score"]
    mention_rate = aggregates["mention_rate"]
    top_rate = aggregates["top_position_rate"]
    level = performance_level(weighted, mention_rate)
    recommendations: List[str] = []

    if stage == AnalysisStage.TOFU.value:
        primary = (
            f"Brand awareness is {level} with {mention_rate:.1f}% mention rate "
            f"and {top_rate:.1f}% top-position rate."
        )
        if mention_rate < 50:
            recommendations.append("Increase brand awareness campaigns")
        if top_rate < 30:
            recommendations.append("Focus on becoming a category leader")
    elif stage == AnalysisStage.MOFU.value:
        primary = f"Brand consideration is {level} with weighted score of {weighted:.1f}."
        if weighted < 60:
            recommendations.append("Improve product differentiation")
        if mention_rate < 40:
            recommendations.append("Enhance thought leadership content")
    elif stage == AnalysisStage.BOFU.value:
        primary = f"Purchase intent is {level} with {weighted:.1f} weighted score."
        if weighted < 70:
            recommendations.append("Optimize conversion funnel")
        if mention_rate < 60:
            recommendations.append("Improve sales enablement materials")
    elif stage == AnalysisStage.EVFU.value:
        primary = f"Customer advocacy is {level} with {weighted:.1f} weighted score."
        if weighted < 70:
            recommendations.append("Focus on customer success initiatives")
        if mention_rate < 50:
            recommendations.append("Implement referral programs")
    else:
        primary = f"Brand performance is {level} with {weighted:.1f} weighted score."

    return {"primary_insight": primary, "recommendations": recommendations, "performance_level": level}
