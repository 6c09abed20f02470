"""
Saneamiento de resultados de análisis antes de persistirlos
"""

import logging
import math
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SENTIMENTS = ("positive", "neutral", "negative")
STATUSES = ("success", "error", "warning")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def sanitize_score(value: Any) -> float:
    """Clampea a 0-100; valores no numéricos o NaN valen 0"""
    if not _is_number(value):
        return 0
    return min(max(value, 0), 100)


def sanitize_confidence(value: Any) -> float:
    if not _is_number(value):
        return 50
    return min(max(value, 0), 100)


def sanitize_mention_position(value: Any) -> int:
    if not _is_number(value):
        return 0
    return min(max(math.floor(value), 0), 5)


def sanitize_response_time(value: Any) -> float:
    if not _is_number(value):
        return 0
    return max(value, 0)


def sanitize_sentiment_distribution(distribution: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Una distribución toda en cero se considera 100% neutral"""
    distribution = distribution or {}
    cleaned = {
        "positive": sanitize_score(distribution.get("positive")),
        "neutral": sanitize_score(distribution.get("neutral")),
        "negative": sanitize_score(distribution.get("negative")),
        "strongly_positive": sanitize_score(distribution.get("strongly_positive")),
    }
    if all(value == 0 for value in cleaned.values()):
        return {"positive": 0, "neutral": 100, "negative": 0, "strongly_positive": 0}
    return cleaned


def sanitize_sentiment(value: Any) -> str:
    if isinstance(value, str) and value.lower() in SENTIMENTS:
        return value.lower()
    return "neutral"


def sanitize_status(value: Any) -> str:
    if isinstance(value, str) and value.lower() in STATUSES:
        return value.lower()
    return "success"


def _sanitize_sentiment_block(sentiment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    sentiment = sentiment or {}
    return {
        "overall": sanitize_sentiment(sentiment.get("overall")),
        "confidence": sanitize_confidence(sentiment.get("confidence")),
        "distribution": sanitize_sentiment_distribution(sentiment.get("distribution")),
    }


def validate_analysis_result(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Valida y sanea un documento de análisis.

    Returns:
        {"is_valid": bool, "errors": [...], "sanitized": dict | None}
    """
    errors: List[str] = []
    try:
        metadata = data.get("metadata") or {}
        sanitized = {
            "overall_score": sanitize_score(data.get("overall_score")),
            "weighted_score": sanitize_score(data.get("weighted_score")),
            "total_response_time": sanitize_response_time(data.get("total_response_time")),
            "success_rate": sanitize_score(data.get("success_rate")),
            "aggregated_sentiment": _sanitize_sentiment_block(data.get("aggregated_sentiment")),
            "prompt_results": [
                {
                    "prompt_id": result.get("prompt_id") or "unknown",
                    "prompt_text": result.get("prompt_text") or "No prompt text",
                    "score": sanitize_score(result.get("score")),
                    "weighted_score": sanitize_score(result.get("weighted_score")),
                    "mention_position": sanitize_mention_position(result.get("mention_position")),
                    "response": result.get("response") or "No response",
                    "response_time": sanitize_response_time(result.get("response_time")),
                    "sentiment": _sanitize_sentiment_block(result.get("sentiment")),
                    "status": sanitize_status(result.get("status")),
                }
                for result in (data.get("prompt_results") or [])
            ],
            "metadata": {
                "user_id": metadata.get("user_id"),
                "trigger_type": metadata.get("trigger_type") or "manual",
                "version": metadata.get("version") or "1.0",
                "total_prompts": max(metadata.get("total_prompts") or 0, 0),
                "successful_prompts": max(metadata.get("successful_prompts") or 0, 0),
            },
            "status": sanitize_status(data.get("status")),
        }
    except (AttributeError, TypeError) as e:
        errors.append(f"Validation error: {e}")
        return {"is_valid": False, "errors": errors, "sanitized": None}

    if not sanitized["metadata"]["user_id"]:
        errors.append("Missing user_id in metadata")
    if not sanitized["prompt_results"]:
        errors.append("No prompt results provided")

    return {"is_valid": not errors, "errors": errors, "sanitized": sanitized}


def log_validation_warnings(original: Dict[str, Any], sanitized: Dict[str, Any], context: str = "") -> List[str]:
    """Loguea los campos que el saneamiento modificó de forma apreciable"""
    warnings = []

    if abs((original.get("overall_score") or 0) - sanitized["overall_score"]) > 0.1:
        warnings.append(
            f"Overall score changed from {original.get('overall_score')} to {sanitized['overall_score']}"
        )

    if abs((original.get("weighted_score") or 0) - sanitized["weighted_score"]) > 0.1:
        warnings.append(
            f"Weighted score changed from {original.get('weighted_score')} to {sanitized['weighted_score']}"
        )

    original_confidence = (original.get("aggregated_sentiment") or {}).get("confidence")
    if abs((original_confidence or 50) - sanitized["aggregated_sentiment"]["confidence"]) > 1:
        warnings.append(
            f"Confidence changed from {original_confidence} to {sanitized['aggregated_sentiment']['confidence']}"
        )

    if warnings:
        suffix = f" for {context}" if context else ""
        logger.warning(f"Data validation warnings{suffix}: {warnings}")
    return warnings
