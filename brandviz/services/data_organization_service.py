"""
Servicio de organización de datos: persiste los análisis y arma métricas de dashboard
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId

from ..domain.enums import AIModel, AnalysisStage, TriggerType
from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, round2, ensure_utc, safe_objectid
from ..utils.validation import validate_analysis_result, log_validation_warnings
from .prompt_service import PromptService


def _clamp(value: Any, low: float, high: float) -> float:
    if not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    return min(max(value, low), high)


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0


def prompt_performance_level(weighted_score: float, mention_position: int) -> str:
    if weighted_score >= 80 and mention_position == 1:
        return "excellent"
    if weighted_score >= 60 and mention_position == 2:
        return "good"
    if weighted_score >= 40 and mention_position == 3:
        return "fair"
    return "poor"


def build_analysis_document(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Documento MultiPromptAnalysis listo para insertar a partir de los datos organizados.
    Acota puntajes a 0-100, la posición a 0-5 y tiempos a >= 0.
    """
    sentiment = data["sentiment_analysis"]
    metadata = data["metadata"]
    confidence = _clamp(sentiment.get("confidence"), 0, 100)
    distribution = {
        key: _clamp((sentiment.get("distribution") or {}).get(key), 0, 100)
        for key in ("positive", "neutral", "negative", "strongly_positive")
    }
    total_prompts = metadata["total_prompts"]
    success_rate = (
        _clamp(metadata["successful_prompts"] / total_prompts * 100, 0, 100) if total_prompts > 0 else 0
    )
    aggregated = {"overall": sentiment.get("overall", "neutral"), "confidence": confidence, "distribution": distribution}

    prompt_results = []
    for result in data["prompt_results"]:
        scoring = result["scoring_result"]
        prompt_results.append({
            "prompt_id": result["prompt_id"],
            "prompt_text": result["prompt_text"],
            "score": _clamp(scoring["raw_score"], 0, 100),
            "weighted_score": _clamp(scoring["position_weighted_score"], 0, 100),
            "mention_position": int(_clamp(scoring.get("mention_position") or 0, 0, 5)),
            "response": result.get("raw_response") or "No response",
            "response_time": _clamp(result.get("processing_time"), 0, float("inf")),
            # Cada prompt hereda el sentimiento agregado del análisis
            "sentiment": {**aggregated, "distribution": dict(distribution)},
            "status": result["status"],
        })

    now = utcnow()
    return {
        "brand_id": ObjectId(data["brand_id"]),
        "model": data["model"],
        "stage": data["stage"],
        "overall_score": _clamp(data["overall_score"], 0, 100),
        "weighted_score": _clamp(data["weighted_score"], 0, 100),
        "total_response_time": _clamp(metadata.get("total_processing_time"), 0, float("inf")),
        "success_rate": success_rate,
        "aggregated_sentiment": aggregated,
        "prompt_results": prompt_results,
        "metadata": {
            "user_id": ObjectId(metadata["user_id"]),
            "trigger_type": metadata["trigger_type"],
            "version": metadata["version"],
            "total_prompts": max(total_prompts, 0),
            "successful_prompts": max(metadata["successful_prompts"], 0),
        },
        "status": "error" if any(r["status"] == "error" for r in data["prompt_results"]) else "success",
        "created_at": now,
        "updated_at": now,
    }


def calculate_model_performance(docs: List[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    performance = {}
    for model in AIModel.values():
        model_docs = [d for d in docs if d["model"] == model]
        if not model_docs:
            performance[model] = {"score": 0, "analyses": 0, "reliability": 0}
            continue
        performance[model] = {
            "score": round2(_average([d["weighted_score"] for d in model_docs])),
            "analyses": len(model_docs),
            "reliability": round2(_average([d["success_rate"] for d in model_docs])),
        }
    return performance


def stage_trend(current: float, previous: Optional[float]) -> Dict[str, Any]:
    """Tendencia contra el período anterior; sin datos previos se compara consigo mismo"""
    previous = current if previous is None else previous
    change = (current - previous) / previous * 100 if previous > 0 else 0
    trend = "up" if change > 5 else "down" if change < -5 else "neutral"
    return {"score": round2(current), "trend": trend, "change": round2(abs(change))}


def generate_time_series(docs: List[Dict[str, Any]], start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Una fila por día del rango con promedios y tasa de mención"""
    series = []
    day = timedelta(days=1)
    cursor = start
    while cursor <= end:
        day_start = cursor.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + day
        day_docs = [d for d in docs if day_start <= ensure_utc(d["created_at"]) < day_end]

        total_prompts = sum((d.get("metadata") or {}).get("total_prompts", 0) for d in day_docs)
        mentioned = sum(
            len([p for p in d.get("prompt_results", []) if p.get("mention_position", 0) > 0]) for d in day_docs
        )
        series.append({
            "date": cursor.strftime("%Y-%m-%d"),
            "overall_score": round2(_average([d["overall_score"] for d in day_docs])),
            "weighted_score": round2(_average([d["weighted_score"] for d in day_docs])),
            "mention_rate": round2(mentioned / total_prompts * 100) if total_prompts > 0 else 0,
            "analyses_count": len(day_docs),
        })
        cursor += day
    return series


def _pick(items: Dict[str, Dict[str, Any]], better) -> str:
    """Reduce por score; en empate queda el último elemento"""
    entries = list(items.items())
    chosen = entries[0]
    for entry in entries[1:]:
        chosen = chosen if better(chosen[1]["score"], entry[1]["score"]) else entry
    return chosen[0]


def generate_dashboard_insights(funnel: Dict[str, Dict[str, Any]], models: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    top_stage = _pick(funnel, lambda a, b: a > b)
    best_model = _pick(models, lambda a, b: a > b)
    lowest_model = _pick(models, lambda a, b: a < b)

    trends = [data["trend"] for data in funnel.values()]
    ups, downs = trends.count("up"), trends.count("down")
    performance_trend = "improving" if ups > downs else "declining" if downs > ups else "stable"

    recommendations = [
        f"Improve {stage} performance (currently {data['score']})"
        for stage, data in funnel.items() if data["score"] < 50
    ]
    recommendations += [
        f"Address declining {stage} trend (-{data['change']}%)"
        for stage, data in funnel.items() if data["trend"] == "down"
    ]
    if models[lowest_model]["score"] < 40:
        recommendations.append(f"Investigate {lowest_model} model performance issues")

    return {
        "top_performing_stage": top_stage,
        "best_model": best_model,
        "key_recommendations": recommendations[:5],
        "performance_trend": performance_trend,
    }


class DataOrganizationService:
    """Persistencia de análisis multi-prompt y métricas agregadas"""

    def __init__(self, db_manager: DatabaseManager, prompt_service: PromptService):
        self.db_manager = db_manager
        self.prompt_service = prompt_service
        self.analyses_collection = db_manager.analyses
        self.brands_collection = db_manager.brands
        self.logger = logging.getLogger(__name__)

    async def process_and_store_analysis(
        self,
        brand_id: str,
        model: str,
        stage: str,
        results: Dict[str, Any],
        user_id: str,
        trigger_type: str = TriggerType.MANUAL.value
    ) -> Dict[str, Any]:
        """Organiza los resultados de AIService.analyze_with_multiple_prompts y los guarda"""
        try:
            prompt_ids = {p.prompt_id for p in self.prompt_service.get_prompts_by_stage(stage)}
            processed = []
            for prompt_result in results["promptResults"]:
                if prompt_result["promptId"] not in prompt_ids:
                    self.logger.warning(f"Prompt not found: {prompt_result['promptId']}")
                    continue
                processed.append({
                    "prompt_id": prompt_result["promptId"],
                    "prompt_text": prompt_result["promptText"],
                    "raw_response": prompt_result["response"],
                    "scoring_result": {
                        "raw_score": prompt_result["score"],
                        "position_weighted_score": prompt_result["weightedScore"],
                        "mention_position": prompt_result["mentionPosition"],
                    },
                    "performance_level": prompt_performance_level(
                        results["weightedScore"], prompt_result["mentionPosition"]
                    ),
                    "processing_time": prompt_result["responseTime"],
                    "status": prompt_result["status"],
                })

            organized = {
                "analysis_id": str(ObjectId()),
                "brand_id": brand_id,
                "model": model,
                "stage": stage,
                "timestamp": utcnow(),
                "overall_score": results["overallScore"],
                "weighted_score": results["weightedScore"],
                "prompt_results": processed,
                "sentiment_analysis": results["aggregatedSentiment"],
                "metadata": {
                    "user_id": user_id,
                    "trigger_type": trigger_type,
                    "version": "2.0",
                    "total_prompts": len(processed),
                    "successful_prompts": len([p for p in processed if p["status"] == "success"]),
                    "total_processing_time": results["totalResponseTime"],
                },
            }
            await self.store_analysis(organized)
            return organized
        except Exception as e:
            self.logger.error(f"Error processing analysis data: {e}")
            raise RuntimeError(f"Failed to process analysis: {e}") from e

    async def store_analysis(self, data: Dict[str, Any]) -> ObjectId:
        """Sanea e inserta el documento del análisis"""
        try:
            document = build_analysis_document(data)
            validation = validate_analysis_result(document)
            if validation["sanitized"] is not None:
                log_validation_warnings(document, validation["sanitized"], f"{data['model']}-{data['stage']}")
                # brand_id, model, stage y timestamps no pasan por el saneamiento
                document = {**document, **validation["sanitized"]}
            if not validation["is_valid"]:
                self.logger.warning(f"Analysis validation errors: {validation['errors']}")

            result = await self.analyses_collection.insert_one(document)
            self.logger.info(f"Successfully stored analysis for {data['model']}-{data['stage']}")
            return result.inserted_id
        except Exception as e:
            self.logger.error(f"Error storing analysis data: {e}")
            raise RuntimeError(f"Failed to store analysis: {e}") from e

    async def generate_dashboard_metrics(
        self,
        brand_id: str,
        start: datetime,
        end: datetime,
        model: Optional[str] = None,
        stage: Optional[str] = None
    ) -> Dict[str, Any]:
        """Métricas de funnel, modelos, serie temporal e insights del rango"""
        brand_oid = safe_objectid(brand_id)
        query: Dict[str, Any] = {
            "brand_id": brand_oid,
            "created_at": {"$gte": start, "$lte": end},
            "status": "success",
        }
        if model:
            query["model"] = model
        if stage:
            query["stage"] = stage

        docs = await self.analyses_collection.find(query).sort("created_at", -1).to_list(length=None)
        if not docs:
            raise LookupError("No analysis data found for the specified criteria")

        duration = end - start
        funnel = {}
        for stage_name in AnalysisStage.values():
            current_docs = [d for d in docs if d["stage"] == stage_name]
            current = _average([d["weighted_score"] for d in current_docs])
            previous_docs = await self.analyses_collection.find({
                "brand_id": brand_oid,
                "stage": stage_name,
                "created_at": {"$gte": start - duration, "$lte": end - duration},
                "status": "success",
            }).to_list(length=None)
            previous = _average([d["weighted_score"] for d in previous_docs]) if previous_docs else None
            funnel[stage_name] = stage_trend(current, previous)

        model_performance = calculate_model_performance(docs)
        brand = await self.brands_collection.find_one({"_id": brand_oid}, {"name": 1})

        return {
            "brand_summary": {
                "brand_id": brand_id,
                "brand_name": (brand or {}).get("name", "Unknown Brand"),
                "last_updated": docs[0].get("created_at") or utcnow(),
                "total_analyses": len(docs),
            },
            "funnel_performance": funnel,
            "model_performance": model_performance,
            "time_series_data": generate_time_series(docs, start, end),
            "insights": generate_dashboard_insights(funnel, model_performance),
        }
