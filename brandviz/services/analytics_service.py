"""
Servicio de analytics de marca: dashboard, matriz modelo x etapa, logs de análisis
y disparo de nuevos análisis con consumo de créditos.
"""

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..domain.enums import AIModel, AnalysisRunStatus, AnalysisStage
from ..domain.exceptions import BrandVizError, ConflictError, ForbiddenError, InsufficientCreditsError, NotFoundError
from ..domain.models import AnalysisStatusModel
from ..infrastructure.database_manager import DatabaseManager
from ..utils.helpers import utcnow, now_ms, ensure_utc, safe_objectid, round_half_up, round2
from .analysis_queue_service import AnalysisJob
from .brand_service import BrandService
from .credit_service import CreditService
from .data_organization_service import DataOrganizationService
from .scoring_service import generate_insights

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}
AVAILABLE_PERIODS = list(PERIOD_DAYS.keys())
SORT_FIELDS = {
    "createdAt": "created_at",
    "overallScore": "overall_score",
    "weightedScore": "weighted_score",
    "successRate": "success_rate",
}
RECENT_ANALYSES = 5
SECONDS_PER_TASK = 2


def period_range(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    end = now or utcnow()
    return end - timedelta(days=PERIOD_DAYS[period]), end


def _avg(docs: List[Dict[str, Any]], key: str) -> float:
    return sum(d.get(key) or 0 for d in docs) / len(docs) if docs else 0


def performance_level(weighted_score: float) -> str:
    if weighted_score >= 80:
        return "excellent"
    if weighted_score >= 60:
        return "good"
    if weighted_score >= 40:
        return "fair"
    return "poor"


def score_trend(current: float, previous: float, threshold: float = 0.5) -> Tuple[str, float]:
    """Tendencia por diferencia absoluta; el porcentaje es 0 si el valor previo es 0"""
    if previous <= 0:
        return "neutral", 0
    difference = current - previous
    percentage = abs(difference / previous * 100)
    if difference > threshold:
        return "up", percentage
    if difference < -threshold:
        return "down", percentage
    return "neutral", percentage


def sentiment_trend(docs: List[Dict[str, Any]]) -> Tuple[str, float]:
    """Compara la mitad más reciente contra la más vieja (docs ordenados del más nuevo al más viejo)"""
    half = len(docs) // 2
    recent, older = docs[:half], docs[half:]
    if not recent or not older:
        return "neutral", 0
    return score_trend(_avg(recent, "weighted_score"), _avg(older, "weighted_score"))


def weekly_data(docs: List[Dict[str, Any]], now: datetime) -> Dict[str, List[Any]]:
    """Últimos 7 días: etiqueta corta del día, score ponderado promedio y cantidad de análisis"""
    data: Dict[str, List[Any]] = {"labels": [], "scores": [], "prompts": []}
    for days_ago in range(6, -1, -1):
        day_start = (now - timedelta(days=days_ago)).replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)
        day_docs = [d for d in docs if day_start <= ensure_utc(d["created_at"]) < day_end]
        data["labels"].append(day_start.strftime("%a"))
        data["scores"].append(round_half_up(_avg(day_docs, "weighted_score")))
        data["prompts"].append(len(day_docs))
    return data


def build_heatmap(docs: List[Dict[str, Any]], previous_docs: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Matriz etapa x modelo con nivel de desempeño y tendencia (±5%) contra el período anterior"""
    stages = AnalysisStage.values()
    models = AIModel.values()
    matrix: List[Dict[str, Any]] = []
    best = {"stage": "", "model": "", "score": 0}
    worst = {"stage": "", "model": "", "score": 100}

    for stage in stages:
        for model in models:
            cell_docs = [d for d in docs if d["stage"] == stage and d["model"] == model]
            if not cell_docs:
                matrix.append({
                    "stage": stage, "model": model, "score": 0, "weightedScore": 0, "analyses": 0,
                    "performance_level": "poor", "trend": "neutral", "confidence": 0,
                })
                continue

            weighted = _avg(cell_docs, "weighted_score")
            previous_cell = [d for d in previous_docs if d["stage"] == stage and d["model"] == model]
            previous = _avg(previous_cell, "weighted_score") if previous_cell else weighted
            change = (weighted - previous) / previous * 100 if previous > 0 else 0

            matrix.append({
                "stage": stage,
                "model": model,
                "score": round2(_avg(cell_docs, "overall_score")),
                "weightedScore": round2(weighted),
                "analyses": len(cell_docs),
                "performance_level": performance_level(weighted),
                "trend": "up" if change > 5 else "down" if change < -5 else "neutral",
                "confidence": round2(_avg(cell_docs, "success_rate")),
            })
            if weighted > best["score"]:
                best = {"stage": stage, "model": model, "score": round2(weighted)}
            if weighted < worst["score"]:
                worst = {"stage": stage, "model": model, "score": round2(weighted)}

    def _mean(items: List[Dict[str, Any]]) -> float:
        return round2(sum(i["weightedScore"] for i in items) / len(items)) if items else 0

    return {
        "stages": stages,
        "models": models,
        "matrix": matrix,
        "summary": {
            "best_combination": best,
            "worst_combination": worst,
            "avg_score_by_stage": {s: _mean([c for c in matrix if c["stage"] == s]) for s in stages},
            "avg_score_by_model": {m: _mean([c for c in matrix if c["model"] == m]) for m in models},
        },
    }


def build_dashboard(brand: Dict[str, Any], docs: List[Dict[str, Any]], previous_docs: List[Dict[str, Any]],
                    filters: Dict[str, str], now: datetime) -> Dict[str, Any]:
    """Respuesta completa del dashboard a partir de los análisis del período (del más nuevo al más viejo)"""
    scores = {}
    for stage in AnalysisStage.values():
        scores[stage] = round_half_up(_avg([d for d in docs if d["stage"] == stage], "weighted_score"))

    distribution = {"positive": 0, "neutral": 0, "negative": 0, "stronglyPositive": 0}
    if docs:
        for source, target in (("positive", "positive"), ("neutral", "neutral"),
                               ("negative", "negative"), ("strongly_positive", "stronglyPositive")):
            total = sum(((d.get("aggregated_sentiment") or {}).get("distribution") or {}).get(source, 0) or 0
                        for d in docs)
            distribution[target] = round_half_up(total / len(docs))
    trend, percentage = sentiment_trend(docs)

    model_performance = {}
    for model in AIModel.values():
        model_docs = [d for d in docs if d["model"] == model]
        model_performance[model] = {
            "score": round_half_up(_avg(model_docs, "weighted_score")),
            "prompts": len(model_docs),
        }

    return {
        "brand": {
            "id": brand["_id"],
            "name": brand.get("name"),
            "category": brand.get("category"),
            "region": brand.get("region"),
        },
        "currentPeriodMetrics": {
            "totalAnalyses": len(docs),
            "totalPrompts": sum((d.get("metadata") or {}).get("total_prompts", 0) for d in docs),
            "avgOverallScore": round2(_avg(docs, "overall_score")),
            "avgWeightedScore": round2(_avg(docs, "weighted_score")),
            "avgResponseTime": round2(_avg(docs, "total_response_time")),
            "successRate": round2(_avg(docs, "success_rate")),
            "lastUpdated": docs[0].get("created_at") if docs else now,
        },
        "scores": scores,
        "sentiment": {"trend": trend, "percentage": round_half_up(percentage), "distribution": distribution},
        "modelPerformance": model_performance,
        "weeklyData": weekly_data(docs, now),
        "heatmapData": build_heatmap(docs, previous_docs),
        "filters": {
            **filters,
            "availablePeriods": AVAILABLE_PERIODS,
            "availableModels": ["all"] + AIModel.values(),
            "availableStages": ["all"] + AnalysisStage.values(),
        },
    }


def build_matrix_cells(groups: List[Dict[str, Any]], previous_scores: Dict[str, float]) -> List[Dict[str, Any]]:
    """Celdas de la matriz a partir del $group por modelo/etapa"""
    cells = []
    for group in groups:
        model, stage = group["_id"]["model"], group["_id"]["stage"]
        current = group.get("avgWeightedScore") or 0
        previous = previous_scores.get(f"{model}-{stage}") or current
        trend, percentage = score_trend(current, previous)
        cells.append({
            "model": model,
            "stage": stage,
            "score": round_half_up(group.get("avgOverallScore") or 0),
            "weightedScore": round_half_up(current),
            "analyses": group.get("totalAnalyses") or 0,
            "prompts": group.get("totalPrompts") or 0,
            "avgResponseTime": round2(group.get("avgResponseTime") or 0),
            "successRate": round_half_up(group.get("avgSuccessRate") or 0),
            "trend": trend,
            "trendPercentage": round_half_up(percentage),
        })
    return cells


def _extremes(items: List[Dict[str, Any]], score_key: str) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Mejor y peor combinación; en empate se conserva el orden original"""
    if not items:
        return None, None
    ordered = sorted(items, key=lambda item: item[score_key], reverse=True)
    best, worst = ordered[0], ordered[-1]
    return (
        {"model": best["model"], "stage": best["stage"], "score": best[score_key]},
        {"model": worst["model"], "stage": worst["stage"], "score": worst[score_key]},
    )


def summarize_matrix(cells: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_analyses = sum(c["analyses"] for c in cells)
    weighted = sum(c["weightedScore"] * c["analyses"] for c in cells) / total_analyses if total_analyses else 0
    best, worst = _extremes(cells, "weightedScore")
    return {
        "totalAnalyses": total_analyses,
        "totalPrompts": sum(c["prompts"] for c in cells),
        "avgWeightedScore": round2(weighted),
        "bestPerforming": best,
        "worstPerforming": worst,
    }


def _camel_distribution(sentiment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    sentiment = sentiment or {}
    distribution = sentiment.get("distribution") or {}
    return {
        "overall": sentiment.get("overall"),
        "confidence": sentiment.get("confidence"),
        "distribution": {
            "positive": distribution.get("positive", 0),
            "neutral": distribution.get("neutral", 0),
            "negative": distribution.get("negative", 0),
            "stronglyPositive": distribution.get("strongly_positive", 0),
        },
    }


def _log_metadata(doc: Dict[str, Any], users: Dict[Any, Dict[str, Any]]) -> Dict[str, Any]:
    metadata = doc.get("metadata") or {}
    user = users.get(metadata.get("user_id")) or {}
    return {
        "userId": str(metadata.get("user_id")) if metadata.get("user_id") else None,
        "userName": user.get("full_name") or "Unknown User",
        "userEmail": user.get("email") or "",
        "triggerType": metadata.get("trigger_type"),
        "version": metadata.get("version"),
        "totalPrompts": metadata.get("total_prompts", 0),
        "successfulPrompts": metadata.get("successful_prompts", 0),
    }


def transform_log(doc: Dict[str, Any], users: Dict[Any, Dict[str, Any]]) -> Dict[str, Any]:
    """Fila del listado de logs"""
    return {
        "id": str(doc["_id"]),
        "timestamp": doc.get("created_at"),
        "model": doc.get("model"),
        "stage": doc.get("stage"),
        "score": doc.get("overall_score"),
        "weightedScore": doc.get("weighted_score"),
        "responseTime": doc.get("total_response_time"),
        "successRate": doc.get("success_rate"),
        "status": doc.get("status"),
        "sentiment": _camel_distribution(doc.get("aggregated_sentiment")),
        "promptResults": [
            {
                "promptId": result.get("prompt_id"),
                "promptText": result.get("prompt_text"),
                "score": result.get("score"),
                "weightedScore": result.get("weighted_score"),
                "mentionPosition": result.get("mention_position"),
                "response": result.get("response"),
                "responseTime": result.get("response_time"),
                "sentiment": _camel_distribution(result.get("sentiment")),
                "status": result.get("status"),
            }
            for result in doc.get("prompt_results") or []
        ],
        "metadata": _log_metadata(doc, users),
    }


def log_insights(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Insights de la etapa recalculados desde los prompts guardados"""
    results = [
        {
            "raw_score": result.get("score"),
            "position_weighted_score": result.get("weighted_score"),
            "mention_position": result.get("mention_position") or 0,
        }
        for result in doc.get("prompt_results") or []
    ]
    return generate_insights(results, doc.get("stage", ""))


def estimate_analysis(validation: Dict[str, Any], models: List[str], current_balance: int) -> Dict[str, Any]:
    stages = len(AnalysisStage.values())
    return {
        "creditsRequired": validation["credits_needed"],
        "currentBalance": current_balance,
        "canAfford": current_balance >= validation["credits_needed"],
        "breakdown": validation["breakdown"],
        "analysis": {
            "models": models,
            "stages": stages,
            "totalCombinations": len(models) * stages,
        },
        "estimatedTime": f"{math.ceil(len(models) * stages * SECONDS_PER_TASK / 60)} minutes",
    }


def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasMore": page < total_pages,
        "hasPrevious": page > 1,
    }


class AnalyticsService:
    """Lecturas agregadas de multi_prompt_analyses y disparo de análisis"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        brand_service: BrandService,
        credit_service: CreditService,
        data_organization_service: DataOrganizationService
    ):
        self.analyses_collection = db_manager.analyses
        self.statuses_collection = db_manager.analysis_statuses
        self.users_collection = db_manager.users
        self.brand_service = brand_service
        self.credit_service = credit_service
        self.data_organization_service = data_organization_service
        self.logger = logging.getLogger(__name__)

    async def _users_by_id(self, docs: List[Dict[str, Any]]) -> Dict[Any, Dict[str, Any]]:
        ids = {(d.get("metadata") or {}).get("user_id") for d in docs}
        ids.discard(None)
        if not ids:
            return {}
        users = await self.users_collection.find(
            {"_id": {"$in": list(ids)}}, {"full_name": 1, "email": 1}
        ).to_list(length=None)
        return {u["_id"]: u for u in users}

    # ------------------------------------------------------------------
    # Dashboard y matriz
    # ------------------------------------------------------------------

    async def get_dashboard(self, brand_id: str, user_id: str, period: str = "7d",
                            model: str = "all", stage: str = "all") -> Dict[str, Any]:
        brand = await self.brand_service.ensure_can_read(brand_id, user_id)
        now = utcnow()
        start, end = period_range(period, now)

        query: Dict[str, Any] = {"brand_id": brand["_id"], "created_at": {"$gte": start, "$lte": end}}
        if model != "all":
            query["model"] = model
        if stage != "all":
            query["stage"] = stage
        docs = await self.analyses_collection.find(query).sort("created_at", -1).to_list(length=None)

        previous_docs = await self.analyses_collection.find({
            "brand_id": brand["_id"],
            "created_at": {"$gte": start - (end - start), "$lte": start},
            "status": "success",
        }).to_list(length=None)

        return build_dashboard(brand, docs, previous_docs, {"period": period, "model": model, "stage": stage}, now)

    async def get_metrics(self, brand_id: str, user_id: str, period: str = "30d",
                          model: Optional[str] = None, stage: Optional[str] = None) -> Dict[str, Any]:
        """
        Métricas de funnel, modelos, serie diaria e insights

        Raises:
            NotFoundError: si no hay análisis en el rango
        """
        await self.brand_service.ensure_can_read(brand_id, user_id)
        start, end = period_range(period)
        try:
            return await self.data_organization_service.generate_dashboard_metrics(brand_id, start, end, model, stage)
        except LookupError as e:
            raise NotFoundError(str(e))

    async def _matrix_groups(self, match: Dict[str, Any]) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": {"model": "$model", "stage": "$stage"},
                "avgOverallScore": {"$avg": "$overall_score"},
                "avgWeightedScore": {"$avg": "$weighted_score"},
                "totalAnalyses": {"$sum": 1},
                "totalPrompts": {"$sum": "$metadata.total_prompts"},
                "avgResponseTime": {"$avg": "$total_response_time"},
                "avgSuccessRate": {"$avg": "$success_rate"},
            }},
            {"$sort": {"_id.model": 1, "_id.stage": 1}},
        ]
        return await self.analyses_collection.aggregate(pipeline).to_list(length=None)

    async def get_matrix(self, brand_id: str, user_id: str, period: str = "7d", model: str = "all",
                         stage: str = "all", page: int = 1, limit: int = 50) -> Tuple[str, Dict[str, Any]]:
        """Devuelve (mensaje, datos); sin datos el mensaje lo indica y la estructura va vacía"""
        brand = await self.brand_service.ensure_can_read(brand_id, user_id)
        start, end = period_range(period)

        match: Dict[str, Any] = {
            "brand_id": brand["_id"],
            "created_at": {"$gte": start, "$lte": end},
            "status": "success",
        }
        if model != "all":
            match["model"] = model
        if stage != "all":
            match["stage"] = stage

        filters = {
            "period": period,
            "model": model,
            "stage": stage,
            "availablePeriods": AVAILABLE_PERIODS,
            "availableModels": ["all"] + AIModel.values(),
            "availableStages": ["all"] + AnalysisStage.values(),
            "dateRange": {"start": start, "end": end},
        }

        groups = await self._matrix_groups(match)
        if not groups:
            return "No multi-prompt analysis data found for the specified criteria", {
                "data": [],
                "pagination": {"page": page, "limit": limit, "total": 0, "hasMore": False},
                "summary": {"totalAnalyses": 0, "totalPrompts": 0, "avgWeightedScore": 0,
                            "bestPerforming": None, "worstPerforming": None},
                "filters": filters,
            }

        shift = timedelta(days=math.ceil((end - start).total_seconds() / 86400))
        previous_match = {**match, "created_at": {"$gte": start - shift, "$lte": end - shift}}
        previous_scores = {
            f"{g['_id']['model']}-{g['_id']['stage']}": g.get("avgWeightedScore")
            for g in await self._matrix_groups(previous_match)
        }
        cells = build_matrix_cells(groups, previous_scores)

        available_models = await self.analyses_collection.distinct("model", {"brand_id": brand["_id"]})
        available_stages = await self.analyses_collection.distinct("stage", {"brand_id": brand["_id"]})
        filters["availableModels"] = ["all"] + available_models
        filters["availableStages"] = ["all"] + available_stages

        return "Matrix data fetched successfully!", {
            "data": cells,
            "pagination": {"page": page, "limit": limit, "total": len(cells), "hasMore": False},
            "summary": summarize_matrix(cells),
            "filters": filters,
        }

    async def get_matrix_summary(self, user_id: str, period: str = "30d") -> Dict[str, Any]:
        """Resumen por marca de todas las marcas accesibles por el usuario"""
        brands = await self.brand_service.list_user_brands(user_id)
        start, end = period_range(period)

        summaries = []
        for brand in brands:
            match = {"brand_id": brand["_id"], "created_at": {"$gte": start, "$lte": end}}
            docs = await self.analyses_collection.find(match).sort("created_at", -1).to_list(length=None)
            if not docs:
                summaries.append({
                    "brandId": str(brand["_id"]),
                    "brandName": brand.get("name"),
                    "totalAnalyses": 0,
                    "avgWeightedScore": 0,
                    "avgOverallScore": 0,
                    "bestPerforming": None,
                    "worstPerforming": None,
                    "totalPrompts": 0,
                    "avgResponseTime": 0,
                    "successRate": 0,
                    "lastAnalysisDate": None,
                    "hasData": False,
                })
                continue

            groups = [
                {"model": g["_id"]["model"], "stage": g["_id"]["stage"], "avg": g.get("avgWeightedScore") or 0}
                for g in await self._matrix_groups(match)
            ]
            best, worst = _extremes(groups, "avg")
            if best:
                best["score"] = round_half_up(best["score"])
                worst["score"] = round_half_up(worst["score"])

            summaries.append({
                "brandId": str(brand["_id"]),
                "brandName": brand.get("name"),
                "totalAnalyses": len(docs),
                "avgWeightedScore": round2(_avg(docs, "weighted_score")),
                "avgOverallScore": round2(_avg(docs, "overall_score")),
                "bestPerforming": best,
                "worstPerforming": worst,
                "totalPrompts": sum((d.get("metadata") or {}).get("total_prompts", 0) for d in docs),
                "avgResponseTime": round_half_up(_avg(docs, "total_response_time")),
                "successRate": round_half_up(_avg(docs, "success_rate")),
                "lastAnalysisDate": docs[0].get("created_at"),
                "hasData": True,
            })

        average = sum(s["avgWeightedScore"] for s in summaries) / len(summaries) if summaries else 0
        return {
            "brands": summaries,
            "summary": {
                "totalBrands": len(summaries),
                "brandsWithData": len([s for s in summaries if s["hasData"]]),
                "avgScoreAcrossAllBrands": round2(average),
                "period": period,
                "dateRange": {"start": start, "end": end},
            },
        }

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def list_logs(self, brand_id: str, user_id: str, page: int = 1, limit: int = 50, model: str = "all",
                        stage: str = "all", status: str = "all", search: str = "",
                        sort_by: str = "createdAt", sort_order: str = "desc") -> Dict[str, Any]:
        brand = await self.brand_service.ensure_can_read(brand_id, user_id)

        query: Dict[str, Any] = {"brand_id": brand["_id"]}
        if model != "all":
            query["model"] = model
        if stage != "all":
            query["stage"] = stage
        if status != "all":
            query["status"] = status
        if search:
            pattern = re.compile(re.escape(search), re.IGNORECASE)
            query["$or"] = [{"prompt_results.prompt_text": pattern}, {"prompt_results.response": pattern}]

        skip = (page - 1) * limit
        direction = 1 if sort_order == "asc" else -1
        docs = await (
            self.analyses_collection.find(query)
            .sort(SORT_FIELDS[sort_by], direction)
            .skip(skip)
            .limit(limit)
            .to_list(length=limit)
        )
        total = await self.analyses_collection.count_documents(query)
        users = await self._users_by_id(docs)

        available_models = await self.analyses_collection.distinct("model", {"brand_id": brand["_id"]})
        available_stages = await self.analyses_collection.distinct("stage", {"brand_id": brand["_id"]})
        available_statuses = await self.analyses_collection.distinct("status", {"brand_id": brand["_id"]})
        pagination = _pagination(page, limit, total)

        return {
            "logs": [transform_log(doc, users) for doc in docs],
            "pagination": pagination,
            "filters": {
                "model": model,
                "stage": stage,
                "status": status,
                "search": search,
                "sortBy": sort_by,
                "sortOrder": sort_order,
                "availableModels": ["all"] + available_models,
                "availableStages": ["all"] + available_stages,
                "availableStatuses": ["all"] + available_statuses,
            },
            "summary": {
                "totalLogs": total,
                "currentPage": page,
                "totalPages": pagination["totalPages"],
                "showingFrom": skip + 1,
                "showingTo": min(skip + limit, total),
            },
        }

    async def get_log(self, brand_id: str, log_id: str, user_id: str) -> Dict[str, Any]:
        brand = await self.brand_service.ensure_can_read(brand_id, user_id)
        doc = await self.analyses_collection.find_one({"_id": safe_objectid(log_id), "brand_id": brand["_id"]})
        if not doc:
            raise NotFoundError("Log entry not found!")

        users = await self._users_by_id([doc])
        return {
            "id": str(doc["_id"]),
            "timestamp": doc.get("created_at"),
            "updatedAt": doc.get("updated_at"),
            "model": doc.get("model"),
            "stage": doc.get("stage"),
            "overallScore": doc.get("overall_score"),
            "weightedScore": doc.get("weighted_score"),
            "totalResponseTime": doc.get("total_response_time"),
            "successRate": doc.get("success_rate"),
            "status": doc.get("status"),
            "aggregatedSentiment": _camel_distribution(doc.get("aggregated_sentiment")),
            "promptResults": doc.get("prompt_results") or [],
            "metadata": _log_metadata(doc, users),
            "brand": {
                "id": str(brand["_id"]),
                "name": brand.get("name"),
                "category": brand.get("category"),
                "region": brand.get("region"),
            },
            "insights": log_insights(doc),
        }

    async def delete_log(self, brand_id: str, log_id: str, user_id: str) -> Dict[str, Any]:
        await self.brand_service.ensure_can_manage(brand_id, user_id, "Insufficient permissions to delete logs!")
        result = await self.analyses_collection.delete_one(
            {"_id": safe_objectid(log_id), "brand_id": safe_objectid(brand_id)}
        )
        if result.deleted_count == 0:
            raise NotFoundError("Log entry not found!")
        self.logger.info(f"Log {log_id} deleted by user {user_id}")
        return {"deletedLogId": log_id, "deletedAt": utcnow(), "deletedBy": user_id}

    # ------------------------------------------------------------------
    # Análisis
    # ------------------------------------------------------------------

    async def estimate(self, user_id: str, models: List[str]) -> Dict[str, Any]:
        validation = self.credit_service.validate_analysis_request(models)
        if not validation["is_valid"]:
            raise BrandVizError("Invalid analysis request!", data=validation["errors"])
        balance = await self.credit_service.get_credit_balance(user_id)
        return estimate_analysis(validation, models, balance)

    async def get_analysis_status(self, brand_id: str, user_id: str) -> Dict[str, Any]:
        brand = await self.brand_service.get_active_brand(brand_id)
        if not brand:
            raise NotFoundError("Brand not found!")
        if await self.brand_service.get_user_role(brand, user_id) is None:
            raise ForbiddenError("Insufficient permissions to view analysis status!")

        running = await self.statuses_collection.find_one(
            {"brand_id": brand["_id"], "status": AnalysisRunStatus.RUNNING.value}
        )
        recent = await (
            self.statuses_collection.find({"brand_id": brand["_id"]})
            .sort("started_at", -1)
            .limit(RECENT_ANALYSES)
            .to_list(length=RECENT_ANALYSES)
        )

        def _summary(doc: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "analysisId": doc.get("analysis_id"),
                "status": doc.get("status"),
                "models": doc.get("models"),
                "stages": doc.get("stages"),
                "startedAt": doc.get("started_at"),
                "progress": doc.get("progress"),
            }

        return {
            "isRunning": running is not None,
            "currentAnalysis": _summary(running) if running else None,
            "recentAnalyses": [
                {**_summary(doc), "completedAt": doc.get("completed_at"), "errorMessage": doc.get("error_message")}
                for doc in recent
            ],
        }

    async def trigger_analysis(self, brand_id: str, user_id: str, models: Optional[List[str]] = None,
                               stages: Optional[List[str]] = None) -> Tuple[AnalysisJob, Dict[str, Any]]:
        """
        Valida permisos y créditos, registra el estado running y descuenta créditos.
        El procesamiento del job queda a cargo del llamador.

        Raises:
            ForbiddenError, ConflictError, InsufficientCreditsError, BrandVizError
        """
        brand = await self.brand_service.ensure_can_read(brand_id, user_id)
        if not await self.brand_service.can_manage(brand, user_id):
            raise ForbiddenError("Insufficient permissions to trigger analysis!")

        running = await self.statuses_collection.find_one(
            {"brand_id": brand["_id"], "status": AnalysisRunStatus.RUNNING.value}
        )
        if running:
            raise ConflictError("Analysis is already running for this brand!", data={
                "currentAnalysisId": running.get("analysis_id"),
                "startedAt": running.get("started_at"),
                "models": running.get("models"),
                "stages": running.get("stages"),
                "progress": running.get("progress"),
            })

        models = models or AIModel.values()
        stages = stages or AnalysisStage.values()
        validation = self.credit_service.validate_analysis_request(models)
        if not validation["is_valid"]:
            raise BrandVizError("Invalid analysis request!", data=validation["errors"])

        credit_check = await self.credit_service.has_enough_credits(user_id, validation["credits_needed"])
        if not credit_check["has_enough"]:
            raise InsufficientCreditsError("Insufficient credits for this analysis!", data={
                "required": validation["credits_needed"],
                "available": credit_check["current_balance"],
                "breakdown": validation["breakdown"],
            })

        analysis_id = f"multi-{brand_id}-{now_ms()}"
        now = utcnow()
        status = AnalysisStatusModel(
            brand_id=brand["_id"],
            user_id=safe_objectid(user_id),
            analysis_id=analysis_id,
            status=AnalysisRunStatus.RUNNING,
            models=models,
            stages=stages,
            started_at=now,
            total_tasks=len(models) * len(stages),
            completed_tasks=0,
            current_task="Initializing analysis...",
            created_at=now,
            updated_at=now,
        )
        await self.statuses_collection.insert_one(status.to_dict())

        description = f"Analysis for brand: {brand.get('name')} ({', '.join(models)} - {', '.join(stages)})"
        try:
            await self.credit_service.deduct_credits(user_id, validation["credits_needed"], analysis_id, description)
        except Exception as e:
            self.logger.error(f"Error deducting credits for {analysis_id}: {e}")
            # Sin créditos descontados el análisis no debe quedar bloqueando la marca
            await self.statuses_collection.update_one(
                {"analysis_id": analysis_id},
                {"$set": {
                    "status": AnalysisRunStatus.FAILED.value,
                    "error_message": "Credit deduction failed",
                    "completed_at": utcnow(),
                    "updated_at": utcnow(),
                }},
            )
            raise BrandVizError("Error processing credits. Please try again.", status_code=500) from e

        self.logger.info(f"Triggering background analysis {analysis_id} for brand {brand.get('name')}")
        job = AnalysisJob(brand_id=brand_id, user_id=user_id, analysis_id=analysis_id, models=models, stages=stages)
        return job, {
            "analysisId": analysis_id,
            "status": "started",
            "estimatedCompletionTime": "5-10 minutes",
            "notificationEmail": "You will receive an email when analysis is complete",
            "creditsUsed": validation["credits_needed"],
            "modelsAnalyzed": models,
            "stagesAnalyzed": stages,
        }
