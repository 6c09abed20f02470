"""
Tests para services.analytics_service
"""

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId

from brandviz.domain.exceptions import (
    BrandVizError,
    ConflictError,
    ForbiddenError,
    InsufficientCreditsError,
    NotFoundError,
)
from brandviz.services.analytics_service import (
    AnalyticsService,
    build_dashboard,
    build_heatmap,
    build_matrix_cells,
    estimate_analysis,
    log_insights,
    period_range,
    score_trend,
    sentiment_trend,
    summarize_matrix,
    transform_log,
    weekly_data,
)
from brandviz.services.credit_service import validate_analysis_request
from tests.mongo_mocks import make_cursor, make_db_manager

NOW = datetime(2024, 1, 7, 15, 0, tzinfo=timezone.utc)


def analysis(model, stage, weighted, overall=50, created_at=NOW, **extra):
    return {
        "_id": ObjectId(),
        "model": model,
        "stage": stage,
        "weighted_score": weighted,
        "overall_score": overall,
        "success_rate": 100,
        "total_response_time": 1000,
        "created_at": created_at,
        "metadata": {"total_prompts": 3},
        **extra,
    }


class TestTrends(unittest.TestCase):

    def test_period_range(self):
        start, end = period_range("30d", NOW)
        assert end == NOW
        assert end - start == timedelta(days=30)

    def test_score_trend(self):
        assert score_trend(60, 50) == ("up", 20)
        assert score_trend(40, 50) == ("down", 20)
        assert score_trend(50.3, 50)[0] == "neutral"
        assert score_trend(50, 0) == ("neutral", 0)

    def test_sentiment_trend(self):
        docs = [analysis("ChatGPT", "TOFU", w) for w in (80, 70, 50, 40)]
        trend, percentage = sentiment_trend(docs)
        assert trend == "up"
        assert round(percentage, 2) == 66.67
        assert sentiment_trend(docs[:1]) == ("neutral", 0)

    def test_weekly_data(self):
        docs = [
            analysis("ChatGPT", "TOFU", 80, created_at=datetime(2024, 1, 7, 10)),
            analysis("Claude", "TOFU", 41, created_at=datetime(2024, 1, 1, 9, tzinfo=timezone.utc)),
        ]
        data = weekly_data(docs, NOW)
        assert data["labels"][0] == "Mon"
        assert data["labels"][-1] == "Sun"
        assert data["scores"] == [41, 0, 0, 0, 0, 0, 80]
        assert data["prompts"] == [1, 0, 0, 0, 0, 0, 1]


class TestHeatmap(unittest.TestCase):
    """Matriz etapa x modelo"""

    def test_build_heatmap(self):
        docs = [analysis("ChatGPT", "TOFU", 80), analysis("Claude", "TOFU", 30)]
        previous = [analysis("ChatGPT", "TOFU", 60)]
        heatmap = build_heatmap(docs, previous)

        assert len(heatmap["matrix"]) == 12
        chatgpt = heatmap["matrix"][0]
        assert chatgpt["model"] == "ChatGPT" and chatgpt["stage"] == "TOFU"
        assert chatgpt["trend"] == "up"
        assert chatgpt["performance_level"] == "excellent"
        assert heatmap["matrix"][1]["trend"] == "neutral"
        assert heatmap["matrix"][2]["analyses"] == 0

        summary = heatmap["summary"]
        assert summary["best_combination"] == {"stage": "TOFU", "model": "ChatGPT", "score": 80}
        assert summary["worst_combination"] == {"stage": "TOFU", "model": "Claude", "score": 30}
        assert summary["avg_score_by_stage"]["TOFU"] == 36.67
        assert summary["avg_score_by_model"]["ChatGPT"] == 20

    def test_dashboard(self):
        brand = {"_id": ObjectId(), "name": "Acme", "category": "CRM", "region": "AR"}
        docs = [
            analysis("ChatGPT", "TOFU", 81, aggregated_sentiment={"distribution": {"positive": 60, "neutral": 40}}),
            analysis("Gemini", "MOFU", 40, aggregated_sentiment={"distribution": {"positive": 20, "negative": 80}}),
        ]
        dashboard = build_dashboard(brand, docs, [], {"period": "7d", "model": "all", "stage": "all"}, NOW)

        assert dashboard["brand"]["name"] == "Acme"
        assert dashboard["scores"] == {"TOFU": 81, "MOFU": 40, "BOFU": 0, "EVFU": 0}
        assert dashboard["sentiment"]["distribution"] == {
            "positive": 40, "neutral": 20, "negative": 40, "stronglyPositive": 0
        }
        assert dashboard["sentiment"]["trend"] == "up"
        assert dashboard["currentPeriodMetrics"]["totalPrompts"] == 6
        assert dashboard["currentPeriodMetrics"]["avgWeightedScore"] == 60.5
        assert dashboard["modelPerformance"]["Claude"] == {"score": 0, "prompts": 0}
        assert dashboard["filters"]["availableModels"] == ["all", "ChatGPT", "Claude", "Gemini"]

    def test_empty_dashboard(self):
        dashboard = build_dashboard({"_id": ObjectId()}, [], [], {"period": "7d"}, NOW)
        assert dashboard["currentPeriodMetrics"]["lastUpdated"] == NOW
        assert dashboard["sentiment"] == {
            "trend": "neutral", "percentage": 0,
            "distribution": {"positive": 0, "neutral": 0, "negative": 0, "stronglyPositive": 0},
        }


class TestMatrix(unittest.TestCase):

    def setUp(self):
        self.groups = [
            {"_id": {"model": "ChatGPT", "stage": "TOFU"}, "avgOverallScore": 70.4, "avgWeightedScore": 60.5,
             "totalAnalyses": 2, "totalPrompts": 6, "avgResponseTime": 1234.567, "avgSuccessRate": 99.5},
            {"_id": {"model": "Claude", "stage": "BOFU"}, "avgOverallScore": 45, "avgWeightedScore": 40,
             "totalAnalyses": 1, "totalPrompts": 3, "avgResponseTime": 900, "avgSuccessRate": 100},
        ]

    def test_cells(self):
        cells = build_matrix_cells(self.groups, {"ChatGPT-TOFU": 50})
        assert cells[0] == {
            "model": "ChatGPT", "stage": "TOFU", "score": 70, "weightedScore": 61, "analyses": 2, "prompts": 6,
            "avgResponseTime": 1234.57, "successRate": 100, "trend": "up", "trendPercentage": 21,
        }
        # sin período anterior se compara contra sí mismo
        assert cells[1]["trend"] == "neutral"

    def test_summary(self):
        summary = summarize_matrix(build_matrix_cells(self.groups, {}))
        assert summary["totalAnalyses"] == 3
        assert summary["totalPrompts"] == 9
        assert summary["avgWeightedScore"] == 54
        assert summary["bestPerforming"] == {"model": "ChatGPT", "stage": "TOFU", "score": 61}
        assert summary["worstPerforming"] == {"model": "Claude", "stage": "BOFU", "score": 40}

    def test_empty_summary(self):
        assert summarize_matrix([])["bestPerforming"] is None


class TestLogs(unittest.TestCase):

    def test_transform_log(self):
        user_id = ObjectId()
        doc = analysis(
            "Claude", "TOFU", 55, status="success",
            metadata={"user_id": user_id, "trigger_type": "manual", "total_prompts": 2, "successful_prompts": 2},
            aggregated_sentiment={"overall": "positive", "confidence": 90,
                                  "distribution": {"positive": 90, "strongly_positive": 10}},
            prompt_results=[{"prompt_id": "TOFU_01", "score": 100, "weighted_score": 100, "mention_position": 1}],
        )
        log = transform_log(doc, {user_id: {"full_name": "Ana", "email": "ana@test.com"}})

        assert log["id"] == str(doc["_id"])
        assert log["sentiment"]["distribution"]["stronglyPositive"] == 10
        assert log["promptResults"][0]["promptId"] == "TOFU_01"
        assert log["metadata"]["userName"] == "Ana"
        assert transform_log(doc, {})["metadata"]["userName"] == "Unknown User"

    def test_log_insights(self):
        doc = {"stage": "TOFU", "prompt_results": [
            {"score": 100, "weighted_score": 100, "mention_position": 1},
            {"score": 0, "weighted_score": 0, "mention_position": 0},
        ]}
        insights = log_insights(doc)
        assert set(insights) == {"primary_insight", "recommendations", "performance_level"}
        assert "50.0% mention rate" in insights["primary_insight"]

    def test_estimate(self):
        estimate = estimate_analysis(validate_analysis_request(["ChatGPT", "Claude"]), ["ChatGPT", "Claude"], 15)
        assert estimate["creditsRequired"] == 20
        assert estimate["canAfford"] is False
        assert estimate["analysis"]["totalCombinations"] == 8
        assert estimate["estimatedTime"] == "1 minutes"


class TestAnalyticsService(unittest.IsolatedAsyncioTestCase):
    """Lecturas y disparo de análisis con servicios simulados"""

    def setUp(self):
        self.db = make_db_manager()
        self.user_id = str(ObjectId())
        self.brand = {"_id": ObjectId(), "name": "Acme", "owner_id": ObjectId(self.user_id)}
        self.brand_id = str(self.brand["_id"])

        self.brand_service = MagicMock()
        self.brand_service.ensure_can_read = AsyncMock(return_value=self.brand)
        self.brand_service.ensure_can_manage = AsyncMock(return_value=self.brand)
        self.brand_service.get_active_brand = AsyncMock(return_value=self.brand)
        self.brand_service.get_user_role = AsyncMock(return_value="owner")
        self.brand_service.can_manage = AsyncMock(return_value=True)

        self.credit_service = MagicMock()
        self.credit_service.validate_analysis_request = MagicMock(side_effect=validate_analysis_request)
        self.credit_service.has_enough_credits = AsyncMock(return_value={"has_enough": True, "current_balance": 100})
        self.credit_service.deduct_credits = AsyncMock(return_value={"success": True, "new_balance": 70})
        self.credit_service.get_credit_balance = AsyncMock(return_value=100)

        self.data_service = MagicMock()
        self.service = AnalyticsService(self.db, self.brand_service, self.credit_service, self.data_service)

    async def test_trigger_analysis(self):
        job, data = await self.service.trigger_analysis(self.brand_id, self.user_id)

        assert job.models == ["ChatGPT", "Claude", "Gemini"]
        assert job.stages == ["TOFU", "MOFU", "BOFU", "EVFU"]
        assert data["creditsUsed"] == 30
        assert data["analysisId"].startswith(f"multi-{self.brand_id}-")
        status = self.db.analysis_statuses.insert_one.call_args[0][0]
        assert status["status"] == "running"
        assert status["progress"] == {"total_tasks": 12, "completed_tasks": 0, "current_task": "Initializing analysis..."}
        self.credit_service.deduct_credits.assert_awaited_once()
        assert self.credit_service.deduct_credits.call_args[0][1] == 30

    async def test_trigger_requires_manager(self):
        self.brand_service.can_manage = AsyncMock(return_value=False)
        with self.assertRaises(ForbiddenError):
            await self.service.trigger_analysis(self.brand_id, self.user_id)

    async def test_trigger_while_running(self):
        self.db.analysis_statuses.find_one = AsyncMock(return_value={"analysis_id": "multi-1", "status": "running"})
        with self.assertRaises(ConflictError) as ctx:
            await self.service.trigger_analysis(self.brand_id, self.user_id, ["ChatGPT"], ["TOFU"])
        assert ctx.exception.data["currentAnalysisId"] == "multi-1"

    async def test_trigger_invalid_model(self):
        with self.assertRaises(BrandVizError) as ctx:
            await self.service.trigger_analysis(self.brand_id, self.user_id, ["Llama"])
        assert ctx.exception.data == ["Invalid models: Llama"]

    async def test_trigger_without_credits(self):
        self.credit_service.has_enough_credits = AsyncMock(return_value={"has_enough": False, "current_balance": 5})
        with self.assertRaises(InsufficientCreditsError) as ctx:
            await self.service.trigger_analysis(self.brand_id, self.user_id, ["ChatGPT"])
        assert ctx.exception.status_code == 402
        assert ctx.exception.data["required"] == 10
        self.db.analysis_statuses.insert_one.assert_not_called()

    async def test_trigger_credit_deduction_failure(self):
        self.credit_service.deduct_credits = AsyncMock(side_effect=Exception("write conflict"))
        with self.assertRaises(BrandVizError) as ctx:
            await self.service.trigger_analysis(self.brand_id, self.user_id, ["ChatGPT"])
        assert ctx.exception.status_code == 500
        fields = self.db.analysis_statuses.update_one.call_args[0][1]["$set"]
        assert fields["status"] == "failed"

    async def test_metrics_without_data(self):
        self.data_service.generate_dashboard_metrics = AsyncMock(side_effect=LookupError("No analysis data found"))
        with self.assertRaises(NotFoundError):
            await self.service.get_metrics(self.brand_id, self.user_id)

    async def test_dashboard_queries_period(self):
        docs = [analysis("ChatGPT", "TOFU", 70)]
        self.db.analyses.find = MagicMock(side_effect=[make_cursor(docs), make_cursor()])

        dashboard = await self.service.get_dashboard(self.brand_id, self.user_id, period="7d", model="ChatGPT")
        query = self.db.analyses.find.call_args_list[0][0][0]
        assert query["model"] == "ChatGPT"
        assert "stage" not in query
        assert dashboard["currentPeriodMetrics"]["totalAnalyses"] == 1

    async def test_matrix_without_data(self):
        message, data = await self.service.get_matrix(self.brand_id, self.user_id)
        assert message == "No multi-prompt analysis data found for the specified criteria"
        assert data["data"] == []
        assert data["summary"]["bestPerforming"] is None

    async def test_matrix(self):
        groups = [{"_id": {"model": "ChatGPT", "stage": "TOFU"}, "avgOverallScore": 60, "avgWeightedScore": 60,
                   "totalAnalyses": 1, "totalPrompts": 3, "avgResponseTime": 100, "avgSuccessRate": 100}]
        self.db.analyses.aggregate = MagicMock(side_effect=[make_cursor(groups), make_cursor()])
        self.db.analyses.distinct = AsyncMock(side_effect=[["ChatGPT"], ["TOFU"]])

        message, data = await self.service.get_matrix(self.brand_id, self.user_id)
        assert message == "Matrix data fetched successfully!"
        assert data["data"][0]["weightedScore"] == 60
        assert data["filters"]["availableModels"] == ["all", "ChatGPT"]
        assert data["filters"]["availableStages"] == ["all", "TOFU"]

    async def test_matrix_summary(self):
        other = {"_id": ObjectId(), "name": "Globex"}
        self.brand_service.list_user_brands = AsyncMock(return_value=[self.brand, other])
        self.db.analyses.find = MagicMock(side_effect=[
            make_cursor([analysis("ChatGPT", "TOFU", 70), analysis("Claude", "TOFU", 50)]),
            make_cursor(),
        ])
        self.db.analyses.aggregate = MagicMock(return_value=make_cursor([
            {"_id": {"model": "ChatGPT", "stage": "TOFU"}, "avgWeightedScore": 70.4},
            {"_id": {"model": "Claude", "stage": "TOFU"}, "avgWeightedScore": 49.5},
        ]))

        result = await self.service.get_matrix_summary(self.user_id)
        acme, globex = result["brands"]
        assert acme["avgWeightedScore"] == 60
        assert acme["bestPerforming"] == {"model": "ChatGPT", "stage": "TOFU", "score": 70}
        assert acme["worstPerforming"]["score"] == 50
        assert globex["hasData"] is False
        assert result["summary"]["brandsWithData"] == 1
        assert result["summary"]["avgScoreAcrossAllBrands"] == 30

    async def test_list_logs(self):
        user_oid = ObjectId()
        cursor = make_cursor([analysis("ChatGPT", "TOFU", 70, metadata={"user_id": user_oid})])
        self.db.analyses.find = MagicMock(return_value=cursor)
        self.db.analyses.count_documents = AsyncMock(return_value=45)
        self.db.users.find = MagicMock(return_value=make_cursor([{"_id": user_oid, "full_name": "Ana"}]))

        result = await self.service.list_logs(self.brand_id, self.user_id, page=2, limit=20,
                                              search="crm+", sort_by="weightedScore", sort_order="asc")

        query = self.db.analyses.find.call_args[0][0]
        assert query["$or"][0]["prompt_results.prompt_text"].pattern == r"crm\+"
        cursor.sort.assert_called_with("weighted_score", 1)
        cursor.skip.assert_called_with(20)
        assert result["pagination"] == {"page": 2, "limit": 20, "total": 45, "totalPages": 3,
                                        "hasMore": True, "hasPrevious": True}
        assert result["summary"]["showingFrom"] == 21
        assert result["summary"]["showingTo"] == 40
        assert result["logs"][0]["metadata"]["userName"] == "Ana"

    async def test_get_log(self):
        doc = analysis("ChatGPT", "BOFU", 70, prompt_results=[{"score": 80, "weighted_score": 80, "mention_position": 1}])
        self.db.analyses.find_one = AsyncMock(return_value=doc)
        log = await self.service.get_log(self.brand_id, str(doc["_id"]), self.user_id)
        assert log["brand"]["name"] == "Acme"
        assert log["insights"]["performance_level"]

        self.db.analyses.find_one = AsyncMock(return_value=None)
        with self.assertRaises(NotFoundError):
            await self.service.get_log(self.brand_id, str(ObjectId()), self.user_id)

    async def test_delete_log(self):
        log_id = str(ObjectId())
        result = await self.service.delete_log(self.brand_id, log_id, self.user_id)
        assert result["deletedLogId"] == log_id

        self.db.analyses.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        with self.assertRaises(NotFoundError):
            await self.service.delete_log(self.brand_id, log_id, self.user_id)

    async def test_analysis_status(self):
        running = {"analysis_id": "multi-1", "status": "running", "models": ["ChatGPT"], "stages": ["TOFU"]}
        self.db.analysis_statuses.find_one = AsyncMock(return_value=running)
        self.db.analysis_statuses.find = MagicMock(return_value=make_cursor([running]))

        status = await self.service.get_analysis_status(self.brand_id, self.user_id)
        assert status["isRunning"] is True
        assert status["currentAnalysis"]["analysisId"] == "multi-1"
        assert len(status["recentAnalyses"]) == 1

        self.brand_service.get_user_role = AsyncMock(return_value=None)
        with self.assertRaises(ForbiddenError):
            await self.service.get_analysis_status(self.brand_id, self.user_id)

    async def test_estimate(self):
        estimate = await self.service.estimate(self.user_id, ["Gemini"])
        assert estimate["currentBalance"] == 100
        assert estimate["canAfford"] is True


if __name__ == '__main__':
    unittest.main()
