"""
Tests para services.data_organization_service
"""

import os
import unittest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId

import brandviz
from brandviz.services.data_organization_service import (
    DataOrganizationService,
    build_analysis_document,
    calculate_model_performance,
    generate_dashboard_insights,
    generate_time_series,
    prompt_performance_level,
    stage_trend,
)
from brandviz.services.prompt_service import PromptService
from tests.mongo_mocks import make_cursor, make_db_manager

CSV_PATH = os.path.join(os.path.dirname(brandviz.__file__), "data", "mvp_prompts_with_funnel_scoring.csv")


def organized_data(statuses=("success", "success", "error")):
    prompt_results = [
        {
            "prompt_id": f"TOFU_0{i + 1}",
            "prompt_text": "texto",
            "raw_response": "respuesta",
            "scoring_result": {"raw_score": 120 if i == 0 else 50, "position_weighted_score": 40,
                               "mention_position": 9 if i == 0 else 2},
            "processing_time": -1 if i == 0 else 100,
            "status": status,
        }
        for i, status in enumerate(statuses)
    ]
    return {
        "brand_id": str(ObjectId()),
        "model": "ChatGPT",
        "stage": "TOFU",
        "overall_score": 60,
        "weighted_score": 40,
        "prompt_results": prompt_results,
        "sentiment_analysis": {"overall": "positive", "confidence": 8000,
                               "distribution": {"positive": 80, "neutral": 20}},
        "metadata": {
            "user_id": str(ObjectId()),
            "trigger_type": "manual",
            "version": "2.0",
            "total_prompts": len(prompt_results),
            "successful_prompts": len([s for s in statuses if s == "success"]),
            "total_processing_time": 200,
        },
    }


def analysis_doc(model, stage, weighted, created_at, success_rate=100, overall=50):
    return {
        "model": model,
        "stage": stage,
        "weighted_score": weighted,
        "overall_score": overall,
        "success_rate": success_rate,
        "created_at": created_at,
        "metadata": {"total_prompts": 2},
        "prompt_results": [{"mention_position": 1}, {"mention_position": 0}],
    }


class TestAnalysisDocument(unittest.TestCase):
    """Armado del documento a persistir"""

    def test_values_are_clamped(self):
        document = build_analysis_document(organized_data())

        first = document["prompt_results"][0]
        assert first["score"] == 100
        assert first["mention_position"] == 5
        assert first["response_time"] == 0
        assert document["aggregated_sentiment"]["confidence"] == 100
        assert document["aggregated_sentiment"]["distribution"]["negative"] == 0
        assert isinstance(document["brand_id"], ObjectId)
        assert isinstance(document["metadata"]["user_id"], ObjectId)

    def test_success_rate_and_status(self):
        document = build_analysis_document(organized_data())
        assert round(document["success_rate"], 2) == 66.67
        assert document["status"] == "error"

        document = build_analysis_document(organized_data(("success", "success")))
        assert document["success_rate"] == 100
        assert document["status"] == "success"

    def test_prompts_share_aggregated_sentiment(self):
        document = build_analysis_document(organized_data())
        assert document["prompt_results"][1]["sentiment"]["overall"] == "positive"

    def test_prompt_performance_level(self):
        assert prompt_performance_level(85, 1) == "excellent"
        assert prompt_performance_level(85, 2) == "good"
        assert prompt_performance_level(45, 3) == "fair"
        assert prompt_performance_level(45, 1) == "poor"


class TestDashboardMetrics(unittest.TestCase):
    """Tendencias, rendimiento por modelo y series"""

    def test_stage_trend(self):
        assert stage_trend(60, None) == {"score": 60, "trend": "neutral", "change": 0}
        assert stage_trend(60, 50) == {"score": 60, "trend": "up", "change": 20}
        assert stage_trend(40, 50) == {"score": 40, "trend": "down", "change": 20}
        assert stage_trend(40, 0)["trend"] == "neutral"

    def test_model_performance(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        docs = [
            analysis_doc("ChatGPT", "TOFU", 80, now),
            analysis_doc("ChatGPT", "MOFU", 61, now, success_rate=50),
            analysis_doc("Claude", "TOFU", 40, now),
        ]
        performance = calculate_model_performance(docs)
        assert performance["ChatGPT"] == {"score": 70.5, "analyses": 2, "reliability": 75}
        assert performance["Gemini"] == {"score": 0, "analyses": 0, "reliability": 0}

    def test_time_series_has_a_row_per_day(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 3, tzinfo=timezone.utc)
        docs = [
            analysis_doc("ChatGPT", "TOFU", 80, datetime(2024, 1, 2, 10)),
            analysis_doc("Claude", "TOFU", 60, datetime(2024, 1, 2, 15)),
        ]
        series = generate_time_series(docs, start, end)

        assert [row["date"] for row in series] == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert series[0]["analyses_count"] == 0
        assert series[1]["weighted_score"] == 70
        assert series[1]["mention_rate"] == 50
        assert series[1]["analyses_count"] == 2

    def test_insights(self):
        funnel = {
            "TOFU": {"score": 70, "trend": "up", "change": 10},
            "MOFU": {"score": 40, "trend": "down", "change": 12},
            "BOFU": {"score": 55, "trend": "neutral", "change": 0},
            "EVFU": {"score": 30, "trend": "neutral", "change": 1},
        }
        models = {
            "ChatGPT": {"score": 60, "analyses": 2, "reliability": 100},
            "Claude": {"score": 35, "analyses": 1, "reliability": 100},
            "Gemini": {"score": 50, "analyses": 1, "reliability": 100},
        }
        insights = generate_dashboard_insights(funnel, models)

        assert insights["top_performing_stage"] == "TOFU"
        assert insights["best_model"] == "ChatGPT"
        assert insights["performance_trend"] == "stable"
        assert insights["key_recommendations"] == [
            "Improve MOFU performance (currently 40)",
            "Improve EVFU performance (currently 30)",
            "Address declining MOFU trend (-12%)",
            "Investigate Claude model performance issues",
        ]


class TestDataOrganizationService(unittest.IsolatedAsyncioTestCase):
    """Persistencia y métricas con colecciones simuladas"""

    def setUp(self):
        self.db = make_db_manager()
        self.service = DataOrganizationService(self.db, PromptService(CSV_PATH))
        self.brand_id = str(ObjectId())
        self.user_id = str(ObjectId())

    async def test_process_and_store_analysis(self):
        results = {
            "overallScore": 75,
            "weightedScore": 75,
            "totalResponseTime": 300,
            "aggregatedSentiment": {"overall": "neutral", "confidence": 60, "distribution": {"neutral": 100}},
            "promptResults": [
                {"promptId": "TOFU_01", "promptText": "a", "score": 100, "weightedScore": 100,
                 "mentionPosition": 1, "response": "r", "responseTime": 100, "status": "success"},
                {"promptId": "TOFU_02", "promptText": "b", "score": 50, "weightedScore": 50,
                 "mentionPosition": 3, "response": "r", "responseTime": 200, "status": "success"},
                {"promptId": "UNKNOWN", "promptText": "c", "score": 0, "weightedScore": 0,
                 "mentionPosition": 0, "response": "r", "responseTime": 0, "status": "error"},
            ],
        }
        organized = await self.service.process_and_store_analysis(
            self.brand_id, "Claude", "TOFU", results, self.user_id
        )

        assert organized["metadata"]["total_prompts"] == 2
        assert organized["prompt_results"][0]["performance_level"] == "poor"
        stored = self.db.analyses.insert_one.call_args[0][0]
        assert stored["model"] == "Claude"
        assert stored["status"] == "success"
        assert stored["brand_id"] == ObjectId(self.brand_id)
        assert len(stored["prompt_results"]) == 2

    async def test_store_inserts_sanitized_document(self):
        data = organized_data()
        data["sentiment_analysis"] = {"overall": "Positive", "confidence": 70, "distribution": {}}

        await self.service.store_analysis(data)

        stored = self.db.analyses.insert_one.call_args[0][0]
        assert stored["aggregated_sentiment"]["overall"] == "positive"
        assert stored["aggregated_sentiment"]["distribution"] == {
            "positive": 0, "neutral": 100, "negative": 0, "strongly_positive": 0,
        }
        assert stored["prompt_results"][0]["sentiment"]["distribution"]["neutral"] == 100
        assert stored["brand_id"] == ObjectId(data["brand_id"])
        assert stored["stage"] == "TOFU"
        assert "created_at" in stored

    async def test_store_failure_is_wrapped(self):
        self.db.analyses.insert_one = AsyncMock(side_effect=Exception("db down"))
        with self.assertRaises(RuntimeError):
            await self.service.store_analysis(organized_data())

    async def test_dashboard_metrics_without_data(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 8, tzinfo=timezone.utc)
        with self.assertRaises(LookupError):
            await self.service.generate_dashboard_metrics(self.brand_id, start, end)

    async def test_dashboard_metrics(self):
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        end = datetime(2024, 1, 2, tzinfo=timezone.utc)
        docs = [
            analysis_doc("ChatGPT", "TOFU", 80, datetime(2024, 1, 1, 12)),
            analysis_doc("Claude", "MOFU", 40, datetime(2024, 1, 1, 13)),
        ]
        previous_tofu = [analysis_doc("ChatGPT", "TOFU", 50, datetime(2023, 12, 31, 12))]
        self.db.analyses.find = MagicMock(side_effect=[
            make_cursor(docs), make_cursor(previous_tofu), make_cursor(), make_cursor(), make_cursor(),
        ])
        self.db.brands.find_one = AsyncMock(return_value={"name": "Acme"})

        metrics = await self.service.generate_dashboard_metrics(self.brand_id, start, end)

        assert metrics["brand_summary"]["brand_name"] == "Acme"
        assert metrics["brand_summary"]["total_analyses"] == 2
        assert metrics["funnel_performance"]["TOFU"] == {"score": 80, "trend": "up", "change": 60}
        assert metrics["funnel_performance"]["MOFU"]["trend"] == "neutral"
        assert metrics["model_performance"]["Claude"]["score"] == 40
        assert len(metrics["time_series_data"]) == 2
        assert metrics["insights"]["top_performing_stage"] == "TOFU"


if __name__ == '__main__':
    unittest.main()
