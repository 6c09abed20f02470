"""
Tests para services.prompt_service y services.ai_service
Usa el CSV real de prompts y MockLLMClient
"""

import json
import os
import unittest

import brandviz
from brandviz.infrastructure.llm_client import MockLLMClient, ILLMClient
from brandviz.services.ai_service import AIService, aggregate_sentiment, build_analysis_prompt, parse_mention_position
from brandviz.services.prompt_service import PromptService, replace_prompt_placeholders, build_stage_weights

CSV_PATH = os.path.join(os.path.dirname(brandviz.__file__), "data", "mvp_prompts_with_funnel_scoring.csv")

BRAND = {
    "name": "Acme",
    "category": "CRM software",
    "region": "Argentina",
    "target_audience": ["startups", "agencies"],
    "use_case": "sales tracking",
    "competitors": ["Globex", "Initech"],
    "feature_list": ["pipelines", "reports", "alerts"],
}


def parser_reply(classification="mentioned", position=1, overall="positive"):
    return json.dumps({
        "sentiment": {
            "distribution": {"positive": 80, "neutral": 20, "negative": 0, "strongly_positive": 0},
            "overall": overall,
            "confidence": 90,
        },
        "mentionPosition": position,
        "stage_specific_classification": classification,
        "analysis": "Acme aparece primero",
    })


class TestPromptService(unittest.TestCase):
    """Carga del CSV y reemplazo de placeholders"""

    def setUp(self):
        self.service = PromptService(CSV_PATH)

    def test_prompts_by_stage(self):
        for stage in ("TOFU", "MOFU", "BOFU", "EVFU"):
            prompts = self.service.get_prompts_by_stage(stage)
            assert len(prompts) == 3
            assert all(p.funnel_stage == stage for p in prompts)

    def test_tofu_weights(self):
        prompt = self.service.get_prompts_by_stage("TOFU")[0]
        assert prompt.prompt_id == "TOFU_01"
        assert prompt.weights["base_weight"] == 1
        assert prompt.weights["position_weights"]["second"] == 0.75
        assert prompt.weights["position_weights"]["absent"] == 0

    def test_prompts_are_cached(self):
        first = self.service.load_prompts()
        assert self.service.load_prompts() is first

    def test_missing_csv(self):
        with self.assertRaises(RuntimeError):
            PromptService("/nonexistent/prompts.csv").load_prompts()

    def test_placeholders(self):
        text = replace_prompt_placeholders(
            "{brand_name} vs {competitor} for {audience} in {region}: {feature_list}", BRAND
        )
        assert text == "Acme vs Globex for startups, agencies in Argentina: pipelines and reports"

    def test_placeholder_defaults(self):
        text = replace_prompt_placeholders("{name} {category} {audience} {competitor}", {})
        assert text == "Unknown Brand business services businesses industry leaders"

    def test_unknown_stage_weights(self):
        weights = build_stage_weights({"base_weight": ""}, "XYZ")
        assert weights == {"base_weight": 1.0, "scale_name": None, "scale": {}}


class TestParseMentionPosition(unittest.TestCase):
    """Normalización de mentionPosition del parser"""

    def test_numeric_forms(self):
        cases = [(2, 2), (2.0, 2), ("2", 2), ("3.0", 3), (0, 0), (5, 5)]
        for value, expected in cases:
            with self.subTest(value=value):
                assert parse_mention_position(value) == expected

    def test_invalid_values_are_zero(self):
        for value in (None, True, False, "second", "", float("nan"), float("inf"), [1], {"position": 1}):
            with self.subTest(value=value):
                assert parse_mention_position(value) == 0


class TestAggregateSentiment(unittest.TestCase):

    def test_empty(self):
        result = aggregate_sentiment([])
        assert result["overall"] == "neutral"
        assert result["confidence"] == 0

    def test_normalized_distribution(self):
        items = [
            {"sentiment": {"distribution": {"positive": 10, "neutral": 30, "negative": 60}}},
            {"sentiment": {"distribution": {"positive": 0, "neutral": 0, "negative": 100}}},
        ]
        result = aggregate_sentiment(items)
        assert result["overall"] == "negative"
        assert result["distribution"] == {"positive": 5, "neutral": 15, "negative": 80, "strongly_positive": 0}

    def test_analysis_prompt_mentions_stage_guidelines(self):
        prompt = build_analysis_prompt("respuesta", "Acme", "BOFU")
        assert 'the brand "Acme"' in prompt
        assert "bofu_partial" in prompt


class TestAIService(unittest.IsolatedAsyncioTestCase):
    """Análisis de marca con un cliente LLM simulado"""

    def setUp(self):
        self.llm = MockLLMClient(responses={"Claude": "1. Acme 2. Globex", "parser": parser_reply()})
        self.service = AIService(self.llm, PromptService(CSV_PATH), prompt_delay_seconds=0)

    async def test_analyze_brand(self):
        result = await self.service.analyze_brand("Claude", "Best CRM?", "Acme", "TOFU",
                                                  {"base_weight": 1, "position_weights": {"first": 1}})
        assert result["status"] == "success"
        assert result["score"] == 100
        assert result["position_weighted_score"] == 100
        assert result["mentionPosition"] == 1
        assert result["response"] == "1. Acme 2. Globex"
        assert "Acme aparece primero" in result["analysis"]

    async def test_mention_position_as_float_or_string(self):
        for position in (2.0, "2", "2.0"):
            with self.subTest(position=position):
                self.llm.responses["parser"] = parser_reply(position=position)
                result = await self.service.analyze_brand("ChatGPT", "Best CRM?", "Acme", "TOFU")
                assert result["mentionPosition"] == 2
                assert result["score"] == 75

    async def test_invalid_parser_output_returns_error_result(self):
        self.llm.responses["parser"] = "not json"
        result = await self.service.analyze_brand("Claude", "Best CRM?", "Acme", "TOFU")
        assert result["status"] == "error"
        assert result["score"] == 0
        assert result["response"].startswith("Analysis failed: ChatGPT API error")

    async def test_unsupported_model_returns_error_result(self):
        result = await self.service.analyze_brand("Llama", "Best CRM?", "Acme", "TOFU")
        assert result["status"] == "error"

    async def test_analyze_with_multiple_prompts(self):
        result = await self.service.analyze_with_multiple_prompts(BRAND, "Claude", "TOFU")

        assert len(result["promptResults"]) == 3
        assert result["overallScore"] == 100
        assert result["weightedScore"] == 100
        assert result["successRate"] == 100
        assert result["totalResponseTime"] == 30
        assert result["aggregatedSentiment"]["overall"] == "positive"
        assert result["aggregatedSentiment"]["distribution"]["positive"] == 80
        assert "CRM software" in result["promptResults"][0]["promptText"]

    async def test_mofu_uses_stage_scale(self):
        self.llm.responses["parser"] = parser_reply("mofu_conditional", 2, "neutral")
        result = await self.service.analyze_with_multiple_prompts(BRAND, "Gemini", "MOFU")
        first = result["promptResults"][0]
        assert first["score"] == 75
        assert first["stage_specific_classification"] == "mofu_conditional"

    async def test_stage_without_prompts(self):
        with self.assertRaises(ValueError):
            await self.service.analyze_with_multiple_prompts(BRAND, "Claude", "XYZ")

    def test_mock_implements_interface(self):
        assert isinstance(self.llm, ILLMClient)


if __name__ == '__main__':
    unittest.main()
