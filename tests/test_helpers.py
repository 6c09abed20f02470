"""
Tests para utils.helpers y utils.validation
"""

import unittest
from datetime import datetime, timezone

from bson import ObjectId

from brandviz.utils.helpers import (
    round_half_up,
    round2,
    serialize_objectid,
    isoformat,
    safe_objectid,
    is_valid_objectid,
    hash_token,
    generate_token,
)
from brandviz.utils.validation import (
    sanitize_score,
    sanitize_mention_position,
    sanitize_sentiment,
    sanitize_sentiment_distribution,
    validate_analysis_result,
    log_validation_warnings,
)


class TestRounding(unittest.TestCase):
    """Empates siempre hacia arriba"""

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(3.5) == 4
        assert round_half_up(-0.5) == 0
        assert round_half_up(-2.5) == -2
        assert round_half_up(2.4) == 2

    def test_round2(self):
        assert round2(0.125) == 0.13
        assert round2(1.234) == 1.23
        assert round2(1.236) == 1.24


class TestSerialization(unittest.TestCase):

    def test_nested_objectids_and_dates(self):
        oid = ObjectId()
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        data = {"_id": oid, "items": [{"brand_id": oid, "created_at": when}], "count": 3}

        assert serialize_objectid(data) == {
            "_id": str(oid),
            "items": [{"brand_id": str(oid), "created_at": "2024-01-02T03:04:05.000Z"}],
            "count": 3,
        }

    def test_isoformat_naive_is_utc(self):
        assert isoformat(datetime(2024, 5, 1, 12, 0, 0, 123000)) == "2024-05-01T12:00:00.123Z"
        assert isoformat(None) is None


class TestIdsAndTokens(unittest.TestCase):

    def test_safe_objectid(self):
        oid = ObjectId()
        assert safe_objectid(str(oid)) == oid
        assert safe_objectid(oid) is oid
        assert safe_objectid("not-an-id") is None
        assert safe_objectid(None) is None

    def test_is_valid_objectid(self):
        assert is_valid_objectid(str(ObjectId()))
        assert not is_valid_objectid("")
        assert not is_valid_objectid("123")

    def test_tokens_are_hashed(self):
        token = generate_token()
        assert len(token) == 40
        assert hash_token(token) == hash_token(token)
        assert len(hash_token(token)) == 64
        assert hash_token(token) != token


class TestValidation(unittest.TestCase):
    """Saneamiento de resultados de análisis"""

    def test_sanitize_values(self):
        assert sanitize_score(150) == 100
        assert sanitize_score(-3) == 0
        assert sanitize_score(float("nan")) == 0
        assert sanitize_score("80") == 0
        assert sanitize_mention_position(7.8) == 5
        assert sanitize_mention_position(2.9) == 2
        assert sanitize_sentiment("POSITIVE") == "positive"
        assert sanitize_sentiment("mixed") == "neutral"

    def test_zero_distribution_is_neutral(self):
        assert sanitize_sentiment_distribution({}) == {
            "positive": 0, "neutral": 100, "negative": 0, "strongly_positive": 0
        }

    def test_validate_analysis_result(self):
        data = {
            "overall_score": 120,
            "weighted_score": 40,
            "total_response_time": -5,
            "success_rate": 100,
            "aggregated_sentiment": {"overall": "positive", "confidence": 80},
            "prompt_results": [{"prompt_id": "p1", "score": 75, "mention_position": 2, "status": "SUCCESS"}],
            "metadata": {"user_id": ObjectId(), "total_prompts": 1, "successful_prompts": 1},
            "status": "success",
        }
        result = validate_analysis_result(data)

        assert result["is_valid"]
        sanitized = result["sanitized"]
        assert sanitized["overall_score"] == 100
        assert sanitized["total_response_time"] == 0
        assert sanitized["prompt_results"][0]["status"] == "success"
        assert sanitized["prompt_results"][0]["response"] == "No response"
        assert sanitized["metadata"]["trigger_type"] == "manual"

    def test_validate_reports_missing_fields(self):
        result = validate_analysis_result({"prompt_results": [], "metadata": {}})
        assert not result["is_valid"]
        assert "Missing user_id in metadata" in result["errors"]
        assert "No prompt results provided" in result["errors"]

    def test_log_validation_warnings(self):
        original = {"overall_score": 150, "weighted_score": 40, "aggregated_sentiment": {"confidence": 80}}
        sanitized = {"overall_score": 100, "weighted_score": 40, "aggregated_sentiment": {"confidence": 80}}
        with self.assertLogs("brandviz.utils.validation", level="WARNING"):
            warnings = log_validation_warnings(original, sanitized, "ChatGPT/TOFU")
        assert warnings == ["Overall score changed from 150 to 100"]


if __name__ == '__main__':
    unittest.main()
