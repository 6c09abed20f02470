"""
Tests de la API con TestClient.
Los servicios se reemplazan con dependency_overrides; el startup (MongoDB) no se ejecuta.
"""

import json
import time
import unittest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import jwt
from bson import ObjectId
from fastapi.testclient import TestClient

from brandviz import api
from brandviz.domain.exceptions import ForbiddenError, InsufficientCreditsError, NotFoundError
from brandviz.infrastructure.qstash_client import QStashReceiver, body_hash
from brandviz.services.analysis_queue_service import AnalysisJob
from brandviz.services.user_service import create_access_token

SIGNING_KEY = "sig_current"


def auth_header(user_id: str) -> dict:
    token = create_access_token({"_id": user_id, "email": "ana@test.com"}, api.settings.auth)
    return {"Authorization": f"Bearer {token}"}


def qstash_headers(body: bytes, key: str = SIGNING_KEY) -> dict:
    now = int(time.time())
    claims = {"iss": "Upstash", "sub": "https://app.test", "iat": now, "nbf": now, "exp": now + 300,
              "body": body_hash(body)}
    return {"Upstash-Signature": jwt.encode(claims, key, algorithm="HS256"), "Content-Type": "application/json"}


def with_settings(**sections):
    """Reemplaza secciones de la configuración global de la API"""
    updated = api.settings
    for name, values in sections.items():
        updated = replace(updated, **{name: replace(getattr(updated, name), **values)})
    return patch.object(api, "settings", updated)


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self.client = TestClient(api.app)
        self.user_id = str(ObjectId())
        self.brand_id = str(ObjectId())
        self.headers = auth_header(self.user_id)

        self.user_service = MagicMock()
        self.brand_service = MagicMock()
        self.analytics_service = MagicMock()
        self.credit_service = MagicMock()
        self.stripe_service = MagicMock()
        self.queue_service = MagicMock()
        self.processed_jobs = []

        async def process_analysis_job(job):
            self.processed_jobs.append(job)

        self.queue_service.process_analysis_job = process_analysis_job
        self.background_service = MagicMock()
        self.qstash_service = MagicMock()
        self.workflow_service = MagicMock()
        self.lock_service = MagicMock()
        self.team_service = MagicMock()

        api.app.dependency_overrides.update({
            api.get_user_service: lambda: self.user_service,
            api.get_brand_service: lambda: self.brand_service,
            api.get_analytics_service: lambda: self.analytics_service,
            api.get_credit_service: lambda: self.credit_service,
            api.get_stripe_service: lambda: self.stripe_service,
            api.get_queue_service: lambda: self.queue_service,
            api.get_background_service: lambda: self.background_service,
            api.get_qstash_service: lambda: self.qstash_service,
            api.get_workflow_service: lambda: self.workflow_service,
            api.get_cron_lock_service: lambda: self.lock_service,
            api.get_team_service: lambda: self.team_service,
            api.get_qstash_receiver: lambda: QStashReceiver(SIGNING_KEY, ""),
        })

    def tearDown(self):
        api.app.dependency_overrides.clear()


class TestHealthAndAuth(ApiTestCase):
    """Salud, JWT y validación"""

    def test_root(self):
        response = self.client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_without_database(self):
        response = self.client.get("/health")
        assert response.status_code == 503
        assert response.json()["database"] == "disconnected"

    def test_missing_token(self):
        response = self.client.get(f"/api/users/{self.user_id}")
        assert response.status_code == 401
        assert response.json() == {"message": "Unauthorized access!"}

    def test_invalid_token(self):
        response = self.client.get(f"/api/users/{self.user_id}", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    def test_token_of_another_user(self):
        response = self.client.get(f"/api/users/{self.user_id}", headers=auth_header(str(ObjectId())))
        assert response.status_code == 403
        assert response.json()["message"] == "Access denied!"

    def test_get_own_user(self):
        self.user_service.get_user = AsyncMock(return_value={
            "_id": ObjectId(self.user_id), "email": "ana@test.com", "password": "hash", "credits_balance": 50,
        })
        response = self.client.get(f"/api/users/{self.user_id}", headers=self.headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["_id"] == self.user_id
        assert data["credits_balance"] == 50
        assert "password" not in data

    def test_invalid_user_id(self):
        response = self.client.get("/api/users/123", headers=self.headers)
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid or missing userId!"

    def test_register_validation(self):
        response = self.client.post("/api/register", json={"full_name": "Ana", "email": "nope", "password": "secret123"})
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid request body!"

    def test_register(self):
        self.user_service.register = AsyncMock(return_value={"user": {"_id": self.user_id, "token": "t"}})
        response = self.client.post("/api/register", json={
            "full_name": "Ana", "email": "ana@test.com", "password": "secret123",
        })
        assert response.status_code == 201
        assert response.json()["message"] == "User created successfully!"

    def test_verify_email_redirects(self):
        self.user_service.verify_email = AsyncMock()
        self.user_service.onboarding_url = MagicMock(return_value=f"https://app.test/{self.user_id}/onboarding")
        response = self.client.get(
            f"/api/verify-email?verifyToken=abc&id={self.user_id}", follow_redirects=False
        )
        assert response.status_code == 307
        assert response.headers["location"] == f"https://app.test/{self.user_id}/onboarding"


class TestBrandRoutes(ApiTestCase):

    def test_matrix_summary_is_not_a_brand_id(self):
        self.analytics_service.get_matrix_summary = AsyncMock(return_value={"brands": [], "summary": {}})
        response = self.client.get(f"/api/brand/matrix-summary?userId={self.user_id}", headers=self.headers)
        assert response.status_code == 200
        self.analytics_service.get_matrix_summary.assert_awaited_once_with(self.user_id, "30d")

    def test_create_brand(self):
        self.brand_service.create_brand = AsyncMock(return_value={"_id": ObjectId(self.brand_id), "name": "Acme"})
        response = self.client.post("/api/brand", headers=self.headers, json={"user_id": self.user_id, "name": "Acme"})
        assert response.status_code == 201
        assert response.json()["data"]["brand"]["_id"] == self.brand_id

    def test_invalid_query(self):
        response = self.client.get(
            f"/api/brand/{self.brand_id}/logs?userId={self.user_id}&sortBy=name", headers=self.headers
        )
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid query parameters!"

    def test_metrics_without_data(self):
        self.analytics_service.get_metrics = AsyncMock(side_effect=NotFoundError("No analysis data found"))
        response = self.client.get(f"/api/brand/{self.brand_id}/metrics?userId={self.user_id}", headers=self.headers)
        assert response.status_code == 404

    def test_brand_details_require_membership(self):
        self.brand_service.ensure_can_read = AsyncMock(side_effect=ForbiddenError("Access denied to this brand!"))
        self.brand_service.get_brand_with_owner = AsyncMock()

        response = self.client.get(f"/api/brand/{self.brand_id}", headers=self.headers)

        assert response.status_code == 403
        self.brand_service.ensure_can_read.assert_awaited_once_with(self.brand_id, self.user_id)
        self.brand_service.get_brand_with_owner.assert_not_called()

    def test_brand_details_for_member(self):
        self.brand_service.ensure_can_read = AsyncMock(return_value={"_id": ObjectId(self.brand_id)})
        self.brand_service.get_brand_with_owner = AsyncMock(return_value={"_id": ObjectId(self.brand_id), "name": "Acme"})

        response = self.client.get(f"/api/brand/{self.brand_id}", headers=self.headers)

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Acme"

    def test_members_require_membership(self):
        self.brand_service.ensure_can_read = AsyncMock(side_effect=ForbiddenError("Access denied to this brand!"))
        self.team_service.list_members = AsyncMock()

        response = self.client.get(f"/api/brand/{self.brand_id}/members", headers=self.headers)

        assert response.status_code == 403
        self.team_service.list_members.assert_not_called()

    def test_members_for_member(self):
        self.brand_service.ensure_can_read = AsyncMock(return_value={"_id": ObjectId(self.brand_id)})
        self.team_service.list_members = AsyncMock(return_value={"members": [], "invites": []})

        response = self.client.get(f"/api/brand/{self.brand_id}/members", headers=self.headers)

        assert response.status_code == 200
        self.team_service.list_members.assert_awaited_once_with(self.brand_id)

    def test_remove_member_invalid_brand_id(self):
        self.team_service.remove_member = AsyncMock()
        response = self.client.request("DELETE", "/api/brand/123/members", headers=self.headers, json={
            "memberIdToRemove": str(ObjectId()), "userIdRequesting": self.user_id, "memberType": "membership",
        })
        assert response.status_code == 400
        self.team_service.remove_member.assert_not_called()

    def test_delete_brand(self):
        self.brand_service.delete_brand = AsyncMock(return_value={"brandId": self.brand_id})
        response = self.client.delete(f"/api/brand/{self.brand_id}?userId={self.user_id}", headers=self.headers)
        assert response.status_code == 200
        self.brand_service.delete_brand.assert_awaited_once_with(self.brand_id, self.user_id)


class TestTriggerAnalysis(ApiTestCase):
    """POST /logs despacha el job por QStash o en proceso"""

    def setUp(self):
        super().setUp()
        self.job = AnalysisJob(self.brand_id, self.user_id, "multi-1", ["ChatGPT"], ["TOFU"])
        self.analytics_service.trigger_analysis = AsyncMock(
            return_value=(self.job, {"analysisId": "multi-1", "creditsUsed": 10})
        )
        self.url = f"/api/brand/{self.brand_id}/logs"

    def test_runs_in_process_without_qstash(self):
        with with_settings(qstash={"token": ""}):
            response = self.client.post(self.url, headers=self.headers, json={"userId": self.user_id})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["analysisId"] == "multi-1"
        assert self.processed_jobs == [self.job]

    def test_schedules_with_qstash(self):
        self.qstash_service.schedule_analysis_job = AsyncMock(return_value="msg_1")
        with with_settings(qstash={"token": "tok"}):
            response = self.client.post(self.url, headers=self.headers, json={"userId": self.user_id})

        assert response.status_code == 200
        assert self.processed_jobs == []

    def test_falls_back_when_qstash_fails(self):
        self.qstash_service.schedule_analysis_job = AsyncMock(side_effect=Exception("qstash down"))
        with with_settings(qstash={"token": "tok"}):
            response = self.client.post(self.url, headers=self.headers, json={"userId": self.user_id})

        assert response.status_code == 200
        assert self.processed_jobs == [self.job]

    def test_insufficient_credits(self):
        self.analytics_service.trigger_analysis = AsyncMock(side_effect=InsufficientCreditsError(
            "Insufficient credits for this analysis!", data={"required": 30, "available": 5}
        ))
        response = self.client.post(self.url, headers=self.headers, json={"userId": self.user_id})
        assert response.status_code == 402
        assert response.json()["data"] == {"required": 30, "available": 5}

    def test_unknown_model(self):
        response = self.client.post(self.url, headers=self.headers, json={"userId": self.user_id, "models": ["Llama"]})
        assert response.status_code == 400


class TestCreditRoutes(ApiTestCase):

    def test_packages_are_public(self):
        self.stripe_service.list_packages = MagicMock(return_value=[{"id": "small_pack"}])
        response = self.client.get("/api/credits/packages")
        assert response.json() == {"data": [{"id": "small_pack"}], "success": True}

    def test_history_pagination(self):
        self.credit_service.get_credit_history = AsyncMock(return_value=[{"amount": 50}])
        self.credit_service.get_credit_history_count = AsyncMock(return_value=25)
        response = self.client.get(f"/api/credits/history?userId={self.user_id}&page=3&limit=10", headers=self.headers)

        data = response.json()["data"]
        assert data["pagination"]["totalPages"] == 3
        assert data["pagination"]["hasMore"] is False
        assert data["summary"]["showingFrom"] == 21
        assert data["summary"]["showingTo"] == 25
        self.credit_service.get_credit_history.assert_awaited_once_with(
            self.user_id, 10, 20, {"type": None, "start_date": None, "end_date": None}
        )

    def test_history_invalid_date(self):
        self.credit_service.get_credit_history = AsyncMock(side_effect=ValueError("bad date"))
        response = self.client.get(f"/api/credits/history?userId={self.user_id}&startDate=x", headers=self.headers)
        assert response.status_code == 400

    def test_checkout_requires_urls(self):
        self.user_service.users_collection.find_one = AsyncMock(return_value={"email": "ana@test.com"})
        self.stripe_service.get_package = MagicMock(return_value=MagicMock(id="small_pack"))
        response = self.client.post("/api/credits/purchase", headers=self.headers, json={
            "userId": self.user_id, "packageId": "small_pack", "paymentMethod": "checkout",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "Success URL and Cancel URL are required for checkout method!"

    def test_webhook_missing_signature(self):
        response = self.client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400
        assert response.text == "Missing stripe-signature header"

    def test_webhook_without_secret(self):
        with with_settings(stripe={"webhook_secret": ""}):
            response = self.client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})
        assert response.status_code == 500

    def test_webhook_payment_succeeded(self):
        intent = {"id": "pi_1", "metadata": {}}
        self.stripe_service.verify_webhook_signature = MagicMock(
            return_value={"type": "payment_intent.succeeded", "data": {"object": intent}}
        )
        self.stripe_service.handle_payment_success = AsyncMock(return_value=True)
        with with_settings(stripe={"webhook_secret": "whsec"}):
            response = self.client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})

        assert response.status_code == 200
        assert response.text == "Webhook processed successfully"
        self.stripe_service.handle_payment_success.assert_awaited_once_with(intent)

    def test_webhook_invalid_signature(self):
        self.stripe_service.verify_webhook_signature = MagicMock(side_effect=ValueError("bad"))
        with with_settings(stripe={"webhook_secret": "whsec"}):
            response = self.client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1"})
        assert response.status_code == 400
        assert response.text == "Invalid signature"


class TestJobRoutes(ApiTestCase):
    """Webhooks de QStash y cron"""

    def test_qstash_rejects_bad_signature(self):
        body = json.dumps({"analysisId": "multi-1"}).encode()
        response = self.client.post("/api/qstash/process-analysis", content=body, headers=qstash_headers(body, "other"))
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid QStash signature"

    def test_qstash_process_analysis(self):
        job = AnalysisJob(self.brand_id, self.user_id, "multi-1", ["ChatGPT"], ["TOFU"])
        body = json.dumps(job.to_dict()).encode()
        self.background_service.run_analysis_in_background = AsyncMock()

        response = self.client.post("/api/qstash/process-analysis", content=body, headers=qstash_headers(body))

        assert response.status_code == 200
        assert response.json()["analysisId"] == "multi-1"
        self.background_service.run_analysis_in_background.assert_awaited_once_with(job)

    def test_qstash_invalid_job(self):
        body = b'{"brandId": "b"}'
        response = self.client.post("/api/qstash/process-analysis", content=body, headers=qstash_headers(body))
        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_workflow_failure_returns_500(self):
        job = AnalysisJob(self.brand_id, self.user_id, "multi-1", ["ChatGPT"], ["TOFU"])
        body = json.dumps(job.to_dict()).encode()
        self.workflow_service.run = AsyncMock(side_effect=RuntimeError("llm down"))

        response = self.client.post("/api/run-analysis", content=body, headers=qstash_headers(body))
        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "llm down"}

    def test_qstash_init(self):
        self.qstash_service.schedule_stuck_analysis_check = AsyncMock(return_value="msg_9")
        with with_settings(qstash={"init_secret": ""}):
            response = self.client.get("/api/qstash/init")
        assert response.json()["messageId"] == "msg_9"
        self.qstash_service.schedule_stuck_analysis_check.assert_awaited_once_with(120)

    def test_qstash_init_requires_secret(self):
        with with_settings(qstash={"init_secret": "init"}):
            response = self.client.post("/api/qstash/init")
        assert response.status_code == 401

    def test_cron_unauthorized(self):
        with with_settings(app={"cron_secret": "cron"}):
            response = self.client.get("/api/cron/process-pending-analyses")
        assert response.status_code == 401

    def test_cron_with_lock(self):
        self.lock_service.acquire_lock = AsyncMock(return_value="instance-1")
        self.lock_service.release_lock = AsyncMock(return_value=True)
        self.queue_service.resume_stuck_analyses = AsyncMock(return_value=2)

        with with_settings(app={"cron_secret": "cron"}):
            response = self.client.get("/api/cron/process-pending-analyses", headers={"Authorization": "Bearer cron"})

        assert response.json() == {"success": True, "processed": 2, "message": "Processed 2 stuck analyses"}
        self.lock_service.release_lock.assert_awaited_once_with("process-pending-analyses", "instance-1")

    def test_cron_lock_held(self):
        self.lock_service.acquire_lock = AsyncMock(return_value=None)
        self.queue_service.resume_stuck_analyses = AsyncMock()

        with with_settings(app={"cron_secret": "cron"}):
            response = self.client.get("/api/cron/process-pending-analyses", headers={"Authorization": "Bearer cron"})

        assert response.json() == {"success": True, "processed": 0, "message": "Another instance is already processing"}
        self.queue_service.resume_stuck_analyses.assert_not_called()


if __name__ == '__main__':
    unittest.main()
