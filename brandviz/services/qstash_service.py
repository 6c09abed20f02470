"""
Programación de jobs vía QStash
"""

import logging
from typing import Any, Dict

from ..domain.enums import AnalysisRunStatus
from ..infrastructure.database_manager import DatabaseManager
from ..infrastructure.qstash_client import IQStashClient
from ..utils.helpers import utcnow, now_ms
from .analysis_queue_service import AnalysisJob
from .background_analysis_service import BackgroundAnalysisService

PROCESSING_PREFIX = "PROCESSING:"
STUCK_CHECK_INTERVAL = 120
STATUS_UPDATES = 20
STATUS_UPDATE_EVERY = 30


class QStashService:
    """Publica los webhooks /api/qstash/* que disparan el procesamiento"""

    def __init__(self, db_manager: DatabaseManager, qstash_client: IQStashClient,
                 background_service: BackgroundAnalysisService, base_url: str):
        self.statuses_collection = db_manager.analysis_statuses
        self.client = qstash_client
        self.background_service = background_service
        self.base_url = base_url
        self.logger = logging.getLogger(__name__)

    def _webhook_url(self, path: str) -> str:
        if not self.base_url:
            raise ValueError("Base URL not configured for QStash webhooks")
        return f"{self.base_url.rstrip('/')}/api/qstash/{path}"

    async def schedule_analysis_job(self, job: AnalysisJob) -> str:
        """
        Publica el job para procesarlo de inmediato.

        Raises:
            ValueError: si el análisis no existe, no está en running o ya se está procesando
        """
        existing = await self.statuses_collection.find_one({"analysis_id": job.analysis_id})
        if not existing:
            raise ValueError(f"Analysis {job.analysis_id} not found in database")
        if existing.get("status") != AnalysisRunStatus.RUNNING.value:
            self.logger.info(
                f"Analysis {job.analysis_id} is not in running state ({existing.get('status')}), skipping QStash scheduling"
            )
            raise ValueError(f"Analysis {job.analysis_id} is not in running state")

        current_task = (existing.get("progress") or {}).get("current_task") or ""
        if current_task.startswith(PROCESSING_PREFIX):
            self.logger.info(f"Analysis {job.analysis_id} is already being processed, skipping duplicate QStash job")
            raise ValueError(f"Analysis {job.analysis_id} is already being processed")

        webhook_url = self._webhook_url("process-analysis")
        self.logger.info(f"Scheduling analysis job {job.analysis_id} via QStash ({webhook_url})")

        message_id = await self.client.publish_json(
            webhook_url,
            job.to_dict(),
            delay=0,
            retries=3,
            deduplication_id=f"analysis-{job.analysis_id}-{now_ms()}",
        )
        self.logger.info(f"Analysis job {job.analysis_id} scheduled with QStash message ID: {message_id}")
        return message_id

    async def schedule_stuck_analysis_check(self, delay_seconds: int = 600) -> str:
        webhook_url = self._webhook_url("check-stuck-analyses")
        self.logger.info(f"Scheduling stuck analysis check in {delay_seconds} seconds")

        # El id de deduplicación cambia cada 2 minutos
        message_id = await self.client.publish_json(
            webhook_url,
            {"timestamp": utcnow().isoformat(), "checkType": "stuck-analyses"},
            delay=delay_seconds,
            retries=2,
            deduplication_id=f"stuck-check-{now_ms() // (STUCK_CHECK_INTERVAL * 1000)}",
        )
        self.logger.info(f"Stuck analysis check scheduled with QStash message ID: {message_id}")
        return message_id

    async def process_stuck_analysis_check(self) -> int:
        """Retoma análisis trabados y programa el próximo chequeo, aun si este falla"""
        try:
            resumed = await self.background_service.resume_incomplete_analyses()
            self.logger.info(f"Resumed {resumed} incomplete analyses")
            await self.schedule_stuck_analysis_check(STUCK_CHECK_INTERVAL)
            return resumed
        except Exception as e:
            self.logger.error(f"Error processing stuck analysis check: {e}")
            try:
                await self.schedule_stuck_analysis_check(STUCK_CHECK_INTERVAL)
            except Exception as schedule_error:
                self.logger.error(f"Failed to schedule next stuck analysis check: {schedule_error}")
            raise

    async def schedule_analysis_resumption(self, analysis_id: str) -> str:
        webhook_url = self._webhook_url("resume-analysis")
        message_id = await self.client.publish_json(
            webhook_url, {"analysisId": analysis_id}, delay=0, retries=2
        )
        self.logger.info(f"Analysis resumption {analysis_id} scheduled with QStash message ID: {message_id}")
        return message_id

    async def initialize_stuck_analysis_checking(self) -> None:
        """Idempotente: la deduplicación de QStash evita ciclos duplicados"""
        try:
            await self.schedule_stuck_analysis_check(STUCK_CHECK_INTERVAL)
            self.logger.info("Stuck analysis checking initialized")
        except Exception as e:
            self.logger.error(f"Failed to initialize stuck analysis checking: {e}")

    async def schedule_status_updates(self, analysis_id: str, user_id: str) -> None:
        """Un status-update cada 30 segundos durante 10 minutos"""
        try:
            webhook_url = self._webhook_url("status-update")
            for i in range(1, STATUS_UPDATES + 1):
                await self.client.publish_json(
                    webhook_url,
                    {"analysisId": analysis_id, "userId": user_id},
                    delay=i * STATUS_UPDATE_EVERY,
                    retries=1,
                    deduplication_id=f"status-{analysis_id}-{i}",
                )
            self.logger.info(f"Scheduled {STATUS_UPDATES} status updates for analysis {analysis_id}")
        except Exception as e:
            self.logger.error(f"Error scheduling status updates for {analysis_id}: {e}")

    async def cancel_message(self, message_id: str) -> None:
        try:
            await self.client.delete_message(message_id)
            self.logger.info(f"Cancelled QStash message: {message_id}")
        except Exception as e:
            self.logger.error(f"Error cancelling QStash message {message_id}: {e}")
            raise

    async def get_message_details(self, message_id: str) -> Dict[str, Any]:
        try:
            return await self.client.get_message(message_id)
        except Exception as e:
            self.logger.error(f"Error getting QStash message details {message_id}: {e}")
            raise
