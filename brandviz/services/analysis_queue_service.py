"""
Procesamiento de análisis en cola.
Cada job recorre las combinaciones modelo x etapa y deja el progreso en analysis_statuses.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from numbers import Number
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from ..domain.enums import AnalysisRunStatus, TriggerType
from ..infrastructure.database_manager import DatabaseManager
from ..infrastructure.email_client import IEmailClient
from ..utils.email_templates import analysis_completion_email, analysis_failure_email
from ..utils.helpers import utcnow, now_ms, ensure_utc, safe_objectid, round2
from .ai_service import AIService
from .data_organization_service import DataOrganizationService

RESUMING_PREFIX = "RESUMING:"
ACTIVE_WINDOW = timedelta(minutes=2)
STUCK_AFTER = timedelta(minutes=10)
MAX_STUCK_CLAIMS = 3


@dataclass
class AnalysisJob:
    """Payload de un job de análisis (el mismo que viaja por QStash)"""
    brand_id: str
    user_id: str
    analysis_id: str
    models: List[str] = field(default_factory=list)
    stages: List[str] = field(default_factory=list)

    @property
    def total_tasks(self) -> int:
        return len(self.models) * len(self.stages)

    def combinations(self) -> List[tuple]:
        return [(model, stage) for model in self.models for stage in self.stages]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brandId": self.brand_id,
            "userId": self.user_id,
            "models": list(self.models),
            "stages": list(self.stages),
            "analysisId": self.analysis_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AnalysisJob':
        missing = [key for key in ("brandId", "userId", "analysisId") if not data.get(key)]
        if missing or not data.get("models") or not data.get("stages"):
            raise ValueError("Missing required job fields")
        return cls(
            brand_id=str(data["brandId"]),
            user_id=str(data["userId"]),
            analysis_id=str(data["analysisId"]),
            models=list(data["models"]),
            stages=list(data["stages"]),
        )

    @classmethod
    def from_status(cls, status: Dict[str, Any]) -> 'AnalysisJob':
        """Reconstruye el job desde un documento de analysis_statuses"""
        return cls(
            brand_id=str(status["brand_id"]),
            user_id=str(status["user_id"]),
            analysis_id=status["analysis_id"],
            models=list(status.get("models") or []),
            stages=list(status.get("stages") or []),
        )


def is_valid_result(result: Optional[Dict[str, Any]]) -> bool:
    """El resultado debe traer overallScore y weightedScore numéricos"""
    if not result:
        return False
    return all(
        isinstance(result.get(key), Number) and not isinstance(result.get(key), bool)
        for key in ("overallScore", "weightedScore")
    )


def summarize_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Promedios para el email de finalización"""
    total = len(results)
    if not total:
        return {"total_analyses": 0, "average_score": 0, "average_weighted_score": 0}
    return {
        "total_analyses": total,
        "average_score": round2(sum(r["overall_score"] for r in results) / total),
        "average_weighted_score": round2(sum(r["weighted_score"] for r in results) / total),
    }


class AnalysisQueueService:
    """Ejecuta jobs de análisis con claim atómico sobre el documento de estado"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        ai_service: AIService,
        data_organization_service: DataOrganizationService,
        email_client: IEmailClient,
        base_url: str
    ):
        self.db_manager = db_manager
        self.statuses_collection = db_manager.analysis_statuses
        self.brands_collection = db_manager.brands
        self.users_collection = db_manager.users
        self.ai_service = ai_service
        self.data_organization_service = data_organization_service
        self.email_client = email_client
        self.base_url = base_url.rstrip("/")
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Helpers de estado
    # ------------------------------------------------------------------

    async def _update_running(self, analysis_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Actualiza el estado solo si el análisis sigue en running"""
        fields = {**fields, "updated_at": utcnow()}
        return await self.statuses_collection.find_one_and_update(
            {"analysis_id": analysis_id, "status": AnalysisRunStatus.RUNNING.value},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    async def _is_running(self, analysis_id: str) -> bool:
        status = await self.statuses_collection.find_one({"analysis_id": analysis_id})
        return bool(status) and status.get("status") == AnalysisRunStatus.RUNNING.value

    async def _load_brand_and_user(self, job: AnalysisJob):
        brand = await self.brands_collection.find_one({"_id": safe_objectid(job.brand_id)})
        user = await self.users_collection.find_one({"_id": safe_objectid(job.user_id)})
        if not brand or not user:
            raise LookupError("Brand or user not found for background analysis")
        return brand, user

    async def _run_task(self, job: AnalysisJob, brand: Dict[str, Any], model: str, stage: str) -> Optional[Dict[str, Any]]:
        """Analiza una combinación y guarda el resultado. None si el resultado no es válido"""
        result = await self.ai_service.analyze_with_multiple_prompts(brand, model, stage)
        if not is_valid_result(result):
            self.logger.error(f"Invalid result data for {model}-{stage}: {result}")
            return None

        organized = await self.data_organization_service.process_and_store_analysis(
            job.brand_id, model, stage, result, job.user_id, TriggerType.MANUAL.value
        )
        return {
            "model": model,
            "stage": stage,
            "analysis_id": organized["analysis_id"],
            "overall_score": organized["overall_score"],
            "weighted_score": organized["weighted_score"],
        }

    async def _mark_task_done(self, analysis_id: str, completed: int, total: int, label: str) -> None:
        await self._update_running(analysis_id, {
            "progress.completed_tasks": completed,
            "progress.current_task": f"{label} ({completed}/{total})",
        })

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def process_analysis_job(self, job: AnalysisJob) -> None:
        """
        Procesa un job completo.
        Se saltea si el análisis no existe, ya no está en running o lo está
        procesando otra instancia (actualizado hace menos de 2 minutos).
        """
        analysis_id = job.analysis_id
        try:
            self.logger.info(f"Starting analysis job {analysis_id} for brand {job.brand_id}")

            current = await self.statuses_collection.find_one({"analysis_id": analysis_id})
            if not current:
                self.logger.info(f"Analysis {analysis_id} not found, skipping processing")
                return
            if current.get("status") != AnalysisRunStatus.RUNNING.value:
                self.logger.info(
                    f"Analysis {analysis_id} is no longer running (status: {current.get('status')}), skipping processing"
                )
                return

            current_task = (current.get("progress") or {}).get("current_task")
            updated_at = current.get("updated_at")
            if (updated_at and ensure_utc(updated_at) > utcnow() - ACTIVE_WINDOW
                    and current_task and not current_task.startswith(RESUMING_PREFIX)):
                self.logger.info(f"Analysis {analysis_id} appears to be actively processing by another instance, skipping")
                return

            claimed = await self._update_running(analysis_id, {"progress.current_task": "Connecting to AI services..."})
            if not claimed:
                self.logger.info(f"Could not claim analysis {analysis_id} for processing, skipping")
                return

            brand, user = await self._load_brand_and_user(job)

            started = now_ms()
            total = job.total_tasks
            completed = 0
            results: List[Dict[str, Any]] = []

            for model, stage in job.combinations():
                try:
                    if not await self._is_running(analysis_id):
                        self.logger.info(f"Analysis {analysis_id} is no longer running, stopping processing")
                        return

                    progress = await self._update_running(analysis_id, {
                        "progress.current_task": f"Analyzing {model} - {stage}...",
                        "progress.completed_tasks": completed,
                    })
                    if not progress:
                        self.logger.info(f"Could not update progress for analysis {analysis_id}, stopping processing")
                        return

                    task_result = await self._run_task(job, brand, model, stage)
                    completed += 1
                    if task_result is None:
                        continue
                    results.append(task_result)
                    await self._mark_task_done(analysis_id, completed, total, f"Completed {model}-{stage}")
                    self.logger.info(f"Completed {model} - {stage} for analysis {analysis_id}")

                except Exception as task_error:
                    self.logger.error(f"Error processing {model}-{stage} for analysis {analysis_id}: {task_error}")
                    completed += 1
                    await self._mark_task_done(analysis_id, completed, total, f"Error in {model}-{stage}")

            await self.complete_analysis(analysis_id, results, brand, user, now_ms() - started)

        except Exception as e:
            self.logger.error(f"Analysis job {analysis_id} failed: {e}")
            await self.fail_analysis(analysis_id, e, job.user_id, job.brand_id)

    async def complete_analysis(self, analysis_id: str, results: List[Dict[str, Any]],
                                brand: Dict[str, Any], user: Dict[str, Any], completion_time: int) -> None:
        """Marca el análisis como completado y envía el email con el resumen"""
        summary = summarize_results(results)

        await self.statuses_collection.find_one_and_update(
            {"analysis_id": analysis_id},
            {"$set": {
                "status": AnalysisRunStatus.COMPLETED.value,
                "completed_at": utcnow(),
                "progress.current_task": "Analysis completed successfully!",
                "updated_at": utcnow(),
            }},
        )

        dashboard_link = f"{self.base_url}/{user['_id']}/brands/{brand['_id']}/dashboard"
        html = analysis_completion_email(
            brand.get("name", ""),
            dashboard_link,
            {**summary, "completion_time": completion_time},
            user_name=user.get("full_name"),
        )
        await self.email_client.send_email(user["email"], f"Analysis Complete - {brand.get('name', '')}", html)

        self.logger.info(f"Analysis {analysis_id} completed successfully")

    async def fail_analysis(self, analysis_id: str, error: Exception, user_id: str, brand_id: str) -> None:
        """Marca el análisis como fallido y avisa por email. Nunca propaga errores"""
        message = str(error) or "Unknown error"
        try:
            await self.statuses_collection.find_one_and_update(
                {"analysis_id": analysis_id},
                {"$set": {
                    "status": AnalysisRunStatus.FAILED.value,
                    "completed_at": utcnow(),
                    "error_message": message,
                    "progress.current_task": "Analysis failed",
                    "updated_at": utcnow(),
                }},
            )

            user = await self.users_collection.find_one({"_id": safe_objectid(user_id)})
            brand = await self.brands_collection.find_one({"_id": safe_objectid(brand_id)})
            if user and brand:
                await self.email_client.send_email(
                    user["email"],
                    f"Analysis Failed - {brand.get('name', '')}",
                    analysis_failure_email(brand.get("name", ""), message),
                )
            self.logger.info(f"Analysis {analysis_id} marked as failed")
        except Exception as failure_error:
            self.logger.error(f"Failed to handle analysis failure: {failure_error}")

    async def resume_stuck_analyses(self) -> int:
        """
        Reclama de a uno los análisis en running hace más de 10 minutos y los procesa.

        Returns:
            Cantidad de análisis procesados
        """
        try:
            cutoff = utcnow() - STUCK_AFTER
            processed = 0
            self.logger.info(f"Checking for stuck analyses older than {cutoff.isoformat()}")

            for attempt in range(MAX_STUCK_CLAIMS):
                claimed = await self.statuses_collection.find_one_and_update(
                    {
                        "status": AnalysisRunStatus.RUNNING.value,
                        "started_at": {"$lt": cutoff},
                        "$or": [
                            {"progress.current_task": {"$exists": False}},
                            {"progress.current_task": {"$not": re.compile(f"^{RESUMING_PREFIX}")}},
                        ],
                    },
                    {"$set": {
                        "progress.current_task": f"{RESUMING_PREFIX} Claimed by cron at {utcnow().isoformat()}",
                        "updated_at": utcnow(),
                    }},
                    sort=[("started_at", 1)],
                    return_document=ReturnDocument.AFTER,
                )
                if not claimed:
                    self.logger.info(
                        f"No more stuck analyses to process (attempt {attempt + 1}/{MAX_STUCK_CLAIMS})"
                    )
                    break

                analysis_id = claimed["analysis_id"]
                self.logger.info(f"Claimed stuck analysis {analysis_id} for processing")
                try:
                    await self.process_analysis_job(AnalysisJob.from_status(claimed))
                    processed += 1
                except Exception as e:
                    self.logger.error(f"Failed to process claimed analysis {analysis_id}: {e}")
                    await self.fail_analysis(analysis_id, e, str(claimed["user_id"]), str(claimed["brand_id"]))

            self.logger.info(f"Cron job completed. Processed {processed} stuck analyses.")
            return processed
        except Exception as e:
            self.logger.error(f"Error resuming stuck analyses: {e}")
            return 0
