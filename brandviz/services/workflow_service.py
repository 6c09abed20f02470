"""
Workflow de análisis por pares modelo/etapa (/api/run-analysis).
Cada par se persiste en analysis_pairs; un reintento del workflow saltea los pares completados.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import UpdateOne

from ..domain.enums import AIModel, AnalysisRunStatus, AnalysisStage, PairStatus, TriggerType
from ..domain.models import AnalysisPairModel
from ..infrastructure.database_manager import DatabaseManager
from ..infrastructure.email_client import IEmailClient
from ..utils.email_templates import analysis_completion_email
from ..utils.helpers import utcnow, now_ms, ensure_utc, safe_objectid, round2
from .ai_service import AIService
from .analysis_queue_service import AnalysisJob
from .data_organization_service import DataOrganizationService


class WorkflowService:
    """Ejecuta un AnalysisJob par por par con estado por cada combinación"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        ai_service: AIService,
        data_organization_service: DataOrganizationService,
        email_client: IEmailClient,
        base_url: str
    ):
        self.statuses_collection = db_manager.analysis_statuses
        self.pairs_collection = db_manager.analysis_pairs
        self.analyses_collection = db_manager.analyses
        self.brands_collection = db_manager.brands
        self.users_collection = db_manager.users
        self.ai_service = ai_service
        self.data_organization_service = data_organization_service
        self.email_client = email_client
        self.base_url = base_url.rstrip("/")
        self.logger = logging.getLogger(__name__)

    async def create_pairs(self, job: AnalysisJob) -> int:
        """Registra un par pending por cada combinación (idempotente)"""
        now = utcnow()
        operations = []
        for model, stage in job.combinations():
            pair = AnalysisPairModel(
                analysis_id=job.analysis_id,
                brand_id=safe_objectid(job.brand_id),
                user_id=safe_objectid(job.user_id),
                model=AIModel(model),
                stage=AnalysisStage(stage),
                created_at=now,
                updated_at=now,
            )
            operations.append(UpdateOne(
                {"analysis_id": job.analysis_id, "model": model, "stage": stage},
                {"$setOnInsert": pair.to_dict()},
                upsert=True,
            ))
        if not operations:
            return 0
        result = await self.pairs_collection.bulk_write(operations, ordered=False)
        return result.upserted_count

    async def get_pairs(self, analysis_id: str) -> List[AnalysisPairModel]:
        cursor = self.pairs_collection.find({"analysis_id": analysis_id})
        return [AnalysisPairModel.from_dict(doc) for doc in await cursor.to_list(length=None)]

    async def _set_pair_status(self, analysis_id: str, model: str, stage: str,
                               status: PairStatus, **fields) -> None:
        await self.pairs_collection.update_one(
            {"analysis_id": analysis_id, "model": model, "stage": stage},
            {"$set": {"status": status.value, "updated_at": utcnow(), **fields}},
        )

    async def _run_pair(self, job: AnalysisJob, brand: Dict[str, Any], model: str, stage: str) -> None:
        self.logger.info(f"Running analysis for {model}-{stage}")
        await self.statuses_collection.update_one(
            {"analysis_id": job.analysis_id},
            {"$set": {"progress.current_task": f"Running analysis for {model}-{stage}", "updated_at": utcnow()}},
        )
        await self._set_pair_status(job.analysis_id, model, stage, PairStatus.RUNNING, started_at=utcnow())

        try:
            result = await self.ai_service.analyze_with_multiple_prompts(brand, model, stage)
            if not result:
                raise RuntimeError("AI result empty")
            await self.data_organization_service.process_and_store_analysis(
                job.brand_id, model, stage, result, job.user_id, TriggerType.MANUAL.value
            )
        except Exception as e:
            await self._set_pair_status(
                job.analysis_id, model, stage, PairStatus.FAILED, completed_at=utcnow(), error_message=str(e)
            )
            raise

        await self._set_pair_status(job.analysis_id, model, stage, PairStatus.COMPLETED, completed_at=utcnow())
        await self.statuses_collection.update_one(
            {"analysis_id": job.analysis_id},
            {"$inc": {"progress.completed_tasks": 1}, "$set": {"updated_at": utcnow()}},
        )

    async def run(self, job: AnalysisJob) -> Optional[Dict[str, Any]]:
        """
        Corre el workflow completo.

        Returns:
            {"success": True} al terminar, o None si el análisis no existe o ya no está en running

        Raises:
            LookupError: si no existe la marca o el usuario
            Exception: el error del par que falló (el webhook responde 500 y QStash reintenta)
        """
        current = await self.statuses_collection.find_one({"analysis_id": job.analysis_id})
        if not current:
            self.logger.info(f"Analysis {job.analysis_id} not found")
            return None
        if current.get("status") != AnalysisRunStatus.RUNNING.value:
            self.logger.info(f"Analysis {job.analysis_id} is not running ({current.get('status')})")
            return None

        brand = await self.brands_collection.find_one({"_id": safe_objectid(job.brand_id)})
        user = await self.users_collection.find_one({"_id": safe_objectid(job.user_id)})
        if not brand or not user:
            raise LookupError("Brand or user not found for background analysis")

        started_at = ensure_utc(current["started_at"]) if current.get("started_at") else utcnow()
        await self.create_pairs(job)
        done = {
            (pair.model.value, pair.stage.value)
            for pair in await self.get_pairs(job.analysis_id)
            if pair.status == PairStatus.COMPLETED
        }

        for model, stage in job.combinations():
            if (model, stage) in done:
                continue
            await self._run_pair(job, brand, model, stage)

        await self._finish(job, brand, user, started_at)
        return {"success": True}

    async def _finish(self, job: AnalysisJob, brand: Dict[str, Any], user: Dict[str, Any], started_at) -> None:
        cursor = self.analyses_collection.find({
            "brand_id": safe_objectid(job.brand_id),
            "created_at": {"$gte": started_at},
        })
        analyses = await cursor.to_list(length=None)
        total = len(analyses)
        average = sum(a["overall_score"] for a in analyses) / total if total else 0
        weighted = sum(a["weighted_score"] for a in analyses) / total if total else 0

        await self.statuses_collection.update_one(
            {"analysis_id": job.analysis_id},
            {"$set": {
                "status": AnalysisRunStatus.COMPLETED.value,
                "completed_at": utcnow(),
                "progress.current_task": "All analyses completed",
                "updated_at": utcnow(),
            }},
        )

        dashboard_link = f"{self.base_url}/{job.user_id}/brands/{job.brand_id}/dashboard"
        html = analysis_completion_email(
            brand.get("name", ""),
            dashboard_link,
            {
                "total_analyses": total,
                "average_score": round2(average),
                "average_weighted_score": round2(weighted),
                "completion_time": now_ms() - int(started_at.timestamp() * 1000),
            },
            user_name=user.get("full_name"),
        )
        await self.email_client.send_email(user["email"], f"Analysis Complete - {brand.get('name', '')}", html)
        self.logger.info(f"Analysis {job.analysis_id} completed successfully!")
