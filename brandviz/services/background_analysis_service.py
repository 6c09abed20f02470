"""
Análisis en background que retoma desde progress.completed_tasks
"""

from datetime import timedelta
from typing import Any, Dict, List

from ..domain.enums import AnalysisRunStatus
from ..utils.helpers import utcnow
from .analysis_queue_service import AnalysisJob, AnalysisQueueService

IDLE_AFTER = timedelta(minutes=2)
MAX_RESUMES = 5


class BackgroundAnalysisService(AnalysisQueueService):
    """Procesa una combinación a la vez y puede continuar un análisis interrumpido"""

    async def run_analysis_in_background(self, job: AnalysisJob) -> None:
        analysis_id = job.analysis_id
        try:
            self.logger.info(f"Starting background analysis {analysis_id}")

            current = await self.statuses_collection.find_one({"analysis_id": analysis_id})
            if not current:
                self.logger.info(f"Analysis {analysis_id} not found")
                return
            if current.get("status") != AnalysisRunStatus.RUNNING.value:
                self.logger.info(f"Analysis {analysis_id} is not running ({current.get('status')})")
                return

            brand, user = await self._load_brand_and_user(job)

            combinations = job.combinations()
            total = len(combinations)
            start_index = (current.get("progress") or {}).get("completed_tasks") or 0
            results: List[Dict[str, Any]] = []
            self.logger.info(f"Analysis progress: {start_index}/{total} tasks completed")

            for index in range(start_index, total):
                model, stage = combinations[index]
                try:
                    self.logger.info(f"Processing {model} - {stage} ({index + 1}/{total})")
                    await self._update_running(analysis_id, {
                        "progress.current_task": f"Analyzing {model} - {stage}...",
                        "progress.completed_tasks": index,
                    })

                    if not await self._is_running(analysis_id):
                        self.logger.info(f"Analysis {analysis_id} was stopped, exiting")
                        return

                    task_result = await self._run_task(job, brand, model, stage)
                    if task_result is None:
                        continue
                    results.append(task_result)
                    await self._mark_task_done(analysis_id, index + 1, total, f"Completed {model}-{stage}")

                except Exception as task_error:
                    self.logger.error(f"Error processing {model}-{stage}: {task_error}")
                    await self._mark_task_done(analysis_id, index + 1, total, f"Error in {model}-{stage}")

            try:
                # Un análisis retomado no conoce su tiempo total
                await self.complete_analysis(analysis_id, results, brand, user, 0)
            except Exception as e:
                self.logger.error(f"Error completing analysis {analysis_id}: {e}")

        except Exception as e:
            self.logger.error(f"Background analysis {analysis_id} failed: {e}")
            await self.fail_analysis(analysis_id, e, job.user_id, job.brand_id)

    async def resume_incomplete_analyses(self) -> int:
        """Retoma hasta 5 análisis en running sin actualizaciones en los últimos 2 minutos"""
        try:
            cutoff = utcnow() - IDLE_AFTER
            cursor = self.statuses_collection.find({
                "status": AnalysisRunStatus.RUNNING.value,
                "updated_at": {"$lt": cutoff},
            }).limit(MAX_RESUMES)
            incomplete = await cursor.to_list(length=MAX_RESUMES)
            self.logger.info(f"Found {len(incomplete)} incomplete analyses to resume")

            resumed = 0
            for status in incomplete:
                analysis_id = status["analysis_id"]
                try:
                    await self.statuses_collection.find_one_and_update(
                        {"analysis_id": analysis_id},
                        {"$set": {"progress.current_task": "Resuming analysis...", "updated_at": utcnow()}},
                    )
                    await self.run_analysis_in_background(AnalysisJob.from_status(status))
                    resumed += 1
                    self.logger.info(f"Resumed analysis {analysis_id}")
                except Exception as e:
                    self.logger.error(f"Failed to resume analysis {analysis_id}: {e}")
                    await self.fail_analysis(analysis_id, e, str(status["user_id"]), str(status["brand_id"]))

            return resumed
        except Exception as e:
            self.logger.error(f"Error resuming incomplete analyses: {e}")
            return 0
