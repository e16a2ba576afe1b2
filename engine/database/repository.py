"""
Persistence of terminal pipeline results.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..pipeline.types import PipelineResult
from .database import DatabaseManager, db_manager
from .models import PipelineRun, StageRun
from utils.logger import get_logger

logger = get_logger(__name__)


def run_to_dict(run: PipelineRun) -> Dict[str, Any]:
    return {
        "run_id": run.run_id,
        "pipeline_name": run.pipeline_name,
        "run_number": run.run_number,
        "status": run.status,
        "failure_kind": run.failure_kind,
        "message": run.message,
        "cleanup_errors": run.cleanup_errors or [],
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "duration_seconds": run.duration_seconds,
        "stages": [
            {
                "stage_name": stage.stage_name,
                "status": stage.status,
                "exit_code": stage.exit_code,
                "failure_kind": stage.failure_kind,
                "message": stage.message,
                "skip_reason": stage.skip_reason,
                "duration_seconds": stage.duration_seconds,
                "artifacts": stage.artifacts or [],
            }
            for stage in run.stages
        ],
    }


class RunRepository:
    """Stores and queries run history"""

    def __init__(self, manager: Optional[DatabaseManager] = None):
        self.manager = manager or db_manager

    def next_run_number(self, pipeline_name: str) -> int:
        session: Session = self.manager.session()
        try:
            latest = session.query(func.max(PipelineRun.run_number)).filter(
                PipelineRun.pipeline_name == pipeline_name
            ).scalar()
            return (latest or 0) + 1
        finally:
            session.close()

    def save_result(self, result: PipelineResult) -> None:
        """Persist a terminal result. Used as an engine listener."""
        session: Session = self.manager.session()
        try:
            run = PipelineRun(
                run_id=result.run_id,
                pipeline_name=result.pipeline_name,
                run_number=result.run_number,
                status=result.status.value,
                failure_kind=result.failure_kind.value if result.failure_kind else None,
                message=result.message,
                cleanup_errors=list(result.cleanup_errors),
                started_at=result.started_at,
                completed_at=result.completed_at,
                duration_seconds=result.duration_seconds,
            )
            for position, stage in enumerate(result.stages):
                run.stages.append(StageRun(
                    position=position,
                    stage_name=stage.stage_name,
                    status=stage.status.value,
                    exit_code=stage.exit_code,
                    failure_kind=stage.failure_kind.value if stage.failure_kind else None,
                    message=stage.message,
                    skip_reason=stage.skip_reason,
                    duration_seconds=stage.duration_seconds,
                    artifacts=[artifact.to_dict() for artifact in stage.artifacts],
                ))
            session.add(run)
            session.commit()
            logger.info(f"Stored run {result.pipeline_name} #{result.run_number}")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_runs(self, pipeline_name: str, limit: int = 20) -> List[Dict[str, Any]]:
        session: Session = self.manager.session()
        try:
            runs = session.query(PipelineRun).filter(
                PipelineRun.pipeline_name == pipeline_name
            ).order_by(PipelineRun.run_number.desc()).limit(limit).all()
            return [run_to_dict(run) for run in runs]
        finally:
            session.close()

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        session: Session = self.manager.session()
        try:
            run = session.query(PipelineRun).filter(PipelineRun.run_id == run_id).first()
            return run_to_dict(run) if run else None
        finally:
            session.close()
