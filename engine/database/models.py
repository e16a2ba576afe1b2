"""
Database models for pipeline run history.
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, DateTime, Float, Text,
    ForeignKey, Index, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class PipelineRun(Base):
    """One terminal run of a pipeline definition."""
    __tablename__ = "pipeline_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(32), nullable=False, unique=True, index=True)
    pipeline_name = Column(String(255), nullable=False, index=True)
    run_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)  # success, unstable, failure, aborted
    failure_kind = Column(String(40), nullable=True)
    message = Column(Text, nullable=True)
    cleanup_errors = Column(JSON, nullable=True)
    started_at = Column(String(40), nullable=False)
    completed_at = Column(String(40), nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)

    stages = relationship("StageRun", back_populates="run", cascade="all, delete-orphan",
                          order_by="StageRun.position")

    __table_args__ = (
        UniqueConstraint("pipeline_name", "run_number", name="uq_pipeline_run_number"),
    )

    def __repr__(self):
        return f"<PipelineRun(pipeline='{self.pipeline_name}', number={self.run_number}, status='{self.status}')>"


class StageRun(Base):
    """Result of one stage within a run."""
    __tablename__ = "stage_runs"

    id = Column(Integer, primary_key=True, index=True)
    pipeline_run_id = Column(Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    stage_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, index=True)  # success, unstable, failure, skipped
    exit_code = Column(Integer, nullable=True)
    failure_kind = Column(String(40), nullable=True)
    message = Column(Text, nullable=True)
    skip_reason = Column(Text, nullable=True)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    artifacts = Column(JSON, nullable=True)  # [{"path": ..., "label": ...}]

    run = relationship("PipelineRun", back_populates="stages")

    __table_args__ = (
        Index('idx_stage_run_status', 'pipeline_run_id', 'status'),
    )

    def __repr__(self):
        return f"<StageRun(stage='{self.stage_name}', status='{self.status}')>"
