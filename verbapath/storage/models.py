"""SQLAlchemy database models for run reports and assessments."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, Float
from .database import Base


class ExecutionRunModel(Base):
    """Report of a finished or paused workflow run."""
    __tablename__ = "execution_runs"
    
    id = Column(String, primary_key=True)
    workflow_id = Column(String, nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)  # running, paused, completed, failed
    current_node_id = Column(String)
    error_code = Column(String)
    error_message = Column(Text)
    report = Column(JSON, nullable=False)  # Complete WorkflowExecution as JSON
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AssessmentResultModel(Base):
    """One scored assessment with its computed ELPA band."""
    __tablename__ = "assessment_results"
    
    id = Column(String, primary_key=True)
    student_id = Column(String, nullable=False, index=True)
    session_id = Column(String, index=True)
    workflow_id = Column(String)
    node_id = Column(String)
    assessment_type = Column(String, nullable=False)
    score = Column(Float, nullable=False, default=0)
    max_score = Column(Float, nullable=False, default=100)
    elpa_band = Column(Integer, nullable=False)
    details = Column(JSON)  # questionResults, feedback, recommendations, scaffoldingUsed
    recorded_at = Column(DateTime, default=datetime.utcnow)
