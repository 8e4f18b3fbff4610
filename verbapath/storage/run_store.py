"""Persistence of run reports."""

from typing import Callable, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import WorkflowExecution
from .database import SessionLocal
from .models import ExecutionRunModel

logger = get_logger(__name__)


class RunStore:
    """Saves and loads ``WorkflowExecution`` reports."""
    
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
    
    def save_report(self, execution: WorkflowExecution) -> None:
        """Insert or replace the stored report of a run."""
        db = self._session_factory()
        try:
            report = execution.model_dump(mode="json", by_alias=True)
            run_model = db.get(ExecutionRunModel, execution.id)
            if run_model is None:
                run_model = ExecutionRunModel(id=execution.id, started_at=execution.started_at)
                db.add(run_model)
            
            run_model.workflow_id = execution.workflow_id
            run_model.student_id = execution.student_id
            run_model.status = execution.status.value
            run_model.current_node_id = execution.current_node_id
            run_model.error_code = execution.error.code if execution.error else None
            run_model.error_message = execution.error.message if execution.error else None
            run_model.completed_at = execution.completed_at
            run_model.report = report
            
            db.commit()
            logger.debug(f"Saved report for run {execution.id} ({execution.status.value})")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to save run report: {str(e)}",
                operation="save_report",
                table=ExecutionRunModel.__tablename__
            )
        finally:
            db.close()
    
    def load_report(self, execution_id: str) -> Optional[WorkflowExecution]:
        db = self._session_factory()
        try:
            run_model = db.get(ExecutionRunModel, execution_id)
            if run_model is None:
                return None
            return WorkflowExecution.model_validate(run_model.report)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to load run report: {str(e)}",
                operation="load_report",
                table=ExecutionRunModel.__tablename__
            )
        finally:
            db.close()
    
    def list_reports(self, student_id: Optional[str] = None, limit: int = 50) -> List[WorkflowExecution]:
        db = self._session_factory()
        try:
            query = db.query(ExecutionRunModel)
            if student_id:
                query = query.filter(ExecutionRunModel.student_id == student_id)
            rows = query.order_by(ExecutionRunModel.started_at.desc()).limit(limit).all()
            return [WorkflowExecution.model_validate(row.report) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list run reports: {str(e)}",
                operation="list_reports",
                table=ExecutionRunModel.__tablename__
            )
        finally:
            db.close()
