"""Persistence and ELPA banding of assessment results."""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from .database import SessionLocal
from .models import AssessmentResultModel

logger = get_logger(__name__)

STANDARD_THRESHOLDS = (20, 40, 60, 80)
PRODUCTIVE_THRESHOLDS = (25, 45, 65, 80)

# Speaking, oral reading and writing are banded more strictly.
PRODUCTIVE_ASSESSMENT_TYPES = {"speaking-assessment", "oral-reading-fluency", "writing-sample"}

BAND_RECOMMENDATIONS = {
    1: [
        "Consider additional L1 bridge support for key concepts",
        "Use more visual scaffolding in upcoming activities",
        "Simplify language complexity in content",
    ],
    2: [
        "Continue building vocabulary with translations",
        "Provide sentence starters for responses",
        "Use graphic organizers to support comprehension",
    ],
    3: [
        "Encourage independent reading with support available",
        "Introduce more complex sentence structures",
        "Practice summarizing and inferencing skills",
    ],
    4: [
        "Challenge with grade-level academic vocabulary",
        "Encourage written responses with minimal scaffolding",
        "Introduce cross-curricular connections",
    ],
    5: [
        "Ready for enrichment activities",
        "Can serve as peer support for classmates",
        "Consider advanced vocabulary development",
    ],
}


def get_thresholds_for_type(assessment_type: str) -> tuple:
    if assessment_type in PRODUCTIVE_ASSESSMENT_TYPES:
        return PRODUCTIVE_THRESHOLDS
    return STANDARD_THRESHOLDS


def calculate_elpa_band(score: float, max_score: float, assessment_type: str) -> int:
    """Map a score to ELPA band 1-5; each threshold is an inclusive upper bound."""
    percentage = (score / max_score) * 100 if max_score > 0 else 0
    for band, threshold in enumerate(get_thresholds_for_type(assessment_type), start=1):
        if percentage <= threshold:
            return band
    return 5


def generate_recommendations(elpa_band: int, assessment_type: str) -> List[str]:
    recommendations = list(BAND_RECOMMENDATIONS.get(elpa_band, []))
    if assessment_type == "speaking-assessment" and elpa_band <= 2:
        recommendations.append("Provide more oral language practice opportunities")
    if assessment_type == "writing-sample" and elpa_band <= 3:
        recommendations.append("Use writing templates and sentence frames")
    return recommendations


class AssessmentStore:
    """Records assessment payloads and answers teacher queries."""
    
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory
    
    def record(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Store one assessment payload and return the stored result.

        ``payload`` uses the camelCase keys of the assessment wire format.
        """
        assessment_type = payload["assessmentType"]
        score = payload.get("score") or 0
        max_score = payload.get("maxScore") or 100
        elpa_band = calculate_elpa_band(score, max_score, assessment_type)
        recommendations = payload.get("recommendations") or generate_recommendations(
            elpa_band, assessment_type
        )
        
        row = AssessmentResultModel(
            id=str(uuid.uuid4()),
            student_id=payload["studentId"],
            session_id=payload.get("sessionId"),
            workflow_id=payload.get("workflowId"),
            node_id=payload.get("nodeId"),
            assessment_type=assessment_type,
            score=score,
            max_score=max_score,
            elpa_band=elpa_band,
            details={
                "questionResults": payload.get("questionResults") or [],
                "timeSpentSeconds": payload.get("timeSpentSeconds") or 0,
                "feedback": payload.get("feedback") or "",
                "recommendations": recommendations,
                "scaffoldingUsed": payload.get("scaffoldingUsed") or [],
            },
            recorded_at=datetime.utcnow(),
        )
        
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            result = self._to_dict(row)
            logger.info(
                f"Recorded {assessment_type} for student {row.student_id}: "
                f"score {score}/{max_score}, band {elpa_band}"
            )
            return result
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(
                f"Failed to record assessment: {str(e)}",
                operation="record",
                table=AssessmentResultModel.__tablename__
            )
        finally:
            db.close()
    
    def list_results(
        self,
        student_id: Optional[str] = None,
        session_id: Optional[str] = None,
        assessment_type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            query = db.query(AssessmentResultModel)
            if student_id:
                query = query.filter(AssessmentResultModel.student_id == student_id)
            if session_id:
                query = query.filter(AssessmentResultModel.session_id == session_id)
            if assessment_type:
                query = query.filter(AssessmentResultModel.assessment_type == assessment_type)
            rows = query.order_by(AssessmentResultModel.recorded_at.desc()).limit(limit).all()
            return [self._to_dict(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to list assessments: {str(e)}",
                operation="list",
                table=AssessmentResultModel.__tablename__
            )
        finally:
            db.close()
    
    @staticmethod
    def _to_dict(row: AssessmentResultModel) -> Dict[str, Any]:
        details = row.details or {}
        return {
            "id": row.id,
            "studentId": row.student_id,
            "sessionId": row.session_id,
            "workflowId": row.workflow_id,
            "nodeId": row.node_id,
            "assessmentType": row.assessment_type,
            "score": row.score,
            "maxScore": row.max_score,
            "elpaBand": row.elpa_band,
            "recordedAt": row.recorded_at.isoformat() if row.recorded_at else None,
            "questionResults": details.get("questionResults", []),
            "timeSpentSeconds": details.get("timeSpentSeconds", 0),
            "feedback": details.get("feedback", ""),
            "recommendations": details.get("recommendations", []),
        }
