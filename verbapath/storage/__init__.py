"""Database models and storage layer."""

from .database import Base, init_database, get_db, create_tables, drop_tables, reset_database_engine
from .models import ExecutionRunModel, AssessmentResultModel
from .run_store import RunStore
from .assessment_store import (
    AssessmentStore,
    calculate_elpa_band,
    generate_recommendations,
    get_thresholds_for_type,
)

__all__ = [
    "Base",
    "init_database",
    "get_db", 
    "create_tables",
    "drop_tables",
    "reset_database_engine",
    "ExecutionRunModel",
    "AssessmentResultModel",
    "RunStore",
    "AssessmentStore",
    "calculate_elpa_band",
    "generate_recommendations",
    "get_thresholds_for_type",
]
