"""Grade aggregation and academic report engine."""

from .errors import ConcurrencyConflict, NotFoundError, ResultEngineError, ValidationError
from .grading import compute_subject_grade, grade_from_score, record_subject_scores, status_from_score
from .question_grading import (
    auto_grade_attempt, calculate_subject_grade, compute_component_score, derive_subject_components,
    question_results, submit_attempt, upsert_question_grade,
)
from .records import Term, parse_term
from .reports import build_annual_report, build_class_reports, build_term_report, rank_class
from .settings import GradeScale, WeightPolicy
from .store import BaseStore, MemoryStore

__version__ = '1.0.0'
