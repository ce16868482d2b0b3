"""Configuration for the result engine.

Weighting and grade thresholds vary by institution, so they live in
environment variables (optionally a ``.env`` file) rather than in code.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .errors import ValidationError

load_dotenv()

PARTIAL_POLICIES = ('exclude', 'zero')
MCQ_MODES = ('any', 'all')


def safe_int(value, default):
    """Parse integer safely while preserving valid zero values."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def safe_float(value, default):
    """Parse float safely while preserving valid zero values."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


@dataclass(frozen=True)
class WeightPolicy:
    """Maximum points each component contributes to the 100-point total."""

    ca_max: float = 40.0
    exam_max: float = 60.0

    def __post_init__(self):
        if self.ca_max <= 0 or self.exam_max <= 0:
            raise ValidationError("Component maxima must be positive.", field='policy')
        if abs((self.ca_max + self.exam_max) - 100.0) > 1e-9:
            raise ValidationError(
                f"CA max ({self.ca_max:g}) and exam max ({self.exam_max:g}) must add up to 100.",
                field='policy',
            )


@dataclass(frozen=True)
class GradeScale:
    """Inclusive lower bounds for each letter; anything below d_min is F."""

    a_min: float = 70.0
    b_min: float = 60.0
    c_min: float = 50.0
    d_min: float = 40.0
    pass_mark: float = 40.0

    def __post_init__(self):
        bounds = (self.a_min, self.b_min, self.c_min, self.d_min)
        if any(b < 0 or b > 100 for b in bounds + (self.pass_mark,)):
            raise ValidationError("Grade thresholds must be between 0 and 100.", field='scale')
        if not all(bounds[i] > bounds[i + 1] for i in range(len(bounds) - 1)):
            raise ValidationError("Grade thresholds must be strictly descending (A > B > C > D).", field='scale')

    def thresholds(self):
        return (('A', self.a_min), ('B', self.b_min), ('C', self.c_min), ('D', self.d_min))


@dataclass(frozen=True)
class EngineSettings:
    partial_policy: str = 'exclude'
    mcq_mode: str = 'any'
    conflict_retries: int = 3

    def __post_init__(self):
        if self.partial_policy not in PARTIAL_POLICIES:
            raise ValidationError(f"Unknown partial component policy: {self.partial_policy!r}", field='partial_policy')
        if self.mcq_mode not in MCQ_MODES:
            raise ValidationError(f"Unknown MCQ grading mode: {self.mcq_mode!r}", field='mcq_mode')
        if self.conflict_retries < 0:
            raise ValidationError("CONFLICT_RETRIES cannot be negative.", field='conflict_retries')


def load_weight_policy(environ=None):
    env = os.environ if environ is None else environ
    return WeightPolicy(
        ca_max=safe_float(env.get('CA_MAX'), 40),
        exam_max=safe_float(env.get('EXAM_MAX'), 60),
    )


def load_grade_scale(environ=None):
    env = os.environ if environ is None else environ
    return GradeScale(
        a_min=safe_float(env.get('GRADE_A_MIN'), 70),
        b_min=safe_float(env.get('GRADE_B_MIN'), 60),
        c_min=safe_float(env.get('GRADE_C_MIN'), 50),
        d_min=safe_float(env.get('GRADE_D_MIN'), 40),
        pass_mark=safe_float(env.get('PASS_MARK'), 40),
    )


def load_engine_settings(environ=None):
    env = os.environ if environ is None else environ
    return EngineSettings(
        partial_policy=(env.get('PARTIAL_COMPONENT_POLICY') or 'exclude').strip().lower(),
        mcq_mode=(env.get('MCQ_MULTI_CORRECT') or 'any').strip().lower(),
        conflict_retries=safe_int(env.get('CONFLICT_RETRIES'), 3),
    )


def configure_logging(environ=None):
    """Set up file logging the same way for the app and the command-line tools."""
    env = os.environ if environ is None else environ
    level_name = (env.get('LOG_LEVEL') or 'INFO').strip().upper()
    logging.basicConfig(
        filename=env.get('LOG_FILE') or 'app.log',
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
