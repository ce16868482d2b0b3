"""Grade calculator: CA + exam -> total score and letter grade.

A component that has not been entered yet is ``None`` ("pending") and is never
treated as zero; a subject with a pending component has no total and no grade.
"""

import logging
import math
from collections import namedtuple

from .errors import ConcurrencyConflict, ValidationError
from .records import SubjectGradeKey, parse_term
from .settings import GradeScale, WeightPolicy, load_engine_settings, load_grade_scale, load_weight_policy

logger = logging.getLogger(__name__)

ComputedGrade = namedtuple('ComputedGrade', ['total_score', 'grade'])

# Marker for "leave this field as it is" in partial updates.
UNSET = object()

_PENDING_TOKENS = {'', 'null', 'none', '-', 'n/a'}

_REMARK_BANDS = (
    (80, 'Excellent performance. Keep up the outstanding work.'),
    (70, 'Very good work. Continue to strive for excellence.'),
    (60, 'Good effort. There is room for improvement.'),
    (50, 'Satisfactory. More effort is needed.'),
    (40, 'Below average. Requires significant improvement.'),
)
_REMARK_FLOOR = 'Poor performance. Immediate attention and extra support needed.'


def normalize_score(value, field=None):
    """Map the many spellings of "not entered" to None and numbers to float."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid score for {field or 'component'}: {value!r}", field=field)
    if isinstance(value, str):
        raw = value.strip()
        if raw.lower() in _PENDING_TOKENS:
            return None
        try:
            value = float(raw)
        except ValueError:
            raise ValidationError(f"Invalid score for {field or 'component'}: {raw!r}", field=field)
    if not isinstance(value, (int, float)):
        raise ValidationError(f"Invalid score for {field or 'component'}: {value!r}", field=field)
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"Invalid score for {field or 'component'}: {value!r}", field=field)
    return value


def validate_component(value, maximum, field):
    """Reject a component outside [0, maximum]; None passes through as pending."""
    value = normalize_score(value, field)
    if value is None:
        return None
    if value < 0 or value > maximum:
        raise ValidationError(f"{field} must be between 0 and {maximum:g}, got {value:g}.", field=field)
    return value


def rescale(raw, raw_max, target_max):
    """Rescale a raw component (e.g. a CA marked out of 100) onto the policy maximum."""
    raw = normalize_score(raw)
    if raw is None:
        return None
    if raw_max <= 0:
        raise ValidationError("Raw maximum must be positive.", field='raw_max')
    if raw < 0 or raw > raw_max:
        raise ValidationError(f"Raw score must be between 0 and {raw_max:g}, got {raw:g}.")
    return raw / raw_max * target_max


def grade_from_score(score, scale=None):
    """Get letter grade from score."""
    scale = scale or GradeScale()
    score = float(score)
    for letter, lower in scale.thresholds():
        if score >= lower:
            return letter
    return 'F'


def status_from_score(score, scale=None):
    """Get pass/fail status from score."""
    scale = scale or GradeScale()
    return 'Pass' if float(score) >= scale.pass_mark else 'Fail'


def remark_from_score(score):
    if score is None:
        return None
    for lower, remark in _REMARK_BANDS:
        if score >= lower:
            return remark
    return _REMARK_FLOOR


def compute_subject_grade(ca, exam, policy=None, scale=None):
    """Combine CA and exam into (total_score, grade).

    Out-of-range components raise ValidationError. Only the combined total is
    clamped to [0, 100], which absorbs rounding drift from rescaled inputs.
    """
    policy = policy or WeightPolicy()
    ca = validate_component(ca, policy.ca_max, 'continuous_assessment')
    exam = validate_component(exam, policy.exam_max, 'examination')
    if ca is None or exam is None:
        return ComputedGrade(None, None)
    total = max(0.0, min(100.0, ca + exam))
    return ComputedGrade(total, grade_from_score(total, scale))


def record_subject_scores(store, student_id, subject_id, program_id, term,
                          ca=UNSET, exam=UNSET, teacher_comment=UNSET,
                          policy=None, scale=None, retries=None):
    """Update one subject grade from a fresh read of both components.

    Only the fields passed in are changed. The write is conditional on the
    version that was read; a concurrent writer forces the whole
    read-compute-write cycle to run again, up to ``retries`` times.
    """
    term = parse_term(term)
    policy = policy or load_weight_policy()
    scale = scale or load_grade_scale()
    if retries is None:
        retries = load_engine_settings().conflict_retries

    store.require('student', student_id)
    program = store.require('program', program_id)
    store.require('subject', subject_id)
    if subject_id not in program.subject_ids:
        raise ValidationError(f"Subject {subject_id} is not offered by program {program_id}.", field='subject_id')

    if ca is not UNSET:
        ca = validate_component(ca, policy.ca_max, 'continuous_assessment')
    if exam is not UNSET:
        exam = validate_component(exam, policy.exam_max, 'examination')

    key = SubjectGradeKey(student_id, subject_id, program_id, term)
    conflicts = 0
    while True:
        current = store.get_subject_grade(key)
        new_ca = ca if ca is not UNSET else (current.continuous_assessment if current else None)
        new_exam = exam if exam is not UNSET else (current.examination if current else None)
        computed = compute_subject_grade(new_ca, new_exam, policy, scale)
        patch = {
            'continuous_assessment': new_ca,
            'examination': new_exam,
            'total_score': computed.total_score,
            'grade': computed.grade,
        }
        if teacher_comment is not UNSET:
            patch['teacher_comment'] = teacher_comment
        try:
            saved = store.upsert_subject_grade(key, patch, expected_version=current.version if current else 0)
        except ConcurrencyConflict:
            conflicts += 1
            if conflicts > retries:
                logger.error("Giving up on subject grade %s after %s conflicts", tuple(key), conflicts)
                raise
            logger.warning("Subject grade %s changed concurrently, retrying (%s/%s)", tuple(key), conflicts, retries)
            continue
        logger.info(
            "Subject grade saved: student=%s subject=%s program=%s term=%s total=%s grade=%s",
            student_id, subject_id, program_id, term.value, saved.total_score, saved.grade,
        )
        return saved
