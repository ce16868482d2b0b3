"""Question grading: per-question marks rolled up into CA/exam component scores."""

import logging
from datetime import datetime

from .errors import NotFoundError, ValidationError
from .grading import UNSET, normalize_score, record_subject_scores
from .records import (
    GRADE_SOURCE_AUTO, GRADE_SOURCE_TEACHER, ExamType, QuestionGradeKey, QuestionResult,
    QuestionType, parse_term,
)
from .settings import load_engine_settings, load_weight_policy

logger = logging.getLogger(__name__)


def _attempt_context(store, attempt_id):
    attempt = store.require('attempt', attempt_id)
    questions = store.get_exam_questions(attempt.exam_id)
    return attempt, questions


def _partial_policy(partial_policy):
    return partial_policy or load_engine_settings().partial_policy


def upsert_question_grade(store, attempt_id, question_id, marks_awarded, max_marks, comment=None):
    """Save a teacher's marks for one question; re-saving overwrites, never duplicates."""
    marks = normalize_score(marks_awarded, 'marks_awarded')
    maximum = normalize_score(max_marks, 'max_marks')
    if marks is None:
        raise ValidationError("marks_awarded is required.", field='marks_awarded')
    if maximum is None or maximum <= 0:
        raise ValidationError("max_marks must be a positive number.", field='max_marks')
    if marks < 0 or marks > maximum:
        raise ValidationError(f"marks_awarded must be between 0 and {maximum:g}, got {marks:g}.", field='marks_awarded')

    attempt, questions = _attempt_context(store, attempt_id)
    question = next((q for q in questions if q.id == question_id), None)
    if question is None:
        raise NotFoundError('question', question_id)
    if abs(float(question.max_marks) - maximum) > 1e-9:
        raise ValidationError(
            f"max_marks {maximum:g} does not match question maximum {float(question.max_marks):g}.",
            field='max_marks',
        )

    grade = store.upsert_question_grade(
        QuestionGradeKey(attempt.id, question_id),
        {
            'marks_awarded': marks,
            'max_marks': maximum,
            'teacher_comment': (comment or '').strip() or None,
            'source': GRADE_SOURCE_TEACHER,
        },
    )
    logger.info("Question graded: attempt=%s question=%s marks=%s/%s", attempt.id, question_id, marks, maximum)
    refresh_attempt_score(store, attempt.id)
    return grade


def component_max(store, exam_id):
    """Sum of the question maxima of an exam."""
    return sum(float(q.max_marks) for q in store.get_exam_questions(exam_id))


def compute_component_score(store, attempt_id, partial_policy=None):
    """Raw score of one attempt, or None while it is still pending.

    With the "exclude" policy an attempt counts only once every question has a
    grade; "zero" scores ungraded questions as 0.
    """
    attempt, questions = _attempt_context(store, attempt_id)
    grades = {g.question_id: g for g in store.get_question_grades(attempt.id)}
    if not questions:
        return None
    if _partial_policy(partial_policy) == 'exclude' and any(q.id not in grades for q in questions):
        return None
    return sum(float(grades[q.id].marks_awarded) for q in questions if q.id in grades)


def attempt_percentage(store, attempt_id, partial_policy=None):
    attempt = store.require('attempt', attempt_id)
    if not attempt.is_submitted:
        return None
    score = compute_component_score(store, attempt_id, partial_policy)
    maximum = component_max(store, attempt.exam_id)
    if score is None or maximum <= 0:
        return None
    return score / maximum * 100.0


def refresh_attempt_score(store, attempt_id, partial_policy=None):
    """Store the attempt's coarse percentage (None until fully graded)."""
    percentage = attempt_percentage(store, attempt_id, partial_policy)
    if percentage is not None:
        percentage = round(percentage, 2)
    return store.update_attempt_score(attempt_id, percentage)


def _picked(answer):
    if answer is None:
        return set()
    if isinstance(answer, (list, tuple, set)):
        return {str(a).strip() for a in answer if str(a).strip()}
    text = str(answer).strip()
    return {text} if text else set()


def _resolve_picks(question, answer):
    """Map submitted option ids or option texts onto option ids."""
    by_text = {o.text.strip().lower(): o.id for o in question.options}
    ids = {o.id for o in question.options}
    resolved = set()
    for pick in _picked(answer):
        if pick in ids:
            resolved.add(pick)
        elif pick.lower() in by_text:
            resolved.add(by_text[pick.lower()])
        else:
            resolved.add(pick)
    return resolved


def is_answer_correct(question, answer, mcq_mode=None):
    """True/False for auto-scorable questions, None when it needs a teacher."""
    if not QuestionType(question.type).auto_scorable:
        return None
    correct = {o.id for o in question.options if o.is_correct}
    if not correct:
        return None
    picks = _resolve_picks(question, answer)
    if not picks:
        return False
    mode = mcq_mode or load_engine_settings().mcq_mode
    if mode == 'all':
        return picks == correct
    return picks <= correct


def auto_grade_attempt(store, attempt_id, mcq_mode=None):
    """Write provisional marks for MCQ/TRUE_FALSE questions; teacher marks always win."""
    attempt, questions = _attempt_context(store, attempt_id)
    written = []
    for question in questions:
        correct = is_answer_correct(question, attempt.answers.get(question.id), mcq_mode)
        if correct is None:
            continue
        maximum = float(question.max_marks)
        grade = store.upsert_question_grade(
            QuestionGradeKey(attempt.id, question.id),
            {
                'marks_awarded': maximum if correct else 0.0,
                'max_marks': maximum,
                'teacher_comment': None,
                'source': GRADE_SOURCE_AUTO,
            },
            keep_manual=True,
        )
        written.append(grade)
    logger.info("Auto-graded %s question(s) for attempt %s", len(written), attempt.id)
    return written


def submit_attempt(store, attempt_id, answers, tab_switches=0, submitted_at=None, mcq_mode=None):
    """Freeze the answers of an attempt, auto-grade what can be, refresh its score."""
    attempt, questions = _attempt_context(store, attempt_id)
    if not isinstance(answers, dict):
        raise ValidationError("answers must map question ids to answers.", field='answers')
    question_ids = {q.id for q in questions}
    unknown = sorted(set(answers) - question_ids)
    if unknown:
        raise ValidationError(f"Answers for unknown questions: {', '.join(unknown)}", field='answers')
    try:
        tab_switches = int(tab_switches or 0)
    except (TypeError, ValueError):
        raise ValidationError("tab_switches must be a whole number.", field='tab_switches')
    if tab_switches < 0:
        raise ValidationError("tab_switches cannot be negative.", field='tab_switches')

    submitted = store.mark_attempt_submitted(attempt.id, answers, tab_switches, submitted_at or datetime.now())
    if submitted is None:
        raise ValidationError(f"Attempt {attempt.id} has already been submitted.", field='attempt_id')
    if tab_switches:
        logger.warning("Attempt %s submitted with %s tab switch(es)", attempt.id, tab_switches)
    auto_grade_attempt(store, attempt.id, mcq_mode)
    return refresh_attempt_score(store, attempt.id)


def question_results(store, attempt_id, mcq_mode=None):
    """Per-question breakdown of an attempt for review screens."""
    attempt, questions = _attempt_context(store, attempt_id)
    grades = {g.question_id: g for g in store.get_question_grades(attempt.id)}
    results = []
    for question in questions:
        grade = grades.get(question.id)
        answer = attempt.answers.get(question.id)
        results.append(QuestionResult(
            question_id=question.id,
            question_text=question.text,
            question_type=QuestionType(question.type),
            student_answer=answer,
            marks_awarded=grade.marks_awarded if grade else None,
            max_marks=float(question.max_marks),
            teacher_comment=grade.teacher_comment if grade else None,
            is_correct=is_answer_correct(question, answer, mcq_mode),
            graded_by=grade.source if grade else None,
        ))
    return results


def derive_subject_components(store, student_id, subject_id, program_id, term, policy=None, partial_policy=None):
    """CA and exam components from the student's graded attempts.

    Each component is the mean attempt percentage scaled onto the policy
    maximum. A component with no attempts is UNSET so the stored score is
    kept; any attempt still pending leaves it None.
    """
    term = parse_term(term)
    policy = policy or load_weight_policy()
    maxima = {ExamType.CA: policy.ca_max, ExamType.EXAM: policy.exam_max}
    components = {}
    for exam_type, maximum in maxima.items():
        attempts = store.get_attempts(student_id, subject_id, program_id, term, exam_type)
        percentages = [attempt_percentage(store, a.id, partial_policy) for a in attempts]
        if not percentages:
            components[exam_type] = UNSET
            continue
        if any(p is None for p in percentages):
            components[exam_type] = None
            continue
        mean = sum(percentages) / len(percentages)
        components[exam_type] = min(round(mean * maximum / 100.0, 2), maximum)
    return components[ExamType.CA], components[ExamType.EXAM]


def calculate_subject_grade(store, student_id, subject_id, program_id, term,
                            policy=None, scale=None, partial_policy=None):
    """Recompute a subject grade from attempts and store it.

    Components without any attempt keep whatever score is already stored.
    """
    policy = policy or load_weight_policy()
    ca, exam = derive_subject_components(store, student_id, subject_id, program_id, term, policy, partial_policy)
    return record_subject_scores(
        store, student_id, subject_id, program_id, term,
        ca=ca, exam=exam, policy=policy, scale=scale,
    )
