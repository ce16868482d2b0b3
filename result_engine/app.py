"""
Result Engine JSON API

A thin Flask layer over the grading library: it parses requests, calls the
engine and serializes the records it returns. No grading rules live here.
"""

import logging
import os

from flask import Flask, jsonify, request
from flask_migrate import Migrate

from .db import PostgresStore
from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .forms import QuestionGradeForm, SubjectKeyForm, SubjectScoresForm, SubmitAttemptForm
from .grading import UNSET, record_subject_scores
from .question_grading import (
    calculate_subject_grade, component_max, compute_component_score, question_results,
    submit_attempt, upsert_question_grade,
)
from .records import parse_term
from .reports import build_annual_report, build_class_reports, build_term_report, rank_class
from .settings import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
migrate = Migrate(app, directory=os.environ.get('MIGRATIONS_DIR', 'migrations'))

_store = None


def get_store():
    """Store used by the API; a PostgresStore on DATABASE_URL unless replaced."""
    global _store
    if _store is None:
        _store = PostgresStore(os.environ.get('DATABASE_URL', ''))
    return _store


def set_store(store):
    global _store
    _store = store
    return store


def _arg(name, required=True):
    value = (request.args.get(name) or '').strip()
    if required and not value:
        raise ValidationError(f"Query parameter '{name}' is required.", field=name)
    return value or None


def _flag(name):
    return (request.args.get(name) or '').strip().lower() in ('1', 'true', 'yes')


# ==================== ERRORS ====================

@app.errorhandler(ValidationError)
def validation_error(error):
    logger.info("Rejected request to %s: %s", request.path, error.message)
    body = {'error': error.message}
    if error.field:
        body['field'] = error.field
    return jsonify(body), 400


@app.errorhandler(NotFoundError)
def not_found_error(error):
    return jsonify({'error': str(error), 'kind': error.kind}), 404


@app.errorhandler(ConcurrencyConflict)
def conflict_error(error):
    logger.warning("Conflict surfaced to client on %s: %s", request.path, error)
    return jsonify({'error': str(error)}), 409


# ==================== GRADES ====================

@app.route('/api/grades', methods=['GET'])
def list_grades():
    term = _arg('term', required=False)
    grades = get_store().get_subject_grades(
        student_id=_arg('student_id', required=False),
        subject_id=_arg('subject_id', required=False),
        program_id=_arg('program_id', required=False),
        term=parse_term(term) if term else None,
    )
    return jsonify({'grades': [g.to_dict() for g in grades]})


@app.route('/api/grades', methods=['POST'])
def save_grade():
    """Record CA and/or exam scores; fields left out of the payload are kept."""
    form = SubjectScoresForm().require_valid()
    comment = UNSET
    if form.was_sent('teacher_comment'):
        comment = (form.teacher_comment.data or '').strip() or None
    grade = record_subject_scores(
        get_store(),
        form.text('student_id'),
        form.text('subject_id'),
        form.text('program_id'),
        form.term.data,
        ca=form.continuous_assessment.data if form.was_sent('continuous_assessment') else UNSET,
        exam=form.examination.data if form.was_sent('examination') else UNSET,
        teacher_comment=comment,
    )
    return jsonify({'grade': grade.to_dict()})


@app.route('/api/grades/calculate', methods=['POST'])
def calculate_grade():
    """Derive CA and exam from the student's graded attempts."""
    form = SubjectKeyForm().require_valid()
    grade = calculate_subject_grade(
        get_store(),
        form.text('student_id'),
        form.text('subject_id'),
        form.text('program_id'),
        form.term.data,
    )
    return jsonify({'grade': grade.to_dict()})


# ==================== QUESTION GRADING ====================

@app.route('/api/grading/questions', methods=['GET'])
def attempt_breakdown():
    store = get_store()
    attempt = store.require('attempt', _arg('attempt_id'))
    return jsonify({
        'attempt': attempt.to_dict(),
        'raw_score': compute_component_score(store, attempt.id),
        'max_score': component_max(store, attempt.exam_id),
        'questions': [r.to_dict() for r in question_results(store, attempt.id)],
    })


@app.route('/api/grading/questions', methods=['POST'])
def grade_question():
    form = QuestionGradeForm().require_valid()
    store = get_store()
    attempt_id = form.text('attempt_id')
    grade = upsert_question_grade(
        store,
        attempt_id,
        form.text('question_id'),
        form.marks_awarded.data,
        form.max_marks.data,
        comment=form.comment.data,
    )
    return jsonify({'grade': grade.to_dict(), 'attempt': store.require('attempt', attempt_id).to_dict()})


@app.route('/api/attempts/<attempt_id>/submit', methods=['POST'])
def submit(attempt_id):
    form = SubmitAttemptForm().require_valid()
    payload = request.get_json(silent=True) or {}
    attempt = submit_attempt(
        get_store(),
        attempt_id,
        payload.get('answers', {}),
        tab_switches=form.tab_switches.data or 0,
    )
    return jsonify({'attempt': attempt.to_dict()})


# ==================== REPORTS ====================

@app.route('/api/reports', methods=['GET'])
def term_report():
    """One student's term report, or the whole class when student_id is omitted."""
    store = get_store()
    program_id = _arg('program_id')
    term = parse_term(_arg('term'))
    student_id = _arg('student_id', required=False)
    detailed = _flag('detailed')
    if student_id is None:
        reports = build_class_reports(store, program_id, term, detailed=detailed)
        return jsonify({'reports': [r.to_dict() for r in reports]})
    report = build_term_report(store, student_id, program_id, term, detailed=detailed)
    return jsonify({'report': report.to_dict()})


@app.route('/api/reports/annual', methods=['GET'])
def annual_report():
    report = build_annual_report(get_store(), _arg('student_id'), _arg('program_id'))
    return jsonify({'report': report.to_dict()})


@app.route('/api/rankings', methods=['GET'])
def rankings():
    ranking = rank_class(get_store(), _arg('program_id'), _arg('term'))
    return jsonify({'ranking': ranking.to_dict()})


if __name__ == '__main__':
    app.run(debug=os.environ.get('FLASK_DEBUG', '').strip().lower() in ('1', 'true', 'yes'))
