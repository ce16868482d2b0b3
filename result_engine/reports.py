"""Term reports, class rankings and annual reports.

Everything here is a projection of the stored subject grades and is rebuilt
from scratch on every call. Pending subjects (no total yet) are left out of
every sum, average and ranking.
"""

import logging

from .grading import grade_from_score, remark_from_score, status_from_score
from .question_grading import question_results
from .records import (
    STATUS_NO_DATA, TERMS, AnnualReport, ClassRanking, RankEntry, SubjectLine, TermReport,
    TermTrend, parse_term,
)
from .settings import load_grade_scale

logger = logging.getLogger(__name__)

SCORE_EPSILON = 1e-9


def same_score(a, b):
    return abs(float(a or 0) - float(b or 0)) <= SCORE_EPSILON


def competition_positions(scored):
    """Standard competition ranking of (ident, score) pairs, best first.

    Equal scores share a position and the next distinct score skips ahead by
    the size of the tie: [90, 85, 85, 70] -> [1, 2, 2, 4]. Ties are listed in
    ident order so the output is deterministic.
    """
    ordered = sorted(scored, key=lambda item: (-float(item[1]), str(item[0])))
    ranked = []
    prev_score = None
    current_pos = 0
    for index, (ident, score) in enumerate(ordered, 1):
        if prev_score is None or not same_score(score, prev_score):
            current_pos = index
        ranked.append((ident, score, current_pos))
        prev_score = score
    return ranked


def summarize_grades(grades, subject_ids):
    """(graded subject count, total, average) over the program's graded subjects."""
    offered = set(subject_ids)
    totals = [float(g.total_score) for g in grades if g.subject_id in offered and g.total_score is not None]
    total = sum(totals)
    average = total / len(totals) if totals else 0.0
    return len(totals), total, average


def _group_by_student(grades):
    grouped = {}
    for grade in grades:
        grouped.setdefault(grade.student_id, []).append(grade)
    return grouped


def _ranking_from_snapshot(program, term, enrolled, class_grades):
    by_student = _group_by_student(class_grades)
    summaries = {}
    for student in enrolled:
        count, total, average = summarize_grades(by_student.get(student.id, []), program.subject_ids)
        if count:
            summaries[student.id] = (count, total, average)
    entries = [
        RankEntry(
            student_id=sid,
            average_score=average,
            position=position,
            total_subjects=summaries[sid][0],
            total_score=summaries[sid][1],
        )
        for sid, average, position in competition_positions(
            [(sid, summary[2]) for sid, summary in summaries.items()]
        )
    ]
    logger.debug("Ranked %s of %s enrolled student(s) in %s/%s", len(entries), len(enrolled), program.id, term.value)
    return ClassRanking(program_id=program.id, term=term, entries=entries)


def rank_class(store, program_id, term):
    """Rank every enrolled student with at least one graded subject by average."""
    term = parse_term(term)
    program = store.require('program', program_id)
    enrolled = store.get_enrolled_students(program_id)
    class_grades = store.get_subject_grades(program_id=program_id, term=term)
    return _ranking_from_snapshot(program, term, enrolled, class_grades)


def _subject_lines(store, program, term, student_id, class_grades, enrolled_ids, scale, detailed):
    lines = []
    for subject_id in program.subject_ids:
        subject = store.get_subject(subject_id)
        peers = [
            (g.student_id, float(g.total_score)) for g in class_grades
            if g.subject_id == subject_id and g.total_score is not None and g.student_id in enrolled_ids
        ]
        own = next((g for g in class_grades if g.subject_id == subject_id and g.student_id == student_id), None)
        position = None
        for sid, _score, pos in competition_positions(peers):
            if sid == student_id:
                position = pos
                break
        total = own.total_score if own else None
        line = SubjectLine(
            subject_id=subject_id,
            subject_name=subject.name if subject else '',
            continuous_assessment=own.continuous_assessment if own else None,
            examination=own.examination if own else None,
            total_score=total,
            grade=own.grade if own else None,
            status=status_from_score(total, scale) if total is not None else None,
            position=position,
            class_size=len(peers),
            teacher_comment=own.teacher_comment if own else None,
        )
        if detailed:
            line.question_results = [
                result
                for attempt in store.get_attempts(student_id, subject_id, program.id, term)
                for result in question_results(store, attempt.id)
            ]
        lines.append(line)
    return lines


def build_term_report(store, student_id, program_id, term, scale=None, ranking=None, detailed=False):
    """Summarize one student's term in one program.

    A student who is not enrolled, or has no graded subject yet, gets a report
    with ``has_data=False`` and status NO_DATA instead of a misleading 0 average.
    """
    term = parse_term(term)
    scale = scale or load_grade_scale()
    store.require('student', student_id)
    program = store.require('program', program_id)

    enrolled = store.get_enrolled_students(program_id)
    enrolled_ids = {s.id for s in enrolled}
    class_grades = store.get_subject_grades(program_id=program_id, term=term)
    if ranking is None:
        ranking = _ranking_from_snapshot(program, term, enrolled, class_grades)
    conduct = store.get_term_conduct(student_id, program_id, term)

    report = TermReport(
        student_id=student_id,
        program_id=program_id,
        term=term,
        total_students=ranking.total_students,
        attendance_rate=conduct.attendance_rate if conduct else None,
        conduct_grade=conduct.conduct_grade if conduct else None,
        remarks=conduct.remarks if conduct else None,
    )
    if student_id not in enrolled_ids:
        report.has_data = False
        report.status = STATUS_NO_DATA
        return report

    own = [g for g in class_grades if g.student_id == student_id]
    count, total, average = summarize_grades(own, program.subject_ids)
    report.subjects = _subject_lines(store, program, term, student_id, class_grades, enrolled_ids, scale, detailed)
    report.pending_subjects = sum(1 for line in report.subjects if line.total_score is None)
    if not count:
        report.has_data = False
        report.status = STATUS_NO_DATA
        return report

    entry = ranking.position_of(student_id)
    report.total_subjects = count
    report.total_score = total
    report.average_score = average
    report.grade = grade_from_score(average, scale)
    report.status = status_from_score(average, scale)
    report.position = entry.position if entry else None
    if not report.remarks:
        report.remarks = remark_from_score(average)
    return report


def build_class_reports(store, program_id, term, scale=None, detailed=False):
    """Term reports for every enrolled student, positioned from one ranking."""
    ranking = rank_class(store, program_id, term)
    return [
        build_term_report(store, student.id, program_id, ranking.term, scale=scale, ranking=ranking, detailed=detailed)
        for student in store.get_enrolled_students(program_id)
    ]


def build_annual_report(store, student_id, program_id, scale=None):
    """Combine the three term reports into a yearly average and a trend.

    Terms without graded subjects are left out of the average entirely; if no
    term has data the report is NO_DATA with no average.
    """
    scale = scale or load_grade_scale()
    terms = {term: build_term_report(store, student_id, program_id, term, scale=scale) for term in TERMS}
    annual = AnnualReport(student_id=student_id, program_id=program_id, terms=terms)

    with_data = [(term, terms[term]) for term in TERMS if terms[term].has_data]
    if not with_data:
        annual.has_data = False
        annual.status = STATUS_NO_DATA
        return annual

    previous = None
    for term, report in with_data:
        change = None if previous is None else round(report.average_score - previous, 2)
        annual.trend.append(TermTrend(term=term, average_score=report.average_score, change=change))
        previous = report.average_score

    annual.terms_counted = len(with_data)
    annual.yearly_average = sum(r.average_score for _t, r in with_data) / len(with_data)
    annual.grade = grade_from_score(annual.yearly_average, scale)
    annual.status = status_from_score(annual.yearly_average, scale)
    return annual
