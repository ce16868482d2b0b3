import threading

import pytest

from result_engine.errors import ConcurrencyConflict, NotFoundError, ValidationError
from result_engine.grading import record_subject_scores
from result_engine.records import (
    GRADE_SOURCE_AUTO, GRADE_SOURCE_TEACHER, ExamType, QuestionGradeKey, SubjectGradeKey, Term,
)
from conftest import seed_attempt, seed_exam

KEY = SubjectGradeKey("S1", "MTH", "JSS1", Term.FIRST)


def test_upsert_subject_grade_versions(store):
    created = store.upsert_subject_grade(KEY, {"continuous_assessment": 30.0}, expected_version=0)
    assert created.version == 1
    updated = store.upsert_subject_grade(KEY, {"examination": 50.0}, expected_version=1)
    assert updated.version == 2
    assert updated.continuous_assessment == 30.0
    assert store.get_subject_grade(KEY).examination == 50.0


def test_upsert_subject_grade_stale_version_conflicts(store):
    store.upsert_subject_grade(KEY, {"continuous_assessment": 30.0}, expected_version=0)
    with pytest.raises(ConcurrencyConflict) as exc:
        store.upsert_subject_grade(KEY, {"continuous_assessment": 10.0}, expected_version=0)
    assert exc.value.actual_version == 1
    assert store.get_subject_grade(KEY).continuous_assessment == 30.0


def test_upsert_subject_grade_rejects_unknown_fields(store):
    with pytest.raises(ValidationError):
        store.upsert_subject_grade(KEY, {"version": 9})


def test_term_labels_resolve_to_same_key(store):
    store.upsert_subject_grade(("S1", "MTH", "JSS1", "First Term"), {"total_score": 50.0})
    assert store.get_subject_grade(KEY).total_score == 50.0
    assert len(store.get_subject_grades(term="FIRST")) == 1
    assert store.get_subject_grades(term=Term.SECOND) == []


def test_returned_records_are_copies(store):
    store.upsert_subject_grade(KEY, {"total_score": 50.0})
    grade = store.get_subject_grade(KEY)
    grade.total_score = 99.0
    assert store.get_subject_grade(KEY).total_score == 50.0
    program = store.get_program("JSS1")
    program.subject_ids.append("PHY")
    assert store.get_program("JSS1").subject_ids == ["MTH", "ENG"]


def test_upsert_question_grade_keep_manual(store):
    key = QuestionGradeKey("A1", "Q1")
    store.upsert_question_grade(key, {"marks_awarded": 1.0, "max_marks": 2.0, "teacher_comment": None,
                                      "source": GRADE_SOURCE_TEACHER})
    kept = store.upsert_question_grade(key, {"marks_awarded": 2.0, "max_marks": 2.0, "teacher_comment": None,
                                             "source": GRADE_SOURCE_AUTO}, keep_manual=True)
    assert kept.marks_awarded == 1.0
    assert kept.source == GRADE_SOURCE_TEACHER


def test_mark_attempt_submitted_only_once(store):
    seed_exam(store)
    seed_attempt(store, "A1", "S1", "EX1")
    first = store.mark_attempt_submitted("A1", {"EX1-Q1": "x"}, 0, "2026-01-01T08:00:00")
    assert first.is_submitted
    assert store.mark_attempt_submitted("A1", {}, 0, "2026-01-02T08:00:00") is None
    with pytest.raises(NotFoundError):
        store.mark_attempt_submitted("NOPE", {}, 0, "2026-01-02T08:00:00")


def test_get_attempts_filters_by_exam_type(store):
    seed_exam(store, "CA1", exam_type=ExamType.CA)
    seed_exam(store, "EX1")
    seed_attempt(store, "A1", "S1", "CA1")
    seed_attempt(store, "A2", "S1", "EX1")
    seed_attempt(store, "A3", "S2", "EX1")
    assert [a.id for a in store.get_attempts("S1", "MTH", "JSS1", Term.FIRST)] == ["A1", "A2"]
    assert [a.id for a in store.get_attempts("S1", "MTH", "JSS1", Term.FIRST, ExamType.CA)] == ["A1"]
    assert store.get_attempts("S1", "ENG", "JSS1", Term.FIRST) == []


def test_require_raises_not_found(store):
    assert store.require("student", "S1").id == "S1"
    with pytest.raises(NotFoundError) as exc:
        store.require("exam", "EX404")
    assert str(exc.value) == "exam not found: EX404"


def test_concurrent_component_writes_are_not_lost(store):
    barrier = threading.Barrier(2)
    errors = []

    def write(**scores):
        try:
            barrier.wait()
            for _ in range(20):
                record_subject_scores(store, "S1", "MTH", "JSS1", Term.FIRST, retries=100, **scores)
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [
        threading.Thread(target=write, kwargs={"ca": 30}),
        threading.Thread(target=write, kwargs={"exam": 50}),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    grade = store.get_subject_grade(KEY)
    assert grade.continuous_assessment == 30
    assert grade.examination == 50
    assert grade.total_score == 80
    assert grade.version == 40


def test_held_key_does_not_block_other_keys(store):
    other = SubjectGradeKey("S2", "ENG", "JSS1", Term.FIRST)
    with store._key_lock(KEY):
        writer = threading.Thread(
            target=store.upsert_subject_grade, args=(other, {"continuous_assessment": 20.0}), daemon=True,
        )
        writer.start()
        writer.join(timeout=5)
        assert not writer.is_alive()
        assert store.get_subject_grade(other).continuous_assessment == 20.0

        blocked = threading.Thread(
            target=store.upsert_subject_grade, args=(KEY, {"continuous_assessment": 30.0}), daemon=True,
        )
        blocked.start()
        blocked.join(timeout=0.2)
        assert blocked.is_alive()
        assert store.get_subject_grade(KEY) is None
    blocked.join(timeout=5)
    assert not blocked.is_alive()
    assert store.get_subject_grade(KEY).continuous_assessment == 30.0


def test_key_locks_are_released_after_writes(store):
    def write(student_id, subject_id):
        record_subject_scores(store, student_id, subject_id, "JSS1", Term.FIRST, ca=20, exam=40)

    threads = [
        threading.Thread(target=write, args=(student_id, subject_id))
        for student_id in ("S1", "S2", "S3") for subject_id in ("MTH", "ENG")
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    grades = store.get_subject_grades(program_id="JSS1", term=Term.FIRST)
    assert {g.total_score for g in grades} == {60}
    assert len(grades) == 6
    store.upsert_question_grade(QuestionGradeKey("A1", "Q1"), {
        "marks_awarded": 1.0, "max_marks": 2.0, "teacher_comment": None, "source": GRADE_SOURCE_AUTO,
    })
    assert store._key_locks == {}
