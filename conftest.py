import pytest

from result_engine.records import (
    Attempt, Exam, ExamType, Program, Question, QuestionOption, QuestionType, Student, Subject, Term,
)
from result_engine.store import MemoryStore


@pytest.fixture(autouse=True)
def clean_engine_env(monkeypatch):
    for name in (
        "CA_MAX", "EXAM_MAX", "GRADE_A_MIN", "GRADE_B_MIN", "GRADE_C_MIN", "GRADE_D_MIN",
        "PASS_MARK", "PARTIAL_COMPONENT_POLICY", "MCQ_MULTI_CORRECT", "CONFLICT_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)


def seed_class(store, program_id="JSS1", students=("S1", "S2", "S3"), subjects=("MTH", "ENG")):
    for subject_id in subjects:
        store.add_subject(Subject(id=subject_id, name=subject_id.title()))
    store.add_program(Program(id=program_id, name=program_id, subject_ids=list(subjects)))
    for student_id in students:
        store.add_student(Student(id=student_id, name=f"Student {student_id}"))
        store.enroll(student_id, program_id)
    return store


def seed_exam(store, exam_id="EX1", subject_id="MTH", program_id="JSS1", term=Term.FIRST,
              exam_type=ExamType.EXAM, questions=None):
    if questions is None:
        questions = [
            Question(
                id=f"{exam_id}-Q1", exam_id=exam_id, text="2 + 2", type=QuestionType.MCQ, max_marks=2,
                options=[
                    QuestionOption(id=f"{exam_id}-Q1-A", text="4", is_correct=True),
                    QuestionOption(id=f"{exam_id}-Q1-B", text="5"),
                ],
            ),
            Question(
                id=f"{exam_id}-Q2", exam_id=exam_id, text="Zero is even", type=QuestionType.TRUE_FALSE,
                max_marks=1,
                options=[
                    QuestionOption(id=f"{exam_id}-Q2-T", text="True", is_correct=True),
                    QuestionOption(id=f"{exam_id}-Q2-F", text="False"),
                ],
            ),
            Question(id=f"{exam_id}-Q3", exam_id=exam_id, text="Prove it", type=QuestionType.ESSAY, max_marks=7),
        ]
    store.add_exam(
        Exam(id=exam_id, subject_id=subject_id, program_id=program_id, term=term, exam_type=exam_type,
             title=f"{subject_id} {exam_type.value}"),
        questions,
    )
    return questions


def seed_attempt(store, attempt_id, student_id, exam_id):
    return store.add_attempt(Attempt(id=attempt_id, student_id=student_id, exam_id=exam_id))


@pytest.fixture
def store():
    return seed_class(MemoryStore())
