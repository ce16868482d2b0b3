"""Store interface the engine reads and writes through, plus an in-memory store.

The engine never caches anything between calls; every report and ranking is
derived from what the store returns at call time.
"""

import contextlib
import copy
import threading
from dataclasses import replace

from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .records import (
    GRADE_SOURCE_TEACHER, QuestionGrade, QuestionGradeKey, SubjectGrade, SubjectGradeKey,
    parse_term,
)

SUBJECT_GRADE_FIELDS = ('continuous_assessment', 'examination', 'total_score', 'grade', 'teacher_comment')
QUESTION_GRADE_FIELDS = ('marks_awarded', 'max_marks', 'teacher_comment', 'source')


def check_patch(patch, allowed):
    unknown = set(patch) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown fields in update: {', '.join(sorted(unknown))}")


class BaseStore:
    """Narrow persistence boundary of the engine.

    Getters return None (single record) or an empty list when nothing matches;
    ``require`` turns a missing record into NotFoundError.
    """

    def require(self, kind, ident):
        getter = getattr(self, f"get_{kind}")
        record = getter(ident)
        if record is None:
            raise NotFoundError(kind, ident)
        return record

    # --- reads ---
    def get_student(self, student_id):
        raise NotImplementedError

    def get_program(self, program_id):
        raise NotImplementedError

    def get_subject(self, subject_id):
        raise NotImplementedError

    def get_exam(self, exam_id):
        raise NotImplementedError

    def get_attempt(self, attempt_id):
        raise NotImplementedError

    def get_enrolled_students(self, program_id):
        raise NotImplementedError

    def get_subject_grades(self, student_id=None, subject_id=None, program_id=None, term=None):
        raise NotImplementedError

    def get_subject_grade(self, key):
        matches = self.get_subject_grades(*key)
        return matches[0] if matches else None

    def get_exam_questions(self, exam_id):
        raise NotImplementedError

    def get_attempts(self, student_id, subject_id, program_id, term, exam_type=None):
        raise NotImplementedError

    def get_question_grades(self, attempt_id):
        raise NotImplementedError

    def get_term_conduct(self, student_id, program_id, term):
        raise NotImplementedError

    # --- writes ---
    def upsert_subject_grade(self, key, patch, expected_version=None):
        """Create or update one subject grade.

        ``expected_version`` of 0 means the row must not exist yet; any other
        number must match the stored version. None writes unconditionally.
        Raises ConcurrencyConflict on mismatch.
        """
        raise NotImplementedError

    def upsert_question_grade(self, key, patch, keep_manual=False):
        """Create or overwrite the grade of one question in one attempt.

        With ``keep_manual`` an existing teacher grade is returned untouched.
        """
        raise NotImplementedError

    def mark_attempt_submitted(self, attempt_id, answers, tab_switches, submitted_at):
        """Freeze answers; returns the attempt, or None if it was already submitted."""
        raise NotImplementedError

    def update_attempt_score(self, attempt_id, score):
        raise NotImplementedError


class MemoryStore(BaseStore):
    """Thread-safe in-process store, used by tests and small deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._key_locks = {}
        self._students = {}
        self._programs = {}
        self._subjects = {}
        self._enrollments = {}
        self._exams = {}
        self._questions = {}
        self._attempts = {}
        self._question_grades = {}
        self._subject_grades = {}
        self._conduct = {}

    @contextlib.contextmanager
    def _key_lock(self, key):
        """Serialize writers of one key; the lock is dropped once no writer holds or waits for it."""
        with self._lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if not entry[1]:
                    del self._key_locks[key]

    # --- seeding ---
    def add_student(self, student):
        with self._lock:
            self._students[student.id] = copy.deepcopy(student)
        return student

    def add_subject(self, subject):
        with self._lock:
            self._subjects[subject.id] = copy.deepcopy(subject)
        return subject

    def add_program(self, program):
        with self._lock:
            self._programs[program.id] = copy.deepcopy(program)
            self._enrollments.setdefault(program.id, [])
        return program

    def enroll(self, student_id, program_id):
        with self._lock:
            enrolled = self._enrollments.setdefault(program_id, [])
            if student_id not in enrolled:
                enrolled.append(student_id)

    def add_exam(self, exam, questions=()):
        with self._lock:
            exam = copy.deepcopy(exam)
            for question in questions:
                self._questions[question.id] = copy.deepcopy(question)
                if question.id not in exam.question_ids:
                    exam.question_ids.append(question.id)
            self._exams[exam.id] = exam
        return exam

    def add_attempt(self, attempt):
        with self._lock:
            self._attempts[attempt.id] = copy.deepcopy(attempt)
        return attempt

    def set_term_conduct(self, conduct):
        conduct = replace(conduct, term=parse_term(conduct.term))
        with self._lock:
            self._conduct[(conduct.student_id, conduct.program_id, conduct.term)] = conduct
        return conduct

    # --- reads ---
    def get_student(self, student_id):
        with self._lock:
            return copy.deepcopy(self._students.get(student_id))

    def get_program(self, program_id):
        with self._lock:
            return copy.deepcopy(self._programs.get(program_id))

    def get_subject(self, subject_id):
        with self._lock:
            return copy.deepcopy(self._subjects.get(subject_id))

    def get_exam(self, exam_id):
        with self._lock:
            return copy.deepcopy(self._exams.get(exam_id))

    def get_attempt(self, attempt_id):
        with self._lock:
            return copy.deepcopy(self._attempts.get(attempt_id))

    def get_enrolled_students(self, program_id):
        with self._lock:
            ids = list(self._enrollments.get(program_id, []))
            return [copy.deepcopy(self._students[sid]) for sid in ids if sid in self._students]

    def get_subject_grades(self, student_id=None, subject_id=None, program_id=None, term=None):
        term = parse_term(term) if term is not None else None
        with self._lock:
            rows = [
                grade for grade in self._subject_grades.values()
                if (student_id is None or grade.student_id == student_id)
                and (subject_id is None or grade.subject_id == subject_id)
                and (program_id is None or grade.program_id == program_id)
                and (term is None or grade.term == term)
            ]
            return [copy.deepcopy(g) for g in sorted(rows, key=lambda g: (g.student_id, g.subject_id, g.term.sort_value))]

    def get_exam_questions(self, exam_id):
        with self._lock:
            exam = self._exams.get(exam_id)
            if exam is None:
                return []
            return [copy.deepcopy(self._questions[qid]) for qid in exam.question_ids if qid in self._questions]

    def get_attempts(self, student_id, subject_id, program_id, term, exam_type=None):
        term = parse_term(term)
        with self._lock:
            out = []
            for attempt in self._attempts.values():
                exam = self._exams.get(attempt.exam_id)
                if exam is None or attempt.student_id != student_id:
                    continue
                if exam.subject_id != subject_id or exam.program_id != program_id or exam.term != term:
                    continue
                if exam_type is not None and exam.exam_type != exam_type:
                    continue
                out.append(copy.deepcopy(attempt))
            return sorted(out, key=lambda a: a.id)

    def get_question_grades(self, attempt_id):
        with self._lock:
            return [
                copy.deepcopy(g) for (aid, _qid), g in sorted(self._question_grades.items())
                if aid == attempt_id
            ]

    def get_term_conduct(self, student_id, program_id, term):
        with self._lock:
            return copy.deepcopy(self._conduct.get((student_id, program_id, parse_term(term))))

    # --- writes ---
    def upsert_subject_grade(self, key, patch, expected_version=None):
        check_patch(patch, SUBJECT_GRADE_FIELDS)
        key = SubjectGradeKey(key[0], key[1], key[2], parse_term(key[3]))
        with self._key_lock(key):
            with self._lock:
                current = self._subject_grades.get(key)
            actual = current.version if current else 0
            if expected_version is not None and expected_version != actual:
                raise ConcurrencyConflict(tuple(key), expected_version, actual)
            base = current or SubjectGrade(*key)
            updated = replace(base, version=actual + 1, **patch)
            with self._lock:
                self._subject_grades[key] = updated
            return copy.deepcopy(updated)

    def upsert_question_grade(self, key, patch, keep_manual=False):
        check_patch(patch, QUESTION_GRADE_FIELDS)
        key = QuestionGradeKey(*key)
        with self._key_lock(key):
            with self._lock:
                current = self._question_grades.get(key)
            if current is not None and keep_manual and current.source == GRADE_SOURCE_TEACHER:
                return copy.deepcopy(current)
            if current is None:
                updated = QuestionGrade(attempt_id=key.attempt_id, question_id=key.question_id, **patch)
            else:
                updated = replace(current, **patch)
            with self._lock:
                self._question_grades[key] = updated
            return copy.deepcopy(updated)

    def mark_attempt_submitted(self, attempt_id, answers, tab_switches, submitted_at):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                raise NotFoundError('attempt', attempt_id)
            if attempt.submitted_at is not None:
                return None
            attempt.answers = dict(answers)
            attempt.tab_switches = tab_switches
            attempt.submitted_at = submitted_at
            return copy.deepcopy(attempt)

    def update_attempt_score(self, attempt_id, score):
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is None:
                raise NotFoundError('attempt', attempt_id)
            attempt.score = score
            return copy.deepcopy(attempt)


