"""PostgreSQL implementation of the store interface.

Queries are written with ``?`` placeholders and adapted for psycopg2. Writes to
one subject grade serialize on its row: inserts use ``ON CONFLICT`` and updates
are conditional on the row version, so a stale read can never overwrite a
newer write, while writers to other rows proceed independently.
"""

import json
import logging
import os
from contextlib import contextmanager

from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .records import (
    GRADE_SOURCE_TEACHER, Attempt, Exam, ExamType, Program, Question, QuestionGrade,
    QuestionGradeKey, QuestionOption, QuestionType, Student, Subject, SubjectGrade,
    SubjectGradeKey, TermConduct, parse_term,
)
from .store import QUESTION_GRADE_FIELDS, SUBJECT_GRADE_FIELDS, BaseStore, check_patch

logger = logging.getLogger(__name__)

SUBJECT_GRADE_COLUMNS = (
    'student_id, subject_id, program_id, term, continuous_assessment, examination, '
    'total_score, grade, teacher_comment, version'
)
QUESTION_GRADE_COLUMNS = 'attempt_id, question_id, marks_awarded, max_marks, teacher_comment, source'
ATTEMPT_COLUMNS = 'id, student_id, exam_id, answers, score, tab_switches, submitted_at'


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def _float_or_none(value):
    return float(value) if value is not None else None


def subject_grade_from_row(row):
    return SubjectGrade(
        student_id=row[0],
        subject_id=row[1],
        program_id=row[2],
        term=parse_term(row[3]),
        continuous_assessment=_float_or_none(row[4]),
        examination=_float_or_none(row[5]),
        total_score=_float_or_none(row[6]),
        grade=row[7],
        teacher_comment=row[8],
        version=int(row[9] or 0),
    )


def question_grade_from_row(row):
    return QuestionGrade(
        attempt_id=row[0],
        question_id=row[1],
        marks_awarded=float(row[2]),
        max_marks=float(row[3]),
        teacher_comment=row[4],
        source=row[5] or GRADE_SOURCE_TEACHER,
    )


def attempt_from_row(row):
    return Attempt(
        id=row[0],
        student_id=row[1],
        exam_id=row[2],
        answers=json.loads(row[3]) if row[3] else {},
        score=_float_or_none(row[4]),
        tab_switches=int(row[5] or 0),
        submitted_at=row[6],
    )


class PostgresStore(BaseStore):
    def __init__(self, database_url=None):
        self.database_url = (database_url or os.environ.get('DATABASE_URL', '')).strip()

    def get_db(self):
        """Create a PostgreSQL DB connection."""
        if not self.database_url.startswith(('postgres://', 'postgresql://')):
            raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
        try:
            import psycopg2
        except ImportError as exc:
            raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
        return psycopg2.connect(self.database_url, connect_timeout=10)

    @contextmanager
    def db_connection(self, commit=False):
        """Connection context manager with optional commit; rolls back on error."""
        conn = self.get_db()
        try:
            yield conn
            if commit:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetchone(self, query, params):
        with self.db_connection() as conn:
            c = conn.cursor()
            db_execute(c, query, params)
            return c.fetchone()

    def _fetchall(self, query, params):
        with self.db_connection() as conn:
            c = conn.cursor()
            db_execute(c, query, params)
            return c.fetchall()

    # --- reads ---
    def get_student(self, student_id):
        row = self._fetchone('SELECT id, name, email FROM students WHERE id = ?', (student_id,))
        return Student(id=row[0], name=row[1] or '', email=row[2] or '') if row else None

    def get_subject(self, subject_id):
        row = self._fetchone('SELECT id, name FROM subjects WHERE id = ?', (subject_id,))
        return Subject(id=row[0], name=row[1] or '') if row else None

    def get_program(self, program_id):
        with self.db_connection() as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT id, name, level, track FROM programs WHERE id = ?', (program_id,))
            row = c.fetchone()
            if not row:
                return None
            db_execute(
                c,
                '''SELECT subject_id FROM program_subjects
                   WHERE program_id = ?
                   ORDER BY position, subject_id''',
                (program_id,),
            )
            subject_ids = [r[0] for r in c.fetchall()]
        return Program(id=row[0], name=row[1] or '', level=row[2], track=row[3], subject_ids=subject_ids)

    def get_exam(self, exam_id):
        with self.db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT id, subject_id, program_id, term, exam_type, title, duration
                   FROM exams WHERE id = ?''',
                (exam_id,),
            )
            row = c.fetchone()
            if not row:
                return None
            db_execute(c, 'SELECT id FROM questions WHERE exam_id = ? ORDER BY position, id', (exam_id,))
            question_ids = [r[0] for r in c.fetchall()]
        return Exam(
            id=row[0],
            subject_id=row[1],
            program_id=row[2],
            term=parse_term(row[3]),
            exam_type=ExamType(row[4]),
            title=row[5] or '',
            duration=row[6],
            question_ids=question_ids,
        )

    def get_attempt(self, attempt_id):
        row = self._fetchone(f'SELECT {ATTEMPT_COLUMNS} FROM attempts WHERE id = ?', (attempt_id,))
        return attempt_from_row(row) if row else None

    def get_enrolled_students(self, program_id):
        rows = self._fetchall(
            '''SELECT s.id, s.name, s.email
               FROM enrollments e
               JOIN students s ON s.id = e.student_id
               WHERE e.program_id = ?
               ORDER BY s.id''',
            (program_id,),
        )
        return [Student(id=r[0], name=r[1] or '', email=r[2] or '') for r in rows]

    def get_subject_grades(self, student_id=None, subject_id=None, program_id=None, term=None):
        query = f'SELECT {SUBJECT_GRADE_COLUMNS} FROM subject_grades WHERE 1 = 1'
        params = []
        if student_id is not None:
            query += ' AND student_id = ?'
            params.append(student_id)
        if subject_id is not None:
            query += ' AND subject_id = ?'
            params.append(subject_id)
        if program_id is not None:
            query += ' AND program_id = ?'
            params.append(program_id)
        if term is not None:
            query += ' AND term = ?'
            params.append(parse_term(term).value)
        query += ' ORDER BY student_id, subject_id, term'
        return [subject_grade_from_row(r) for r in self._fetchall(query, tuple(params))]

    def get_exam_questions(self, exam_id):
        with self.db_connection() as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''SELECT id, exam_id, text, type, max_marks
                   FROM questions WHERE exam_id = ?
                   ORDER BY position, id''',
                (exam_id,),
            )
            question_rows = c.fetchall()
            if not question_rows:
                return []
            db_execute(
                c,
                '''SELECT id, question_id, text, is_correct
                   FROM question_options WHERE question_id = ANY(?)
                   ORDER BY position, id''',
                ([r[0] for r in question_rows],),
            )
            options = {}
            for r in c.fetchall():
                options.setdefault(r[1], []).append(QuestionOption(id=r[0], text=r[2] or '', is_correct=bool(r[3])))
        return [
            Question(
                id=r[0],
                exam_id=r[1],
                text=r[2] or '',
                type=QuestionType(r[3]),
                max_marks=float(r[4]),
                options=options.get(r[0], []),
            )
            for r in question_rows
        ]

    def get_attempts(self, student_id, subject_id, program_id, term, exam_type=None):
        query = (
            'SELECT a.id, a.student_id, a.exam_id, a.answers, a.score, a.tab_switches, a.submitted_at '
            'FROM attempts a JOIN exams e ON e.id = a.exam_id '
            'WHERE a.student_id = ? AND e.subject_id = ? AND e.program_id = ? AND e.term = ?'
        )
        params = [student_id, subject_id, program_id, parse_term(term).value]
        if exam_type is not None:
            query += ' AND e.exam_type = ?'
            params.append(ExamType(exam_type).value)
        query += ' ORDER BY a.id'
        return [attempt_from_row(r) for r in self._fetchall(query, tuple(params))]

    def get_question_grades(self, attempt_id):
        rows = self._fetchall(
            f'SELECT {QUESTION_GRADE_COLUMNS} FROM question_grades WHERE attempt_id = ? ORDER BY question_id',
            (attempt_id,),
        )
        return [question_grade_from_row(r) for r in rows]

    def get_term_conduct(self, student_id, program_id, term):
        term = parse_term(term)
        row = self._fetchone(
            '''SELECT attendance_rate, conduct_grade, remarks
               FROM term_conduct
               WHERE student_id = ? AND program_id = ? AND term = ?''',
            (student_id, program_id, term.value),
        )
        if not row:
            return None
        return TermConduct(
            student_id=student_id,
            program_id=program_id,
            term=term,
            attendance_rate=_float_or_none(row[0]),
            conduct_grade=row[1],
            remarks=row[2],
        )

    # --- writes ---
    def upsert_subject_grade(self, key, patch, expected_version=None):
        check_patch(patch, SUBJECT_GRADE_FIELDS)
        key = SubjectGradeKey(key[0], key[1], key[2], parse_term(key[3]))
        key_params = (key.student_id, key.subject_id, key.program_id, key.term.value)
        insert_values = tuple(patch.get(col) for col in SUBJECT_GRADE_FIELDS)
        columns = [col for col in SUBJECT_GRADE_FIELDS if col in patch]

        with self.db_connection(commit=True) as conn:
            c = conn.cursor()
            if expected_version == 0:
                db_execute(
                    c,
                    f'''INSERT INTO subject_grades
                       (student_id, subject_id, program_id, term, continuous_assessment, examination,
                        total_score, grade, teacher_comment, version, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, CURRENT_TIMESTAMP)
                       ON CONFLICT(student_id, subject_id, program_id, term) DO NOTHING
                       RETURNING {SUBJECT_GRADE_COLUMNS}''',
                    key_params + insert_values,
                )
            elif expected_version is not None:
                assignments = ''.join(f'{col} = ?, ' for col in columns)
                db_execute(
                    c,
                    f'''UPDATE subject_grades
                       SET {assignments}version = version + 1, updated_at = CURRENT_TIMESTAMP
                       WHERE student_id = ? AND subject_id = ? AND program_id = ? AND term = ?
                         AND version = ?
                       RETURNING {SUBJECT_GRADE_COLUMNS}''',
                    tuple(patch[col] for col in columns) + key_params + (expected_version,),
                )
            else:
                updates = ''.join(f'{col} = excluded.{col}, ' for col in columns)
                db_execute(
                    c,
                    f'''INSERT INTO subject_grades
                       (student_id, subject_id, program_id, term, continuous_assessment, examination,
                        total_score, grade, teacher_comment, version, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, CURRENT_TIMESTAMP)
                       ON CONFLICT(student_id, subject_id, program_id, term) DO UPDATE SET
                         {updates}version = subject_grades.version + 1,
                         updated_at = CURRENT_TIMESTAMP
                       RETURNING {SUBJECT_GRADE_COLUMNS}''',
                    key_params + insert_values,
                )
            row = c.fetchone()
        if not row:
            logger.debug("Version check failed for subject grade %s (expected %s)", tuple(key), expected_version)
            raise ConcurrencyConflict(tuple(key), expected_version)
        return subject_grade_from_row(row)

    def upsert_question_grade(self, key, patch, keep_manual=False):
        check_patch(patch, QUESTION_GRADE_FIELDS)
        missing = [col for col in QUESTION_GRADE_FIELDS if col not in patch]
        if missing:
            raise ValidationError(f"Question grade update is missing: {', '.join(missing)}")
        key = QuestionGradeKey(*key)
        guard = f"WHERE question_grades.source <> '{GRADE_SOURCE_TEACHER}'" if keep_manual else ''
        with self.db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                f'''INSERT INTO question_grades
                   (attempt_id, question_id, marks_awarded, max_marks, teacher_comment, source, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                   ON CONFLICT(attempt_id, question_id) DO UPDATE SET
                     marks_awarded = excluded.marks_awarded,
                     max_marks = excluded.max_marks,
                     teacher_comment = excluded.teacher_comment,
                     source = excluded.source,
                     updated_at = CURRENT_TIMESTAMP
                   {guard}
                   RETURNING {QUESTION_GRADE_COLUMNS}''',
                (
                    key.attempt_id,
                    key.question_id,
                    patch['marks_awarded'],
                    patch['max_marks'],
                    patch['teacher_comment'],
                    patch['source'],
                ),
            )
            row = c.fetchone()
            if not row:
                # Kept a teacher grade; hand back what is stored.
                db_execute(
                    c,
                    f'''SELECT {QUESTION_GRADE_COLUMNS} FROM question_grades
                       WHERE attempt_id = ? AND question_id = ?''',
                    (key.attempt_id, key.question_id),
                )
                row = c.fetchone()
        return question_grade_from_row(row)

    def mark_attempt_submitted(self, attempt_id, answers, tab_switches, submitted_at):
        with self.db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                f'''UPDATE attempts
                   SET answers = ?, tab_switches = ?, submitted_at = ?
                   WHERE id = ? AND submitted_at IS NULL
                   RETURNING {ATTEMPT_COLUMNS}''',
                (json.dumps(answers), tab_switches, submitted_at, attempt_id),
            )
            row = c.fetchone()
            if row:
                return attempt_from_row(row)
            db_execute(c, 'SELECT 1 FROM attempts WHERE id = ?', (attempt_id,))
            if not c.fetchone():
                raise NotFoundError('attempt', attempt_id)
        return None

    def update_attempt_score(self, attempt_id, score):
        with self.db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                f'UPDATE attempts SET score = ? WHERE id = ? RETURNING {ATTEMPT_COLUMNS}',
                (score, attempt_id),
            )
            row = c.fetchone()
        if not row:
            raise NotFoundError('attempt', attempt_id)
        return attempt_from_row(row)
