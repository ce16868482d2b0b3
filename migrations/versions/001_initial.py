"""Initial schema for the result engine store.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

TERM_CHECK = "CHECK (term IN ('FIRST', 'SECOND', 'THIRD'))"


def upgrade() -> None:
    """Create all tables and indexes of the result engine."""

    op.execute('''CREATE TABLE IF NOT EXISTS students (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    email TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT ''
                )''')

    # A program is a class/level/track combination offering an ordered list of subjects
    op.execute('''CREATE TABLE IF NOT EXISTS programs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    level TEXT,
                    track TEXT
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS program_subjects (
                    program_id TEXT NOT NULL REFERENCES programs(id) ON DELETE CASCADE,
                    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (program_id, subject_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS enrollments (
                    program_id TEXT NOT NULL REFERENCES programs(id) ON DELETE CASCADE,
                    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    enrolled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (program_id, student_id)
                )''')

    op.execute(f'''CREATE TABLE IF NOT EXISTS exams (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    program_id TEXT NOT NULL REFERENCES programs(id) ON DELETE CASCADE,
                    term TEXT NOT NULL {TERM_CHECK},
                    exam_type TEXT NOT NULL DEFAULT 'EXAM' CHECK (exam_type IN ('EXAM', 'CA')),
                    title TEXT NOT NULL DEFAULT '',
                    duration INTEGER
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS questions (
                    id TEXT PRIMARY KEY,
                    exam_id TEXT NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
                    text TEXT NOT NULL DEFAULT '',
                    type TEXT NOT NULL CHECK (type IN ('MCQ', 'TRUE_FALSE', 'SHORT_ANSWER', 'ESSAY')),
                    max_marks DOUBLE PRECISION NOT NULL CHECK (max_marks > 0),
                    position INTEGER NOT NULL DEFAULT 0
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS question_options (
                    id TEXT PRIMARY KEY,
                    question_id TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
                    text TEXT NOT NULL DEFAULT '',
                    is_correct BOOLEAN NOT NULL DEFAULT FALSE,
                    position INTEGER NOT NULL DEFAULT 0
                )''')

    # answers is the JSON text of {question_id: answer}
    op.execute('''CREATE TABLE IF NOT EXISTS attempts (
                    id TEXT PRIMARY KEY,
                    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    exam_id TEXT NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
                    answers TEXT,
                    score DOUBLE PRECISION,
                    tab_switches INTEGER NOT NULL DEFAULT 0,
                    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    submitted_at TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS question_grades (
                    id SERIAL PRIMARY KEY,
                    attempt_id TEXT NOT NULL REFERENCES attempts(id) ON DELETE CASCADE,
                    question_id TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
                    marks_awarded DOUBLE PRECISION NOT NULL CHECK (marks_awarded >= 0),
                    max_marks DOUBLE PRECISION NOT NULL CHECK (max_marks > 0),
                    teacher_comment TEXT,
                    source TEXT NOT NULL DEFAULT 'teacher' CHECK (source IN ('auto', 'teacher')),
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # version drives optimistic concurrency in the write path
    op.execute(f'''CREATE TABLE IF NOT EXISTS subject_grades (
                    id SERIAL PRIMARY KEY,
                    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    subject_id TEXT NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
                    program_id TEXT NOT NULL REFERENCES programs(id) ON DELETE CASCADE,
                    term TEXT NOT NULL {TERM_CHECK},
                    continuous_assessment DOUBLE PRECISION,
                    examination DOUBLE PRECISION,
                    total_score DOUBLE PRECISION CHECK (total_score IS NULL OR (total_score >= 0 AND total_score <= 100)),
                    grade TEXT,
                    teacher_comment TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute(f'''CREATE TABLE IF NOT EXISTS term_conduct (
                    student_id TEXT NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    program_id TEXT NOT NULL REFERENCES programs(id) ON DELETE CASCADE,
                    term TEXT NOT NULL {TERM_CHECK},
                    attendance_rate DOUBLE PRECISION,
                    conduct_grade TEXT,
                    remarks TEXT,
                    PRIMARY KEY (student_id, program_id, term)
                )''')

    # Create indexes for performance
    op.execute('CREATE INDEX IF NOT EXISTS idx_exams_subject_program_term ON exams(subject_id, program_id, term)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_questions_exam ON questions(exam_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_question_options_question ON question_options(question_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_attempts_student_exam ON attempts(student_id, exam_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_subject_grades_program_term ON subject_grades(program_id, term)')

    # Create uniqueness constraints for conflict resolution
    op.execute('CREATE UNIQUE INDEX IF NOT EXISTS uq_question_grades_attempt_question ON question_grades(attempt_id, question_id)')
    op.execute('''CREATE UNIQUE INDEX IF NOT EXISTS uq_subject_grades_key
                  ON subject_grades(student_id, subject_id, program_id, term)''')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS term_conduct CASCADE')
    op.execute('DROP TABLE IF EXISTS subject_grades CASCADE')
    op.execute('DROP TABLE IF EXISTS question_grades CASCADE')
    op.execute('DROP TABLE IF EXISTS attempts CASCADE')
    op.execute('DROP TABLE IF EXISTS question_options CASCADE')
    op.execute('DROP TABLE IF EXISTS questions CASCADE')
    op.execute('DROP TABLE IF EXISTS exams CASCADE')
    op.execute('DROP TABLE IF EXISTS enrollments CASCADE')
    op.execute('DROP TABLE IF EXISTS program_subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS programs CASCADE')
    op.execute('DROP TABLE IF EXISTS subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS students CASCADE')
