"""Plain record types consumed and produced by the engine.

Records are storage-agnostic; the store implementations build them from rows
and the HTTP layer turns them into JSON with ``to_dict()``.
"""

import enum
from collections import namedtuple
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Dict, List, Optional

from .errors import ValidationError


class Term(str, enum.Enum):
    FIRST = 'FIRST'
    SECOND = 'SECOND'
    THIRD = 'THIRD'

    @property
    def label(self):
        return f"{self.value.title()} Term"

    @property
    def sort_value(self):
        return TERMS.index(self) + 1


TERMS = (Term.FIRST, Term.SECOND, Term.THIRD)

_TERM_ALIASES = {
    'first': Term.FIRST,
    'first term': Term.FIRST,
    'second': Term.SECOND,
    'second term': Term.SECOND,
    'third': Term.THIRD,
    'third term': Term.THIRD,
}


def parse_term(value):
    """Resolve 'FIRST', 'first', 'First Term' (or a Term) into a Term."""
    if isinstance(value, Term):
        return value
    key = ' '.join(str(value or '').replace('_', ' ').split()).lower()
    term = _TERM_ALIASES.get(key)
    if term is None:
        raise ValidationError(f"Unknown term: {value!r}", field='term')
    return term


class ExamType(str, enum.Enum):
    EXAM = 'EXAM'
    CA = 'CA'


class QuestionType(str, enum.Enum):
    MCQ = 'MCQ'
    TRUE_FALSE = 'TRUE_FALSE'
    SHORT_ANSWER = 'SHORT_ANSWER'
    ESSAY = 'ESSAY'

    @property
    def auto_scorable(self):
        return self in (QuestionType.MCQ, QuestionType.TRUE_FALSE)


GRADE_SOURCE_AUTO = 'auto'
GRADE_SOURCE_TEACHER = 'teacher'

STATUS_NO_DATA = 'NO_DATA'

SubjectGradeKey = namedtuple('SubjectGradeKey', ['student_id', 'subject_id', 'program_id', 'term'])
QuestionGradeKey = namedtuple('QuestionGradeKey', ['attempt_id', 'question_id'])


def _plain(value):
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, dict):
        return {_plain(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class Record:
    def to_dict(self):
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}


@dataclass
class Student(Record):
    id: str
    name: str = ''
    email: str = ''


@dataclass
class Subject(Record):
    id: str
    name: str = ''


@dataclass
class Program(Record):
    id: str
    name: str = ''
    level: Optional[str] = None
    track: Optional[str] = None
    subject_ids: List[str] = field(default_factory=list)


@dataclass
class QuestionOption(Record):
    id: str
    text: str = ''
    is_correct: bool = False


@dataclass
class Question(Record):
    id: str
    exam_id: str
    text: str = ''
    type: QuestionType = QuestionType.ESSAY
    max_marks: float = 1.0
    options: List[QuestionOption] = field(default_factory=list)


@dataclass
class Exam(Record):
    id: str
    subject_id: str
    program_id: str
    term: Term
    exam_type: ExamType = ExamType.EXAM
    title: str = ''
    duration: Optional[int] = None
    question_ids: List[str] = field(default_factory=list)


@dataclass
class Attempt(Record):
    id: str
    student_id: str
    exam_id: str
    answers: Dict[str, object] = field(default_factory=dict)
    score: Optional[float] = None
    tab_switches: int = 0
    submitted_at: Optional[datetime] = None

    @property
    def is_submitted(self):
        return self.submitted_at is not None


@dataclass
class QuestionGrade(Record):
    attempt_id: str
    question_id: str
    marks_awarded: float
    max_marks: float
    teacher_comment: Optional[str] = None
    source: str = GRADE_SOURCE_TEACHER


@dataclass
class SubjectGrade(Record):
    student_id: str
    subject_id: str
    program_id: str
    term: Term
    continuous_assessment: Optional[float] = None
    examination: Optional[float] = None
    total_score: Optional[float] = None
    grade: Optional[str] = None
    teacher_comment: Optional[str] = None
    version: int = 0

    @property
    def key(self):
        return SubjectGradeKey(self.student_id, self.subject_id, self.program_id, self.term)

    @property
    def is_pending(self):
        return self.total_score is None


@dataclass
class TermConduct(Record):
    student_id: str
    program_id: str
    term: Term
    attendance_rate: Optional[float] = None
    conduct_grade: Optional[str] = None
    remarks: Optional[str] = None


@dataclass
class SubjectLine(Record):
    subject_id: str
    subject_name: str = ''
    continuous_assessment: Optional[float] = None
    examination: Optional[float] = None
    total_score: Optional[float] = None
    grade: Optional[str] = None
    status: Optional[str] = None
    position: Optional[int] = None
    class_size: int = 0
    teacher_comment: Optional[str] = None
    question_results: Optional[list] = None


@dataclass
class TermReport(Record):
    student_id: str
    program_id: str
    term: Term
    has_data: bool = True
    status: Optional[str] = None
    total_subjects: int = 0
    total_score: float = 0.0
    average_score: float = 0.0
    grade: Optional[str] = None
    position: Optional[int] = None
    total_students: int = 0
    attendance_rate: Optional[float] = None
    conduct_grade: Optional[str] = None
    remarks: Optional[str] = None
    pending_subjects: int = 0
    subjects: List[SubjectLine] = field(default_factory=list)


@dataclass
class RankEntry(Record):
    student_id: str
    average_score: float
    position: int
    total_subjects: int = 0
    total_score: float = 0.0


@dataclass
class ClassRanking(Record):
    program_id: str
    term: Term
    entries: List[RankEntry] = field(default_factory=list)

    @property
    def total_students(self):
        return len(self.entries)

    def position_of(self, student_id):
        for entry in self.entries:
            if entry.student_id == student_id:
                return entry
        return None

    def to_dict(self):
        data = super().to_dict()
        data['total_students'] = self.total_students
        return data


@dataclass
class TermTrend(Record):
    term: Term
    average_score: float
    change: Optional[float] = None


@dataclass
class AnnualReport(Record):
    student_id: str
    program_id: str
    terms: Dict[Term, TermReport] = field(default_factory=dict)
    has_data: bool = True
    yearly_average: Optional[float] = None
    grade: Optional[str] = None
    status: Optional[str] = None
    terms_counted: int = 0
    trend: List[TermTrend] = field(default_factory=list)


@dataclass
class QuestionResult(Record):
    question_id: str
    question_text: str
    question_type: QuestionType
    student_answer: object = None
    marks_awarded: Optional[float] = None
    max_marks: float = 0.0
    teacher_comment: Optional[str] = None
    is_correct: Optional[bool] = None
    graded_by: Optional[str] = None
