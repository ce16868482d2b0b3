"""Payload validation for the JSON API.

The forms only check shape and presence; score bounds and term names are
validated by the engine so the rules live in one place.
"""

from flask_wtf import FlaskForm
from wtforms import FloatField, IntegerField, StringField, TextAreaField, validators

from .errors import ValidationError


class Present:
    """Like InputRequired, but a submitted 0 counts as present."""

    field_flags = {'required': True}

    def __init__(self, message=None):
        self.message = message

    def __call__(self, form, field):
        if not field.raw_data or field.raw_data[0] is None or field.raw_data[0] == '':
            field.errors[:] = []
            raise validators.StopValidation(self.message or field.gettext('This field is required.'))


class JsonForm(FlaskForm):
    class Meta:
        csrf = False

    def require_valid(self):
        """Validate and raise the first field error as a ValidationError."""
        if self.validate():
            return self
        for name, errors in self.errors.items():
            if errors:
                raise ValidationError(f"{name}: {errors[0]}", field=name)
        raise ValidationError("Invalid request.")

    def was_sent(self, name):
        return bool(self[name].raw_data)

    def text(self, name):
        return str(self[name].data).strip()


class SubjectKeyForm(JsonForm):
    student_id = StringField('student_id', [validators.InputRequired()])
    subject_id = StringField('subject_id', [validators.InputRequired()])
    program_id = StringField('program_id', [validators.InputRequired()])
    term = StringField('term', [validators.InputRequired()])


class SubjectScoresForm(SubjectKeyForm):
    # Scores stay raw so "", "-" and null reach the engine as "pending".
    continuous_assessment = StringField('continuous_assessment', [validators.Optional()])
    examination = StringField('examination', [validators.Optional()])
    teacher_comment = TextAreaField('teacher_comment', [validators.Optional(), validators.Length(max=1000)])


class QuestionGradeForm(JsonForm):
    attempt_id = StringField('attempt_id', [validators.InputRequired()])
    question_id = StringField('question_id', [validators.InputRequired()])
    marks_awarded = FloatField('marks_awarded', [Present()])
    max_marks = FloatField('max_marks', [Present()])
    comment = TextAreaField('comment', [validators.Optional(), validators.Length(max=1000)])


class SubmitAttemptForm(JsonForm):
    tab_switches = IntegerField('tab_switches', [validators.Optional(), validators.NumberRange(min=0)], default=0)
