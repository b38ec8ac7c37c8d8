from flask_wtf import FlaskForm
from wtforms import IntegerField, StringField
from wtforms.validators import DataRequired, Length, NumberRange

# Component inputs are posted as component_<name>, one per assessment component.
COMPONENT_PREFIX = 'component_'


def component_scores_from_form(formdata, prefix=COMPONENT_PREFIX):
    """Collect ``component_<name>`` inputs into a {name: raw value} map."""
    scores = {}
    for key in formdata:
        if key.startswith(prefix) and len(key) > len(prefix):
            scores[key[len(prefix):]] = formdata.get(key)
    return scores


def first_error(form):
    for field_name, messages in form.errors.items():
        if messages:
            return f"{field_name}: {messages[0]}"
    return 'Invalid form submission.'


class ScoreEntryForm(FlaskForm):
    class_id = IntegerField('Class', validators=[DataRequired(), NumberRange(min=1)])
    subject_name = StringField('Subject', validators=[DataRequired(), Length(min=1, max=120)])
    term_id = IntegerField('Term', validators=[DataRequired(), NumberRange(min=1)])
    student_id = IntegerField('Student', validators=[DataRequired(), NumberRange(min=1)])


class AssignmentActionForm(FlaskForm):
    assignment_id = IntegerField('Assignment', validators=[DataRequired(), NumberRange(min=1)])


class ClassTermForm(FlaskForm):
    class_id = IntegerField('Class', validators=[DataRequired(), NumberRange(min=1)])
    term_id = IntegerField('Term', validators=[DataRequired(), NumberRange(min=1)])


class TermForm(FlaskForm):
    term_id = IntegerField('Term', validators=[DataRequired(), NumberRange(min=1)])


class OverrideForm(FlaskForm):
    """CSRF only; component values come from component_<name> inputs."""
