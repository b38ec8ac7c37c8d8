"""Score entry store: component scores, derived totals and grades, teacher writes."""

import logging
import math
from collections import namedtuple
from datetime import datetime

from aggregation import recompute_class_term
from errors import (
    AssignmentLocked, GradingConfigError, InvalidTransition, NoMatchingBand,
    PermissionDenied, RecordNotFound, ScoreValidationError,
)
from grading import grade, resolve_grading_scheme
from permissions import EDIT_ALL_SCORES

logger = logging.getLogger(__name__)

SCORE_ENTRY_KEY = ('student_id', 'class_id', 'subject_name', 'term_id')
NO_SCORES_REASON = 'No component scores entered.'

SaveResult = namedtuple('SaveResult', ['entries', 'aggregation'])


def load_assessment_structure(gateway, class_id):
    """Ordered ``[{name, max_score}]`` components for the class."""
    classes = gateway.select('academic_classes', {'id': class_id})
    if not classes:
        raise RecordNotFound('academic_classes', class_id)
    structure_id = classes[0].get('assessment_structure_id')
    if structure_id is None:
        raise ScoreValidationError([f"Class {class_id} has no assessment structure."])
    structures = gateway.select('assessment_structures', {'id': structure_id})
    if not structures:
        raise RecordNotFound('assessment_structures', structure_id)
    components = structures[0].get('components') or []
    return [{'name': c['name'], 'max_score': float(c['max_score'])} for c in components]


def normalize_component_scores(component_scores, components):
    """Validate raw component values; returns only the components that are present.

    Blank or None values mean "not entered" and are dropped, not zeroed.
    """
    limits = {c['name']: c['max_score'] for c in components}
    cleaned = {}
    errors = []
    for name, raw in (component_scores or {}).items():
        if name not in limits:
            errors.append(f"Unknown assessment component '{name}'.")
            continue
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        if isinstance(raw, bool):
            errors.append(f"{name} must be a number.")
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            errors.append(f"{name} must be a number.")
            continue
        if not math.isfinite(value):
            errors.append(f"{name} must be a finite number.")
            continue
        if value < 0 or value > limits[name]:
            errors.append(f"{name} must be between 0 and {limits[name]:g}.")
            continue
        cleaned[name] = value
    if not errors and sum(cleaned.values()) > sum(limits.values()):
        errors.append('Total of components exceeds the assessment maximum.')
    if errors:
        raise ScoreValidationError(errors)
    return cleaned


def compute_total(component_scores):
    """Sum of present components; None when nothing has been entered."""
    present = [float(v) for v in (component_scores or {}).values() if v is not None]
    if not present:
        return None
    return math.fsum(present)


def resolve_grading_context(gateway, class_id):
    """Return ``(scheme, None)`` or ``(None, reason)`` when the class cannot be graded."""
    try:
        return resolve_grading_scheme(gateway, class_id), None
    except GradingConfigError as e:
        logger.warning('Class %s is ungraded: %s', class_id, e)
        return None, str(e)


def derive_score_fields(component_scores, scheme, subject_name, scheme_error=None):
    """Total, grade and ungraded reason for a set of component scores."""
    total = compute_total(component_scores)
    fields = {
        'component_scores': dict(component_scores or {}),
        'total_score': total,
        'grade_label': None,
        'remark': None,
        'gpa_value': None,
        'ungraded_reason': None,
    }
    if total is None:
        fields['ungraded_reason'] = NO_SCORES_REASON
    elif scheme is None:
        fields['ungraded_reason'] = scheme_error or 'No grading scheme available.'
    else:
        try:
            fields.update(grade(total, scheme, subject_name))
        except NoMatchingBand as e:
            logger.warning('Ungraded %s total %s: %s', subject_name, total, e)
            fields['ungraded_reason'] = str(e)
    return fields


def build_score_entry(student_id, class_id, subject_name, term_id, component_scores,
                      scheme, modified_by, scheme_error=None):
    """Produce a score entry record; derived fields come only from derive_score_fields."""
    now = datetime.now()
    entry = {
        'student_id': student_id,
        'class_id': class_id,
        'subject_name': subject_name,
        'term_id': term_id,
        'entered_by_user_id': modified_by,
        'last_modified_by_user_id': modified_by,
        'created_at': now,
        'updated_at': now,
    }
    entry.update(derive_score_fields(component_scores, scheme, subject_name, scheme_error))
    return entry


def get_assignment_for(gateway, class_id, subject_name, term_id):
    rows = gateway.select('teaching_assignments', {
        'class_id': class_id, 'subject_name': subject_name, 'term_id': term_id,
    })
    if not rows:
        raise RecordNotFound('teaching_assignments', f"{class_id}/{subject_name}/{term_id}")
    return rows[0]


def unlocked_guard(class_id, subject_name, term_id):
    """Guard that only lets a write through while the assignment is not Locked."""
    return ('teaching_assignments', {
        'class_id': class_id, 'subject_name': subject_name, 'term_id': term_id, 'is_locked': False,
    })


def save_score_entries(gateway, principal, class_id, subject_name, term_id, rows):
    """Teacher write path for one assignment.

    ``rows`` is a list of ``{'student_id': ..., 'component_scores': {...}}``.
    The whole batch is validated before anything is written; each row is
    then upserted with a guard on the assignment not being Locked, and the
    class is recomputed once at the end.
    """
    assignment = get_assignment_for(gateway, class_id, subject_name, term_id)
    is_owner = principal.user_id is not None and principal.user_id == assignment.get('teacher_id')
    if not is_owner and not principal.can(EDIT_ALL_SCORES):
        raise PermissionDenied(EDIT_ALL_SCORES)
    if assignment.get('is_locked'):
        raise AssignmentLocked(class_id, subject_name, term_id)
    if assignment.get('submitted_at') and not principal.can(EDIT_ALL_SCORES):
        raise InvalidTransition(assignment.get('id'), 'Submitted', 'edit scores for')

    components = load_assessment_structure(gateway, class_id)
    enrolled = {
        r['student_id'] for r in gateway.select(
            'academic_class_students', {'class_id': class_id, 'term_id': term_id}
        )
    }
    scheme, scheme_error = resolve_grading_context(gateway, class_id)

    prepared = []
    errors = []
    for row in rows:
        student_id = row.get('student_id')
        if student_id not in enrolled:
            errors.append(f"Student {student_id}: not enrolled in class {class_id} for term {term_id}.")
            continue
        try:
            cleaned = normalize_component_scores(row.get('component_scores'), components)
        except ScoreValidationError as e:
            errors.extend(f"Student {student_id}: {msg}" for msg in e.errors)
            continue
        prepared.append(build_score_entry(
            student_id, class_id, subject_name, term_id, cleaned,
            scheme, principal.user_id, scheme_error,
        ))
    if errors:
        raise ScoreValidationError(errors)

    guard = unlocked_guard(class_id, subject_name, term_id)
    saved = []
    for entry in prepared:
        row = gateway.upsert(
            'score_entries', entry, SCORE_ENTRY_KEY, guard=guard,
            insert_only=('entered_by_user_id', 'created_at'),
        )
        if row is None:
            # Lock committed between our read and this write.
            logger.warning(
                'Assignment %s/%s/%s locked mid-save; %s of %s entries written',
                class_id, subject_name, term_id, len(saved), len(prepared),
            )
            if saved:
                recompute_class_term(gateway, class_id, term_id)
            raise AssignmentLocked(class_id, subject_name, term_id)
        saved.append(row)

    logger.info('User %s saved %s score entries for %s/%s/%s',
                principal.user_id, len(saved), class_id, subject_name, term_id)
    aggregation = recompute_class_term(gateway, class_id, term_id) if saved else None
    return SaveResult(saved, aggregation)
