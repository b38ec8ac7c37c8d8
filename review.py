"""Reviewer correction path for score entries, including locked ones."""

import logging
from collections import namedtuple
from datetime import datetime

from aggregation import recompute_class_term
from audit import record_audit
from errors import RecordNotFound
from permissions import EDIT_ALL_SCORES, require_permission
from score_entries import (
    derive_score_fields, load_assessment_structure, normalize_component_scores,
    resolve_grading_context,
)

logger = logging.getLogger(__name__)

OverrideResult = namedtuple('OverrideResult', ['entry', 'aggregation'])


def override_score(gateway, principal, score_id, new_component_scores):
    """Replace an entry's component scores regardless of the assignment's lock.

    The total and grade are re-derived, the reviewer is stamped as last
    modifier and the entry's class and term are recomputed before returning.
    """
    require_permission(principal, EDIT_ALL_SCORES)
    rows = gateway.select('score_entries', {'id': score_id})
    if not rows:
        raise RecordNotFound('score_entries', score_id)
    entry = rows[0]

    components = load_assessment_structure(gateway, entry['class_id'])
    cleaned = normalize_component_scores(new_component_scores, components)
    scheme, scheme_error = resolve_grading_context(gateway, entry['class_id'])
    values = derive_score_fields(cleaned, scheme, entry['subject_name'], scheme_error)
    values['last_modified_by_user_id'] = principal.user_id
    values['updated_at'] = datetime.now()

    updated = gateway.update('score_entries', values, {'id': score_id})
    if not updated:
        raise RecordNotFound('score_entries', score_id)
    updated = updated[0]
    logger.info('User %s overrode score %s (%s -> %s)',
                principal.user_id, score_id, entry.get('total_score'), updated.get('total_score'))

    record_audit(gateway, principal.user_id, 'score_entries.override', 'score_entries', score_id, {
        'student_id': entry.get('student_id'),
        'class_id': entry.get('class_id'),
        'subject_name': entry.get('subject_name'),
        'term_id': entry.get('term_id'),
        'old_component_scores': entry.get('component_scores') or {},
        'new_component_scores': cleaned,
        'old_total_score': entry.get('total_score'),
        'new_total_score': values['total_score'],
        'old_grade_label': entry.get('grade_label'),
        'new_grade_label': values['grade_label'],
    })

    aggregation = recompute_class_term(gateway, entry['class_id'], entry['term_id'])
    return OverrideResult(updated, aggregation)
