"""Assignment workflow: Draft -> Submitted -> Locked, and back to Draft on reset.

State lives on the teaching_assignments row:

    Draft      submitted_at IS NULL, is_locked = false
    Submitted  submitted_at set,     is_locked = false
    Locked     is_locked = true

Every transition is a compare-and-swap: the update is filtered on the state
that was read, so a concurrent change makes it match no row and StaleState
is raised instead of overwriting.
"""

import logging
from collections import namedtuple
from datetime import datetime

from aggregation import recompute_class_term
from audit import record_audit
from db import NOT_NULL
from errors import InvalidTransition, PermissionDenied, RecordNotFound, StaleState
from permissions import LOCK_AND_PUBLISH, require_permission

logger = logging.getLogger(__name__)

DRAFT = 'Draft'
SUBMITTED = 'Submitted'
LOCKED = 'Locked'

# Pseudo-token reported when only the assignment's own teacher may act.
ASSIGNMENT_TEACHER = 'teaching_assignments.owner'

STATE_FILTERS = {
    DRAFT: {'is_locked': False, 'submitted_at': None},
    SUBMITTED: {'is_locked': False, 'submitted_at': NOT_NULL},
    LOCKED: {'is_locked': True},
}

LockResult = namedtuple('LockResult', ['assignment', 'zero_scores', 'aggregation'])
TransitionResult = namedtuple('TransitionResult', ['assignment', 'aggregation'])


class ItemResult(namedtuple('ItemResult', ['key', 'ok', 'error'])):
    __slots__ = ()

    def __new__(cls, key, ok=True, error=None):
        return super().__new__(cls, key, ok, error)


class BatchResult:
    """Per-item outcome of a loop-style bulk operation. Nothing is rolled back."""

    def __init__(self, action, items=None):
        self.action = action
        self.items = list(items or [])
        self.aggregation = None

    def add(self, key, error=None):
        self.items.append(ItemResult(key, error is None, None if error is None else str(error)))

    @property
    def succeeded(self):
        return sum(1 for item in self.items if item.ok)

    @property
    def failed(self):
        return sum(1 for item in self.items if not item.ok)

    @property
    def ok(self):
        return self.failed == 0

    def failures(self):
        return [item for item in self.items if not item.ok]

    def summary(self):
        if not self.items:
            return f"Nothing to {self.action}."
        text = f"{self.action.capitalize()}: {self.succeeded} of {len(self.items)} succeeded"
        if self.failed:
            text += f", {self.failed} failed (re-run to retry)"
        return text + '.'


def assignment_state(assignment):
    if assignment.get('is_locked'):
        return LOCKED
    if assignment.get('submitted_at'):
        return SUBMITTED
    return DRAFT


def get_assignment(gateway, assignment_id):
    rows = gateway.select('teaching_assignments', {'id': assignment_id})
    if not rows:
        raise RecordNotFound('teaching_assignments', assignment_id)
    return rows[0]


def _transition(gateway, assignment, action, allowed_from, values):
    state = assignment_state(assignment)
    if state not in allowed_from:
        raise InvalidTransition(assignment['id'], state, action)
    filters = dict(STATE_FILTERS[state], id=assignment['id'])
    rows = gateway.update('teaching_assignments', values, filters)
    if not rows:
        logger.warning('Lost %s race on assignment %s (was %s)', action, assignment['id'], state)
        raise StaleState(assignment['id'])
    return state, rows[0]


def _audit_transition(gateway, principal, action, assignment, from_state, **extra):
    details = {
        'class_id': assignment.get('class_id'),
        'subject_name': assignment.get('subject_name'),
        'term_id': assignment.get('term_id'),
        'from_state': from_state,
        'to_state': assignment_state(assignment),
    }
    details.update(extra)
    record_audit(gateway, principal.user_id, action, 'teaching_assignments', assignment.get('id'), details)


def submit_assignment(gateway, principal, assignment_id):
    """Draft -> Submitted, by the assignment's own teacher."""
    assignment = get_assignment(gateway, assignment_id)
    if principal.user_id is None or principal.user_id != assignment.get('teacher_id'):
        raise PermissionDenied(ASSIGNMENT_TEACHER)
    from_state, updated = _transition(
        gateway, assignment, 'submit', (DRAFT,), {'submitted_at': datetime.now()}
    )
    logger.info('Teacher %s submitted assignment %s', principal.user_id, assignment_id)
    _audit_transition(gateway, principal, 'assignment.submit', updated, from_state)
    return updated


def detect_zero_total_scores(gateway, assignment_id):
    """Entries under the assignment whose total is zero or missing."""
    assignment = get_assignment(gateway, assignment_id)
    entries = gateway.select('score_entries', {
        'class_id': assignment['class_id'],
        'subject_name': assignment['subject_name'],
        'term_id': assignment['term_id'],
    }, order_by=['student_id'])
    return [
        {'student_id': e['student_id'], 'score_id': e.get('id'), 'total_score': e.get('total_score')}
        for e in entries
        if e.get('total_score') is None or float(e['total_score']) == 0
    ]


def lock_assignment(gateway, principal, assignment_id, recompute=True):
    """Submitted -> Locked. Zero totals are reported back, they do not block."""
    require_permission(principal, LOCK_AND_PUBLISH)
    assignment = get_assignment(gateway, assignment_id)
    if assignment_state(assignment) != SUBMITTED:
        raise InvalidTransition(assignment_id, assignment_state(assignment), 'lock')
    zero_scores = detect_zero_total_scores(gateway, assignment_id)
    if zero_scores:
        logger.warning('Locking assignment %s with %s zero or missing totals', assignment_id, len(zero_scores))
    from_state, updated = _transition(gateway, assignment, 'lock', (SUBMITTED,), {'is_locked': True})
    logger.info('User %s locked assignment %s', principal.user_id, assignment_id)
    _audit_transition(gateway, principal, 'assignment.lock', updated, from_state,
                      zero_score_students=[z['student_id'] for z in zero_scores])
    aggregation = None
    if recompute:
        aggregation = recompute_class_term(gateway, updated['class_id'], updated['term_id'])
    return LockResult(updated, zero_scores, aggregation)


def reset_assignment(gateway, principal, assignment_id):
    """Submitted or Locked -> Draft, handing edit rights back to the teacher."""
    require_permission(principal, LOCK_AND_PUBLISH)
    assignment = get_assignment(gateway, assignment_id)
    from_state, updated = _transition(
        gateway, assignment, 'reset', (SUBMITTED, LOCKED),
        {'submitted_at': None, 'is_locked': False},
    )
    logger.info('User %s reset assignment %s from %s', principal.user_id, assignment_id, from_state)
    _audit_transition(gateway, principal, 'assignment.reset', updated, from_state)
    aggregation = recompute_class_term(gateway, updated['class_id'], updated['term_id'])
    return TransitionResult(updated, aggregation)


def lock_class(gateway, principal, class_id, term_id):
    """Lock every unlocked assignment of the class, one at a time.

    Not atomic: items that fail are reported and the ones already locked stay
    locked. Re-running only visits what is still unlocked.
    """
    require_permission(principal, LOCK_AND_PUBLISH)
    pending = gateway.select(
        'teaching_assignments',
        {'class_id': class_id, 'term_id': term_id, 'is_locked': False},
        order_by=['subject_name'],
    )
    result = BatchResult('lock')
    for assignment in pending:
        key = assignment.get('subject_name') or assignment.get('id')
        try:
            lock_assignment(gateway, principal, assignment['id'], recompute=False)
        except Exception as e:
            logger.warning('Could not lock assignment %s (%s): %s', assignment.get('id'), key, e)
            result.add(key, e)
            continue
        result.add(key)
    if result.succeeded:
        result.aggregation = recompute_class_term(gateway, class_id, term_id)
    logger.info('lock_class %s/%s: %s', class_id, term_id, result.summary())
    return result
