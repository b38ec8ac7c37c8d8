"""Publication gate: make computed term reports visible to students and parents.

Publishing is one-way; there is no unpublish call.
"""

import logging
from datetime import datetime

from aggregation import enrolled_student_ids
from audit import record_audit
from permissions import LOCK_AND_PUBLISH, require_permission

logger = logging.getLogger(__name__)


def publish_class(gateway, principal, class_id, term_id):
    """Publish the term reports of every student enrolled in the class for the term."""
    require_permission(principal, LOCK_AND_PUBLISH)
    student_ids = enrolled_student_ids(gateway, class_id, term_id)
    if not student_ids:
        logger.info('No students enrolled in class %s for term %s; nothing to publish', class_id, term_id)
        return []
    updated = gateway.update(
        'student_term_reports',
        {'is_published': True, 'published_at': datetime.now()},
        {'student_id': student_ids, 'term_id': term_id, 'is_published': False},
    )
    logger.info('User %s published %s reports for class %s, term %s',
                principal.user_id, len(updated), class_id, term_id)
    record_audit(gateway, principal.user_id, 'results.publish_class', 'academic_classes', class_id, {
        'term_id': term_id,
        'published': len(updated),
        'enrolled': len(student_ids),
    })
    return updated


def publish_term(gateway, principal, term_id):
    """Publish every computed report for the term in one filtered update."""
    require_permission(principal, LOCK_AND_PUBLISH)
    updated = gateway.update(
        'student_term_reports',
        {'is_published': True, 'published_at': datetime.now()},
        {'term_id': term_id, 'is_published': False},
    )
    logger.info('User %s published %s reports for term %s', principal.user_id, len(updated), term_id)
    record_audit(gateway, principal.user_id, 'results.publish_term', 'terms', term_id, {
        'published': len(updated),
    })
    return updated
