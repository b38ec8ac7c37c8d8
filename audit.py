"""Audit trail for privileged results actions."""

import logging
from datetime import datetime

logger = logging.getLogger(__name__)


def record_audit(gateway, actor_id, action, resource_type, resource_id=None, details=None):
    """Write one audit_log row. A failed audit write is logged, never raised."""
    try:
        return gateway.insert('audit_log', {
            'actor_user_id': actor_id,
            'action': action,
            'resource_type': resource_type,
            'resource_id': None if resource_id is None else str(resource_id),
            'details': details or {},
            'created_at': datetime.now(),
        })
    except Exception as e:
        logger.error('Failed to record audit entry %s for %s %s: %s', action, resource_type, resource_id, e)
        return None
