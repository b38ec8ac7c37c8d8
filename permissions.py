"""Capability checks for privileged pipeline calls.

The auth/profile service owns users and roles. The pipeline only ever sees the
caller's id and permission strings, passed in explicitly as a ``Principal``.
"""

from collections import namedtuple

from errors import PermissionDenied

ADMIN_WILDCARD = '*'
LOCK_AND_PUBLISH = 'results.lock_and_publish'
EDIT_ALL_SCORES = 'score_entries.edit_all'
VIEW_ALL_SCORES = 'score_entries.view_all'


class Principal(namedtuple('Principal', ['user_id', 'permissions'])):
    """Caller identity plus the permission tokens granted to it."""

    __slots__ = ()

    def __new__(cls, user_id, permissions=()):
        return super().__new__(cls, user_id, frozenset(p for p in (permissions or ()) if p))

    def can(self, token):
        return ADMIN_WILDCARD in self.permissions or token in self.permissions


def principal_from_session(session):
    """Build a Principal from what the auth service stored in the Flask session."""
    permissions = session.get('permissions') or []
    if isinstance(permissions, str):
        permissions = [p.strip() for p in permissions.split(',')]
    return Principal(session.get('user_id'), permissions)


def require_permission(principal, token):
    """Fail closed unless the principal holds ``token`` or the wildcard."""
    if principal is None or not principal.can(token):
        raise PermissionDenied(token)
