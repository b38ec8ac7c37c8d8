import copy
from collections import defaultdict
from contextlib import contextmanager

import pytest

from db import NOT_NULL
from grading import DEFAULT_BANDS
from permissions import ADMIN_WILDCARD, EDIT_ALL_SCORES, LOCK_AND_PUBLISH, VIEW_ALL_SCORES, Principal


class MemoryGateway:
    """In-memory stand-in for PostgresGateway with the same filter and guard rules."""

    DEFAULTS = {
        'teaching_assignments': {'submitted_at': None, 'is_locked': False, 'teacher_id': None},
        'student_term_reports': {'is_published': False, 'published_at': None, 'class_id': None},
        'academic_classes': {'grading_scheme_id': None, 'assessment_structure_id': None},
        'grading_schemes': {'overrides': {}},
        'score_entries': {'ungraded_reason': None, 'subject_position': None, 'subject_class_size': None},
    }

    def __init__(self):
        self.tables = defaultdict(list)
        self._next_id = defaultdict(int)
        self.sections = []
        self.before_write = None
        self.failures = []

    @staticmethod
    def matches(row, filters):
        for column, value in (filters or {}).items():
            actual = row.get(column)
            if value is None:
                if actual is not None:
                    return False
            elif value is NOT_NULL:
                if actual is None:
                    return False
            elif isinstance(value, (list, tuple, set, frozenset)):
                if actual not in value:
                    return False
            elif actual != value:
                return False
        return True

    def fail_when(self, method, collection, predicate, exc):
        self.failures.append((method, collection, predicate, exc))

    def _check(self, method, collection, record=None):
        if self.before_write is not None and method != 'select':
            self.before_write(method, collection, record)
        for f_method, f_collection, predicate, exc in self.failures:
            if f_method == method and f_collection == collection and predicate(record or {}):
                raise exc

    def _guard_ok(self, guard):
        if guard is None:
            return True
        collection, filters = guard
        return any(self.matches(row, filters) for row in self.tables[collection])

    def seed(self, collection, *records):
        return [self.insert(collection, r) for r in records]

    def select(self, collection, filters=None, order_by=None):
        rows = [copy.deepcopy(r) for r in self.tables[collection] if self.matches(r, filters)]
        for name in reversed(order_by or []):
            desc = name.startswith('-')
            key = name.lstrip('-')
            rows.sort(key=lambda r: (r.get(key) is None, r.get(key)), reverse=desc)
        return rows

    def insert(self, collection, record):
        self._check('insert', collection, record)
        return self._store(collection, record)

    def _store(self, collection, record):
        row = dict(copy.deepcopy(self.DEFAULTS.get(collection, {})))
        row.update(copy.deepcopy(record))
        if row.get('id') is None:
            self._next_id[collection] += 1
            row['id'] = self._next_id[collection]
        else:
            self._next_id[collection] = max(self._next_id[collection], row['id'])
        self.tables[collection].append(row)
        return copy.deepcopy(row)

    def update(self, collection, values, filters, guard=None):
        self._check('update', collection, values)
        if not self._guard_ok(guard):
            return []
        updated = []
        for row in self.tables[collection]:
            if self.matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    def upsert(self, collection, record, conflict, guard=None, insert_only=()):
        self._check('upsert', collection, record)
        if not self._guard_ok(guard):
            return None
        key = {c: record[c] for c in conflict}
        for row in self.tables[collection]:
            if self.matches(row, key):
                for column, value in record.items():
                    if column not in conflict and column not in insert_only:
                        row[column] = copy.deepcopy(value)
                return copy.deepcopy(row)
        return self._store(collection, record)

    def delete(self, collection, filters):
        self._check('delete', collection)
        keep = [r for r in self.tables[collection] if not self.matches(r, filters)]
        removed = len(self.tables[collection]) - len(keep)
        self.tables[collection] = keep
        return removed

    @contextmanager
    def critical_section(self, key):
        self.sections.append(key)
        yield

    def one(self, collection, **filters):
        rows = self.select(collection, filters)
        assert len(rows) == 1, f"expected one {collection} row for {filters}, got {len(rows)}"
        return rows[0]


COMPONENTS = [
    {'name': 'CA1', 'max_score': 20},
    {'name': 'CA2', 'max_score': 20},
    {'name': 'Exam', 'max_score': 60},
]


@pytest.fixture
def gateway():
    gw = MemoryGateway()
    gw.seed('grading_schemes', {'id': 1, 'scheme_name': 'Standard', 'rules': copy.deepcopy(DEFAULT_BANDS), 'overrides': {}})
    gw.seed('assessment_structures', {'id': 1, 'structure_name': 'Junior', 'components': copy.deepcopy(COMPONENTS)})
    gw.seed('academic_classes', {'id': 1, 'class_name': 'JSS1 A', 'assessment_structure_id': 1})
    gw.seed('school_config', {'id': 1, 'active_grading_scheme_id': 1})
    gw.seed(
        'academic_class_students',
        {'class_id': 1, 'student_id': 101, 'term_id': 1},
        {'class_id': 1, 'student_id': 102, 'term_id': 1},
        {'class_id': 1, 'student_id': 103, 'term_id': 1},
        {'class_id': 1, 'student_id': 101, 'term_id': 2},
    )
    gw.seed(
        'teaching_assignments',
        {'id': 1, 'class_id': 1, 'subject_name': 'Mathematics', 'term_id': 1, 'teacher_id': 7},
        {'id': 2, 'class_id': 1, 'subject_name': 'English', 'term_id': 1, 'teacher_id': 8},
        {'id': 3, 'class_id': 1, 'subject_name': 'Mathematics', 'term_id': 2, 'teacher_id': 7},
    )
    return gw


@pytest.fixture
def teacher():
    return Principal(7)


@pytest.fixture
def english_teacher():
    return Principal(8)


@pytest.fixture
def reviewer():
    return Principal(50, [LOCK_AND_PUBLISH])


@pytest.fixture
def editor():
    return Principal(60, [EDIT_ALL_SCORES, VIEW_ALL_SCORES])


@pytest.fixture
def admin():
    return Principal(1, [ADMIN_WILDCARD])


def put_scores(gateway, principal, subject_name, student_id, term_id=1, class_id=1, **components):
    """Save one student's components through the teacher write path."""
    from score_entries import save_score_entries

    rows = [{'student_id': student_id, 'component_scores': components}]
    return save_score_entries(gateway, principal, class_id, subject_name, term_id, rows)
