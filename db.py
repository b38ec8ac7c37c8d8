"""PostgreSQL persistence gateway for the results pipeline.

Every gateway call opens its own connection and commits on its own; nothing
here spans collections in one transaction. Conditional writes use a guard row
read ``FOR SHARE`` so the check and the write are one statement.
"""

import logging
import os
from contextlib import contextmanager

import psycopg2
from dotenv import load_dotenv
from psycopg2 import sql
from psycopg2.extras import DictCursor, Json

load_dotenv()

logger = logging.getLogger(__name__)

COLLECTIONS = frozenset({
    'score_entries',
    'teaching_assignments',
    'student_term_reports',
    'grading_schemes',
    'academic_classes',
    'assessment_structures',
    'academic_class_students',
    'school_config',
    'audit_log',
})


class _NotNull:
    def __repr__(self):
        return 'NOT_NULL'


# Filter value meaning "column IS NOT NULL".
NOT_NULL = _NotNull()


def get_database_url():
    url = os.environ.get('DATABASE_URL', '').strip()
    if not url.startswith(('postgres://', 'postgresql://')):
        raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
    return url


def get_db(database_url=None):
    """Create a PostgreSQL DB connection."""
    timeout = int(os.environ.get('DB_CONNECT_TIMEOUT', '10') or 10)
    return psycopg2.connect(database_url or get_database_url(), cursor_factory=DictCursor, connect_timeout=timeout)


@contextmanager
def db_connection(database_url=None, commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    conn = get_db(database_url)
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(query)
    return cursor.execute(query, params)


def _table(collection):
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
    return sql.Identifier(collection)


def _adapt(value):
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _column(name, alias=None):
    if alias:
        return sql.Identifier(alias, name)
    return sql.Identifier(name)


def build_where(filters, alias=None):
    """Compose a conjunction of column filters; returns (Composable, params)."""
    if not filters:
        return sql.SQL('TRUE'), []
    clauses = []
    params = []
    for name in sorted(filters):
        value = filters[name]
        ident = _column(name, alias)
        if value is None:
            clauses.append(sql.SQL('{} IS NULL').format(ident))
        elif value is NOT_NULL:
            clauses.append(sql.SQL('{} IS NOT NULL').format(ident))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(sql.SQL('{} = ANY(%s)').format(ident))
            params.append(list(value))
        else:
            clauses.append(sql.SQL('{} = %s').format(ident))
            params.append(_adapt(value))
    return sql.SQL(' AND ').join(clauses), params


def build_guard(guard):
    """EXISTS clause over a guard collection, locking the matched row FOR SHARE."""
    collection, filters = guard
    where, params = build_where(filters, alias='guard')
    clause = sql.SQL('EXISTS (SELECT 1 FROM {} AS guard WHERE {} FOR SHARE)').format(
        _table(collection), where
    )
    return clause, params


def build_order(order_by):
    parts = []
    for name in order_by or ():
        if name.startswith('-'):
            parts.append(sql.SQL('{} DESC').format(sql.Identifier(name[1:])))
        else:
            parts.append(sql.SQL('{} ASC').format(sql.Identifier(name)))
    return sql.SQL(', ').join(parts)


class PostgresGateway:
    """select/insert/update/upsert/delete over named record collections."""

    def __init__(self, database_url=None):
        self.database_url = database_url

    def _fetch(self, query, params, commit=False):
        with db_connection(self.database_url, commit=commit) as conn:
            c = conn.cursor()
            db_execute(c, query, params)
            rows = c.fetchall() if c.description else []
            return [dict(row) for row in rows]

    def select(self, collection, filters=None, order_by=None):
        where, params = build_where(filters)
        query = sql.SQL('SELECT * FROM {} WHERE {}').format(_table(collection), where)
        if order_by:
            query = query + sql.SQL(' ORDER BY ') + build_order(order_by)
        return self._fetch(query, params)

    def insert(self, collection, record):
        columns = sorted(record)
        query = sql.SQL('INSERT INTO {} ({}) VALUES ({}) RETURNING *').format(
            _table(collection),
            sql.SQL(', ').join(map(sql.Identifier, columns)),
            sql.SQL(', ').join(sql.Placeholder() * len(columns)),
        )
        rows = self._fetch(query, [_adapt(record[c]) for c in columns], commit=True)
        return rows[0]

    def update(self, collection, values, filters, guard=None):
        """Update matching rows; with ``guard`` only when the guard row exists."""
        if not filters:
            raise ValueError('Refusing to update without filters.')
        columns = sorted(values)
        assignments = sql.SQL(', ').join(
            sql.SQL('{} = %s').format(sql.Identifier(c)) for c in columns
        )
        where, where_params = build_where(filters)
        params = [_adapt(values[c]) for c in columns] + where_params
        if guard is not None:
            guard_clause, guard_params = build_guard(guard)
            where = sql.SQL('{} AND {}').format(where, guard_clause)
            params += guard_params
        query = sql.SQL('UPDATE {} SET {} WHERE {} RETURNING *').format(
            _table(collection), assignments, where
        )
        return self._fetch(query, params, commit=True)

    def upsert(self, collection, record, conflict, guard=None, insert_only=()):
        """Insert or update on the ``conflict`` key in one statement.

        Columns named in ``insert_only`` keep their stored value on update.
        Returns the written row, or None when the guard did not match.
        """
        columns = sorted(record)
        params = [_adapt(record[c]) for c in columns]
        placeholders = sql.SQL(', ').join(sql.Placeholder() * len(columns))
        if guard is None:
            source = sql.SQL('VALUES ({})').format(placeholders)
        else:
            guard_clause, guard_params = build_guard(guard)
            source = sql.SQL('SELECT {} WHERE {}').format(placeholders, guard_clause)
            params += guard_params
        updatable = [c for c in columns if c not in conflict and c not in insert_only]
        if updatable:
            action = sql.SQL('DO UPDATE SET {}').format(
                sql.SQL(', ').join(
                    sql.SQL('{0} = EXCLUDED.{0}').format(sql.Identifier(c)) for c in updatable
                )
            )
        else:
            action = sql.SQL('DO NOTHING')
        query = sql.SQL('INSERT INTO {} ({}) {} ON CONFLICT ({}) {} RETURNING *').format(
            _table(collection),
            sql.SQL(', ').join(map(sql.Identifier, columns)),
            source,
            sql.SQL(', ').join(map(sql.Identifier, conflict)),
            action,
        )
        rows = self._fetch(query, params, commit=True)
        return rows[0] if rows else None

    def delete(self, collection, filters):
        if not filters:
            raise ValueError('Refusing to delete without filters.')
        where, params = build_where(filters)
        query = sql.SQL('DELETE FROM {} WHERE {}').format(_table(collection), where)
        with db_connection(self.database_url, commit=True) as conn:
            c = conn.cursor()
            db_execute(c, query, params)
            return int(c.rowcount or 0)

    @contextmanager
    def critical_section(self, key):
        """Hold a session advisory lock on ``key`` for the duration of the block."""
        conn = get_db(self.database_url)
        conn.autocommit = True
        try:
            c = conn.cursor()
            db_execute(c, 'SELECT pg_advisory_lock(hashtext(%s))', (key,))
            try:
                yield
            finally:
                db_execute(c, 'SELECT pg_advisory_unlock(hashtext(%s))', (key,))
        finally:
            conn.close()
