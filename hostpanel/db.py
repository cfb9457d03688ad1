import os
import sqlite3
import logging
from contextlib import contextmanager

logger = logging.getLogger(__name__)


def _dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class Database:
    """Thin helpers over the panel's SQLite metadata store."""

    def __init__(self, path):
        self.path = path
        if path != ':memory:':
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with self.get_db() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

    def connect(self):
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = _dict_factory
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=30000")
        return conn

    @contextmanager
    def get_db(self, conn=None):
        if conn is not None:
            yield conn
            return
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Yield a connection inside BEGIN IMMEDIATE; commit on exit, roll back on error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def execute_query(self, sql, params=None, conn=None):
        with self.get_db(conn) as c:
            return c.execute(sql, params or ())

    def execute_script(self, script):
        with self.get_db() as conn:
            conn.executescript(script)

    def fetch_one(self, sql, params=None, conn=None):
        with self.get_db(conn) as c:
            return c.execute(sql, params or ()).fetchone()

    def fetch_all(self, sql, params=None, conn=None):
        with self.get_db(conn) as c:
            return c.execute(sql, params or ()).fetchall()

    def fetch_value(self, sql, params=None, conn=None):
        row = self.fetch_one(sql, params, conn=conn)
        if not row:
            return None
        return next(iter(row.values()))

    def insert(self, table, data, conn=None):
        cols = list(data.keys())
        vals = list(data.values())
        placeholders = ','.join(['?'] * len(cols))
        columns = ','.join(f'"{col}"' for col in cols)
        sql = f'INSERT INTO "{table}" ({columns}) VALUES ({placeholders})'
        cursor = self.execute_query(sql, vals, conn=conn)
        return cursor.lastrowid

    def update(self, table, data, where_clause, where_params, conn=None):
        sets = ','.join([f'"{k}"=?' for k in data.keys()])
        sql = f'UPDATE "{table}" SET {sets} WHERE {where_clause}'
        params = list(data.values()) + list(where_params)
        return self.execute_query(sql, params, conn=conn).rowcount

    def delete(self, table, where_clause, where_params, conn=None):
        sql = f'DELETE FROM "{table}" WHERE {where_clause}'
        return self.execute_query(sql, where_params, conn=conn).rowcount
