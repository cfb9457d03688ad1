import sqlite3
import logging

from ..errors import ConflictError, NotFoundError, AuthorizationError, ValidationError
from .mysql_manager import MAX_DATABASE_NAME, MAX_USER_NAME, prefixed_name

logger = logging.getLogger(__name__)


class DatabaseService:
    """Tenant MySQL databases with one same-named user each."""

    def __init__(self, db, mysql):
        self.db = db
        self.mysql = mysql

    def list_databases(self, user):
        if user['role'] == 'admin':
            return self.db.fetch_all("""
                SELECT d.*, du.db_username FROM databases d
                LEFT JOIN database_users du ON du.database_id = d.id
                ORDER BY d.name
            """)
        return self.db.fetch_all("""
            SELECT d.*, du.db_username FROM databases d
            LEFT JOIN database_users du ON du.database_id = d.id
            WHERE d.user_id=? ORDER BY d.name
        """, (user['user_id'],))

    def _check_quota(self, user_id):
        limit = self.db.fetch_value("""
            SELECT p.max_databases FROM user_packages up JOIN packages p ON p.id = up.package_id
            WHERE up.user_id=?
        """, (user_id,))
        if limit is None:
            return
        count = self.db.fetch_value("SELECT COUNT(*) FROM databases WHERE user_id=?", (user_id,))
        if count >= limit:
            raise ValidationError(f"Database limit reached ({limit})")

    def create_database(self, user, name, password):
        if not password or len(password) < 8:
            raise ValidationError("Database password must be at least 8 characters")
        username = user['username']
        db_name = prefixed_name(username, name, MAX_DATABASE_NAME)
        db_user = prefixed_name(username, name, MAX_USER_NAME)
        self._check_quota(user['user_id'])

        try:
            with self.db.transaction() as conn:
                database_id = self.db.insert('databases', {
                    'user_id': user['user_id'], 'name': db_name, 'type': 'mysql',
                }, conn=conn)
                self.db.insert('database_users', {
                    'user_id': user['user_id'], 'database_id': database_id,
                    'db_username': db_user, 'host': 'localhost',
                }, conn=conn)
                self.mysql.create_database(db_name, db_user, password)
        except sqlite3.IntegrityError:
            raise ConflictError(f"Database {db_name} already exists")

        logger.info(f"Database created for {username}: {db_name}")
        return {'id': database_id, 'name': db_name, 'db_username': db_user}

    def delete_database(self, user, database_id):
        row = self.db.fetch_one("SELECT * FROM databases WHERE id=?", (database_id,))
        if user['role'] != 'admin':
            if not row or row['user_id'] != user['user_id']:
                raise AuthorizationError()
        elif not row:
            raise NotFoundError("Database not found")

        users = self.db.fetch_all("SELECT db_username, host FROM database_users WHERE database_id=?", (database_id,))
        self.mysql.drop_database(row['name'])
        for db_user in users:
            self.mysql.drop_user(db_user['db_username'], db_user['host'])

        with self.db.transaction() as conn:
            self.db.delete('database_users', 'database_id=?', (database_id,), conn=conn)
            self.db.delete('databases', 'id=?', (database_id,), conn=conn)
        logger.info(f"Database deleted: {row['name']}")
