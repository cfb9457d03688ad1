"""
Tenant databases on the hosted MySQL/MariaDB server.
Names are always prefixed with the owner's POSIX username.
"""

import os
import re
import shutil
import logging
from contextlib import contextmanager

import pymysql

from ..errors import CommandError, ValidationError

logger = logging.getLogger(__name__)

MAX_DATABASE_NAME = 64
MAX_USER_NAME = 32

_IDENTIFIER_RE = re.compile(r'^[a-z0-9_]+$')


def prefixed_name(username, name, limit):
    """<username>_<name> truncated to limit without ever cutting into the prefix."""
    name = (name or '').strip().lower()
    prefix = f"{username}_"
    if name.startswith(prefix):
        name = name[len(prefix):]
    if not name or not _IDENTIFIER_RE.match(name):
        raise ValidationError("Name may only contain lowercase letters, digits and underscores")
    if len(prefix) >= limit:
        raise ValidationError(f"Username {username} is too long for a {limit} character name")
    return (prefix + name)[:limit]


def _check_identifier(name):
    if not _IDENTIFIER_RE.match(name or ''):
        raise ValidationError(f"Invalid identifier: {name}")
    return name


class MySQLManager:
    def __init__(self, config):
        self.config = config

    @contextmanager
    def get_connection(self):
        conn = pymysql.connect(
            host=self.config.mysql_host,
            user=self.config.mysql_root_user,
            password=self.config.mysql_root_password,
            charset='utf8mb4',
            cursorclass=pymysql.cursors.DictCursor,
            autocommit=True,
        )
        try:
            yield conn
        finally:
            conn.close()

    def _simulated_dir(self, db_name):
        return os.path.join(self.config.system_path('/var/lib/mysql'), db_name)

    def _execute(self, statements):
        """Run (sql, params) pairs as root. Simulate mode only logs them."""
        if self.config.simulate:
            for sql, _params in statements:
                logger.info(f"[simulate] mysql: {sql}")
            return []
        try:
            rows = []
            with self.get_connection() as conn:
                with conn.cursor() as cursor:
                    for sql, params in statements:
                        cursor.execute(sql, params)
                        rows.extend(cursor.fetchall())
            return rows
        except pymysql.MySQLError as e:
            logger.error(f"MySQL statement failed: {e}")
            raise CommandError(['mysql'], 1, str(e), message="MySQL operation failed")

    def create_database(self, db_name, db_user, password, host='localhost'):
        _check_identifier(db_name)
        _check_identifier(db_user)
        self._execute([
            (f"CREATE DATABASE IF NOT EXISTS `{db_name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci", None),
            (f"CREATE USER IF NOT EXISTS '{db_user}'@'{host}' IDENTIFIED BY %s", (password,)),
            (f"GRANT ALL PRIVILEGES ON `{db_name}`.* TO '{db_user}'@'{host}'", None),
            ("FLUSH PRIVILEGES", None),
        ])
        if self.config.simulate:
            os.makedirs(self._simulated_dir(db_name), exist_ok=True)
        logger.info(f"MySQL database created: {db_name} (user {db_user})")

    def drop_database(self, db_name):
        _check_identifier(db_name)
        self._execute([(f"DROP DATABASE IF EXISTS `{db_name}`", None)])
        if self.config.simulate:
            shutil.rmtree(self._simulated_dir(db_name), ignore_errors=True)
        logger.info(f"MySQL database dropped: {db_name}")

    def drop_user(self, db_user, host='localhost'):
        _check_identifier(db_user)
        self._execute([(f"DROP USER IF EXISTS '{db_user}'@'{host}'", None)])

    def drop_users_with_prefix(self, username):
        """Drop every MySQL account named <username>_%."""
        _check_identifier(username)
        if self.config.simulate:
            logger.info(f"[simulate] mysql: DROP USER for {username}_%")
            return 0
        pattern = username.replace('_', '\\_') + '\\_%'
        users = self._execute([("SELECT user, host FROM mysql.user WHERE user LIKE %s", (pattern,))])
        self._execute([(f"DROP USER IF EXISTS '{row['user']}'@'{row['host']}'", None) for row in users])
        if users:
            self._execute([("FLUSH PRIVILEGES", None)])
        return len(users)

    def database_exists(self, db_name):
        if self.config.simulate:
            return os.path.isdir(self._simulated_dir(db_name))
        rows = self._execute([("SHOW DATABASES LIKE %s", (db_name,))])
        return bool(rows)
