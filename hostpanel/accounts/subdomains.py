import os
import re
import sqlite3
import logging

from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..webserver.driver import VhostConfig

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r'^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$')
RESERVED_LABELS = frozenset({'www', 'mail', 'webmail', 'ftp'})


class SubdomainService:
    """Subdomains of an account domain: row, document root, vhost and A record."""

    def __init__(self, config, db, driver, records, system_users):
        self.config = config
        self.db = db
        self.driver = driver
        self.records = records
        self.system_users = system_users

    def list_subdomains(self, domain):
        return self.db.fetch_all("""
            SELECT s.*, n.port AS proxy_port FROM subdomains s
            LEFT JOIN nodejs_apps n ON n.subdomain_id = s.id
            WHERE s.domain_id=? ORDER BY s.full_name
        """, (domain['id'],))

    def _check_quota(self, user, owner_id):
        if user['role'] == 'admin':
            return
        limit = self.db.fetch_value("""
            SELECT p.max_subdomains FROM user_packages up JOIN packages p ON p.id = up.package_id
            WHERE up.user_id=?
        """, (owner_id,))
        if limit is None:
            return
        count = self.db.fetch_value("SELECT COUNT(*) FROM subdomains WHERE user_id=?", (owner_id,))
        if count >= limit:
            raise AuthorizationError(f"Subdomain limit reached ({count}/{limit})")

    def _document_root(self, home, full_name, requested):
        if not requested:
            return os.path.join(home, 'public_html', full_name)
        path = os.path.realpath(requested if os.path.isabs(requested) else os.path.join(home, requested))
        if not path.startswith(os.path.realpath(home) + os.sep):
            raise ValidationError("Document root must be inside the account's home directory")
        return path

    def create_subdomain(self, user, domain, name, document_root=None, redirect_url=None,
                         redirect_type=None, proxy_port=None):
        name = (name or '').strip().lower()
        if not _LABEL_RE.match(name) or name in RESERVED_LABELS:
            raise ValidationError("Invalid subdomain name (letters, digits and hyphen only)")
        if redirect_url and not redirect_url.startswith(('http://', 'https://')):
            raise ValidationError("Redirect URL must start with http:// or https://")
        if proxy_port is not None:
            try:
                proxy_port = int(proxy_port)
            except (TypeError, ValueError):
                raise ValidationError("proxy_port must be an integer")
            if not 1024 <= proxy_port <= 65535:
                raise ValidationError("proxy_port must be between 1024 and 65535")

        self._check_quota(user, domain['user_id'])
        owner = self.db.fetch_one("SELECT username FROM users WHERE id=?", (domain['user_id'],))
        username = owner['username']
        home = self.config.home_dir(username)
        full_name = f"{name}.{domain['name']}"
        docroot = None if redirect_url else self._document_root(home, full_name, document_root)

        if redirect_url:
            kind = 'redirect'
        elif proxy_port:
            kind = 'proxy'
        else:
            kind = 'php'
        vhost = VhostConfig(full_name, username=username, home_dir=home, document_root=docroot,
                            php_version=domain.get('php_version') or self.config.php_version,
                            aliases=[], kind=kind, proxy_port=proxy_port, redirect_url=redirect_url)

        try:
            with self.db.transaction() as conn:
                subdomain_id = self.db.insert('subdomains', {
                    'user_id': domain['user_id'],
                    'domain_id': domain['id'],
                    'name': name,
                    'full_name': full_name,
                    'document_root': docroot,
                    'redirect_url': redirect_url,
                    'redirect_type': redirect_type,
                    'active': 1,
                }, conn=conn)
                if proxy_port:
                    self.db.insert('nodejs_apps', {
                        'user_id': domain['user_id'], 'subdomain_id': subdomain_id, 'port': proxy_port,
                    }, conn=conn)

                if docroot:
                    os.makedirs(docroot, exist_ok=True)
                    os.chmod(docroot, 0o755)
                    self.system_users.chown(username, docroot, recursive=True)
                try:
                    self.driver.create_vhost(vhost)
                    self.records.add_host(domain, name, self.config.server_ip, conn=conn)
                except Exception:
                    self.driver.delete_vhost(full_name, reload=False)
                    raise
        except sqlite3.IntegrityError:
            raise ConflictError(f"{full_name} already exists or its port is taken")

        logger.info(f"Subdomain created: {full_name} ({kind})")
        return self.db.fetch_one("SELECT * FROM subdomains WHERE id=?", (subdomain_id,))

    def get_subdomain(self, user, subdomain_id):
        row = self.db.fetch_one("""
            SELECT s.*, d.name AS domain_name FROM subdomains s JOIN domains d ON d.id = s.domain_id
            WHERE s.id=?
        """, (subdomain_id,))
        if user['role'] != 'admin':
            if not row or row['user_id'] != user['user_id']:
                raise AuthorizationError()
        elif not row:
            raise NotFoundError("Subdomain not found")
        return row

    def delete_subdomain(self, user, subdomain_id):
        row = self.get_subdomain(user, subdomain_id)
        full_name = row['full_name']
        self.driver.delete_vhost(full_name)
        if self.driver.vhost_exists(f"{full_name}-ssl"):
            self.driver.delete_ssl_vhost(full_name)

        domain = {'id': row['domain_id'], 'name': row['domain_name']}
        with self.db.transaction() as conn:
            self.db.delete('nodejs_apps', 'subdomain_id=?', (subdomain_id,), conn=conn)
            self.db.delete('subdomains', 'id=?', (subdomain_id,), conn=conn)
            self.records.remove_host(domain, row['name'], conn=conn)
        logger.info(f"Subdomain deleted: {full_name}")
