"""
Hosting account lifecycle.

Creation reserves the user and domain rows inside one metadata transaction,
drives every external component in a fixed order and commits only after the
last side effect succeeded. A failing step undoes the steps already run, in
reverse, and the transaction rolls back. Deletion tears down in an order
that guarantees no process of the user survives when its home is removed.
"""

import os
import re
import shutil
import sqlite3
import logging

from ..auth import hash_password
from ..bind.zone_manager import default_records
from ..errors import (
    AuthorizationError, CommandError, ConflictError, NotFoundError, PanelError, ValidationError,
)
from ..phpfpm.pool_manager import DEFAULT_SETTINGS
from ..webserver.driver import VhostConfig

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r'^[a-z][a-z0-9_]{2,31}$')
DOMAIN_RE = re.compile(r'^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*\.[a-z]{2,63}$')
RESERVED_USERNAMES = frozenset({
    'root', 'admin', 'administrator', 'www-data', 'nginx', 'mysql', 'postgres', 'mail', 'ftp',
})
DEFAULT_PACKAGE = 'Starter'

WELCOME_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{domain} - Welcome</title>
    <style>
        * {{ margin: 0; padding: 0; box-sizing: border-box; }}
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            color: white;
        }}
        .container {{ text-align: center; padding: 2rem; }}
        h1 {{ font-size: 3rem; margin-bottom: 1rem; }}
        p {{ font-size: 1.2rem; opacity: 0.9; }}
        .domain {{
            font-family: monospace;
            background: rgba(255,255,255,0.2);
            padding: 0.5rem 1rem;
            border-radius: 8px;
            margin-top: 1rem;
            display: inline-block;
        }}
    </style>
</head>
<body>
    <div class="container">
        <h1>It works!</h1>
        <p>Your website has been created.</p>
        <div class="domain">{domain}</div>
        <p style="margin-top: 2rem; font-size: 0.9rem; opacity: 0.7;">
            Upload your files to the public_html folder to replace this page.
        </p>
    </div>
</body>
</html>
"""


def validate_username(username):
    username = (username or '').strip()
    if not USERNAME_RE.match(username) or username in RESERVED_USERNAMES:
        raise ValidationError(
            "Invalid username: 3-32 characters, lowercase letters, digits and underscore, starting with a letter")
    return username


def validate_domain(domain):
    domain = (domain or '').strip().lower().rstrip('.')
    if len(domain) > 253 or not DOMAIN_RE.match(domain):
        raise ValidationError(f"Invalid domain: {domain}")
    return domain


class ProvisionContext:
    """State shared by the creation steps of one account."""

    def __init__(self, conn, username, domain, home_dir, php_version):
        self.conn = conn
        self.username = username
        self.domain = domain
        self.home_dir = home_dir
        self.document_root = os.path.join(home_dir, 'public_html')
        self.php_version = php_version
        self.user_id = None
        self.domain_id = None
        self.created_user = False


class AccountService:
    # Every creation step has an undo under the same key; order is execution order.
    CREATE_STEPS = {
        'system_user': '_create_system_user',
        'home_tree': '_create_home_tree',
        'vhost': '_create_vhost',
        'php_pool': '_create_php_pool',
        'dns_zone': '_create_dns_zone',
        'webmail_vhost': '_create_webmail_vhost',
        'mail_domain': '_register_mail_domain',
        'welcome_page': '_write_welcome_page',
    }
    ROLLBACK_STEPS = {
        'system_user': '_remove_system_user',
        'home_tree': '_remove_home_tree',
        'vhost': '_remove_vhost',
        'php_pool': '_remove_php_pool',
        'dns_zone': '_remove_dns_zone',
        'webmail_vhost': '_remove_webmail_vhost',
        'mail_domain': '_unregister_mail_domain',
        'welcome_page': '_remove_welcome_page',
    }

    def __init__(self, config, db, driver, fpm, dns, mail, system_users, mysql):
        self.config = config
        self.db = db
        self.driver = driver
        self.fpm = fpm
        self.dns = dns
        self.mail = mail
        self.system_users = system_users
        self.mysql = mysql

    # ============== Queries ==============

    _ACCOUNT_SELECT = """
        SELECT u.id, u.username, u.email, u.role, u.active, u.parent_id, u.created_at,
               COALESCE(d.name, '') AS domain,
               d.id AS domain_id,
               COALESCE(p.id, 0) AS package_id,
               COALESCE(p.name, 'No Package') AS package_name,
               COALESCE(p.disk_quota, 0) AS disk_quota
        FROM users u
        LEFT JOIN domains d ON d.user_id = u.id AND d.domain_type = 'primary'
        LEFT JOIN user_packages up ON up.user_id = u.id
        LEFT JOIN packages p ON p.id = up.package_id
    """

    def _decorate(self, row):
        row['active'] = bool(row['active'])
        row['home_dir'] = self.config.home_dir(row['username'])
        return row

    def list_accounts(self, user):
        if user['role'] == 'admin':
            rows = self.db.fetch_all(
                self._ACCOUNT_SELECT + " WHERE u.role != 'admin' ORDER BY u.created_at DESC, u.id DESC")
        else:
            rows = self.db.fetch_all(
                self._ACCOUNT_SELECT + " WHERE u.parent_id = ? ORDER BY u.created_at DESC, u.id DESC",
                (user['user_id'],))
        return [self._decorate(r) for r in rows]

    def get_account(self, user_id):
        row = self.db.fetch_one(self._ACCOUNT_SELECT + " WHERE u.id = ?", (user_id,))
        if not row:
            raise NotFoundError("Account not found")
        return self._decorate(row)

    def resolve_package(self, package=None, conn=None):
        if package in (None, ''):
            row = self.db.fetch_one("SELECT * FROM packages WHERE name=?", (DEFAULT_PACKAGE,), conn=conn)
        elif isinstance(package, int) or str(package).isdigit():
            row = self.db.fetch_one("SELECT * FROM packages WHERE id=?", (int(package),), conn=conn)
        else:
            row = self.db.fetch_one("SELECT * FROM packages WHERE name=?", (package,), conn=conn)
        if not row:
            raise ValidationError("Package not found")
        return row

    def ensure_active(self, user):
        """Mutating operations refuse suspended accounts. Admins are never suspended."""
        if user.get('role') == 'admin':
            return
        active = self.db.fetch_value("SELECT active FROM users WHERE id=?", (user['user_id'],))
        if not active:
            raise AuthorizationError("Account is suspended")

    # ============== Creation ==============

    def create_account(self, username, email, password, domain, package=None, parent_id=None):
        username = validate_username(username)
        domain = validate_domain(domain)
        email = (email or '').strip()
        if '@' not in email:
            raise ValidationError("A valid email address is required")
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        pkg = self.resolve_package(package)

        if self.db.fetch_value("SELECT COUNT(*) FROM users WHERE username=?", (username,)):
            raise ConflictError(f"Username {username} already exists")
        if self.db.fetch_value("SELECT COUNT(*) FROM domains WHERE name=?", (domain,)):
            raise ConflictError(f"Domain {domain} already exists")

        password_hash = hash_password(password)
        home_dir = self.config.home_dir(username)
        logger.info(f"Creating account {username} ({domain}) on package {pkg['name']}")

        ctx = None
        provisioned = False
        try:
            with self.db.transaction() as conn:
                ctx = ProvisionContext(conn, username, domain, home_dir, self.config.php_version)
                self._reserve(ctx, email, password_hash, pkg, parent_id)
                self._run_steps(ctx)
                provisioned = True
        except sqlite3.IntegrityError as e:
            logger.warning(f"Account {username} conflicts with an existing record: {e}")
            raise ConflictError(f"Username, email or domain already exists ({username}, {domain})")
        except sqlite3.Error:
            # Every side effect succeeded but the commit did not.
            if provisioned:
                self._rollback(ctx, list(self.CREATE_STEPS))
            raise

        logger.info(f"Account created: {username} ({email}) - {domain}")
        return self.get_account(ctx.user_id)

    def _reserve(self, ctx, email, password_hash, pkg, parent_id):
        conn = ctx.conn
        ctx.user_id = self.db.insert('users', {
            'username': ctx.username,
            'email': email,
            'password_hash': password_hash,
            'role': 'user',
            'parent_id': parent_id,
            'active': 1,
        }, conn=conn)
        self.db.insert('user_packages', {'user_id': ctx.user_id, 'package_id': pkg['id']}, conn=conn)
        ctx.domain_id = self.db.insert('domains', {
            'user_id': ctx.user_id,
            'name': ctx.domain,
            'domain_type': 'primary',
            'document_root': ctx.document_root,
            'php_version': ctx.php_version,
            'active': 1,
        }, conn=conn)
        self.db.insert('php_settings', {'domain_id': ctx.domain_id, **DEFAULT_SETTINGS}, conn=conn)

    def _run_steps(self, ctx):
        done = []
        for name, method in self.CREATE_STEPS.items():
            done.append(name)
            try:
                getattr(self, method)(ctx)
            except Exception as e:
                logger.error(f"Account {ctx.username}: step {name} failed: {e}")
                self._rollback(ctx, done)
                if isinstance(e, PanelError):
                    raise
                raise CommandError([name], 1, str(e), message=f"Account creation failed at {name}") from e

    def _rollback(self, ctx, done):
        """Undo the given steps newest first. Undo is best effort and never raises."""
        for name in reversed(done):
            try:
                getattr(self, self.ROLLBACK_STEPS[name])(ctx)
            except Exception as e:
                logger.warning(f"Account {ctx.username}: undo of {name} failed: {e}")

    # ---- steps ----

    def _create_system_user(self, ctx):
        ctx.created_user = self.system_users.create(ctx.username)

    def _remove_system_user(self, ctx):
        if ctx.created_user:
            self.system_users.kill_processes(ctx.username, settle=0)
            self.system_users.delete(ctx.username)

    def _create_home_tree(self, ctx):
        self.system_users.create_tree(ctx.username, htaccess=self.driver.supports_htaccess)

    def _remove_home_tree(self, ctx):
        # An adopted home stays for the next attempt; a fresh one goes with its user.
        if ctx.created_user and os.path.isdir(ctx.home_dir):
            shutil.rmtree(ctx.home_dir)

    def _vhost_config(self, ctx):
        return VhostConfig(
            ctx.domain,
            username=ctx.username,
            home_dir=ctx.home_dir,
            document_root=ctx.document_root,
            php_version=ctx.php_version,
        )

    def _create_vhost(self, ctx):
        self.driver.create_vhost(self._vhost_config(ctx))

    def _remove_vhost(self, ctx):
        self.driver.delete_vhost(ctx.domain)

    def _create_php_pool(self, ctx):
        self.fpm.create_pool(ctx.username, ctx.home_dir, ctx.php_version)

    def _remove_php_pool(self, ctx):
        self.fpm.delete_pool(ctx.username, ctx.php_version)

    def _create_dns_zone(self, ctx):
        records = default_records(ctx.domain, self.config.server_ip, self.config.nameservers)
        for record in records:
            self.db.insert('dns_records', {'domain_id': ctx.domain_id, **record}, conn=ctx.conn)
        self.dns.write_zone(ctx.domain, records)

    def _remove_dns_zone(self, ctx):
        self.dns.delete_zone(ctx.domain)

    def _create_webmail_vhost(self, ctx):
        self.driver.create_webmail_vhost(ctx.domain)

    def _remove_webmail_vhost(self, ctx):
        self.driver.delete_webmail_vhost(ctx.domain)

    def _register_mail_domain(self, ctx):
        self.mail.add_domain(ctx.domain)
        self.db.insert('email_settings', {
            'domain_id': ctx.domain_id,
            'dkim_enabled': 1,
            'dkim_public_key': self.mail.dkim_public_record(ctx.domain),
            'spf_record': f"v=spf1 a mx ip4:{self.config.server_ip} ~all",
        }, conn=ctx.conn)

    def _unregister_mail_domain(self, ctx):
        self.mail.remove_domain(ctx.domain)

    def _write_welcome_page(self, ctx):
        path = os.path.join(ctx.document_root, 'index.html')
        with open(path, 'w') as f:
            f.write(WELCOME_PAGE.format(domain=ctx.domain))
        os.chmod(path, 0o644)
        self.system_users.chown(ctx.username, path)
        logger.info(f"Welcome page created: {path}")

    def _remove_welcome_page(self, ctx):
        path = os.path.join(ctx.document_root, 'index.html')
        if os.path.exists(path):
            os.remove(path)

    # ============== Deletion ==============

    def delete_account(self, user_id):
        user = self.db.fetch_one("SELECT id, username, role FROM users WHERE id=?", (user_id,))
        if not user:
            raise NotFoundError("Account not found")
        if user['role'] == 'admin':
            raise ValidationError("Administrator accounts cannot be deleted")
        username = user['username']
        logger.info(f"Deleting account: {username} (ID: {user_id})")

        # Collect everything before the metadata goes away.
        domains = [r['name'] for r in self.db.fetch_all(
            "SELECT name FROM domains WHERE user_id=? ORDER BY id", (user_id,))]
        subdomains = [r['full_name'] for r in self.db.fetch_all(
            "SELECT full_name FROM subdomains WHERE user_id=?", (user_id,))]
        databases = [r['name'] for r in self.db.fetch_all(
            "SELECT name FROM databases WHERE user_id=?", (user_id,))]

        for site in subdomains:
            self._best_effort(f"vhost {site}", self.driver.delete_vhost, site, reload=False)
            self._best_effort(f"ssl vhost {site}", self.driver.delete_ssl_vhost, site, reload=False)
        for domain in domains:
            self._best_effort(f"vhost {domain}", self.driver.delete_vhost, domain, reload=False)
            self._best_effort(f"ssl vhost {domain}", self.driver.delete_ssl_vhost, domain, reload=False)
            self._best_effort(f"webmail vhost {domain}", self._delete_webmail_quietly, domain)
            self._best_effort(f"dns zone {domain}", self.dns.delete_zone, domain, reload=False)
            self._best_effort(f"mail domain {domain}", self.mail.remove_domain, domain)
        if domains or subdomains:
            self._best_effort("web server reload", self.driver.reload)
            self._best_effort("dns reload", self.dns.reload)

        removed_versions = self.fpm.delete_pool(username, reload=False)
        for version in removed_versions or [self.config.php_version]:
            self.fpm.restart(version)

        self.system_users.kill_processes(username)

        for name in databases:
            self._best_effort(f"database {name}", self.mysql.drop_database, name)
        self._best_effort("database users", self.mysql.drop_users_with_prefix, username)

        self._delete_metadata(user_id)

        self.system_users.delete(username)
        logger.info(f"Account deleted completely: {username}")
        return {'username': username, 'domains': domains, 'databases': databases}

    def _delete_webmail_quietly(self, domain):
        site = f"webmail.{domain}"
        if self.driver.vhost_exists(site):
            self.driver.delete_vhost(site, reload=False)
        if self.driver.vhost_exists(f"{site}-ssl"):
            self.driver.delete_vhost(f"{site}-ssl", reload=False)

    def _best_effort(self, what, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (PanelError, OSError) as e:
            logger.warning(f"Cleanup of {what} failed: {e}")
            return None

    def _delete_metadata(self, user_id):
        with self.db.transaction() as conn:
            domain_ids = [r['id'] for r in self.db.fetch_all(
                "SELECT id FROM domains WHERE user_id=?", (user_id,), conn=conn)]
            for domain_id in domain_ids:
                for table in ('dns_records', 'php_settings', 'email_settings'):
                    self.db.delete(table, 'domain_id=?', (domain_id,), conn=conn)
            for table in ('email_autoresponders', 'email_forwarders', 'email_accounts', 'nodejs_apps',
                          'subdomains', 'database_users', 'databases', 'cron_jobs', 'ftp_accounts',
                          'mail_queue', 'email_send_log', 'user_packages', 'activity_logs'):
                self.db.delete(table, 'user_id=?', (user_id,), conn=conn)
            self.db.delete('domains', 'user_id=? AND parent_domain_id IS NOT NULL', (user_id,), conn=conn)
            self.db.delete('domains', 'user_id=?', (user_id,), conn=conn)
            self.db.delete('users', 'id=?', (user_id,), conn=conn)

    # ============== Suspension ==============

    def _set_active(self, user_id, active):
        row = self.db.fetch_one("SELECT role FROM users WHERE id=?", (user_id,))
        if not row:
            raise NotFoundError("Account not found")
        if row['role'] == 'admin':
            raise ValidationError("Administrator accounts cannot be suspended")
        self.db.update('users', {'active': 1 if active else 0}, 'id=?', (user_id,))
        logger.info(f"Account {user_id} {'unsuspended' if active else 'suspended'}")

    def suspend_account(self, user_id):
        self._set_active(user_id, False)

    def unsuspend_account(self, user_id):
        self._set_active(user_id, True)
