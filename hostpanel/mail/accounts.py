import sqlite3
import logging

from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .registrar import split_email

logger = logging.getLogger(__name__)


class EmailService:
    """Mailboxes, forwarders and autoresponders: metadata rows plus the registrar side effects."""

    def __init__(self, db, registrar):
        self.db = db
        self.registrar = registrar

    # ---- helpers ----

    def owned_domain(self, user, domain_name):
        domain = self.db.fetch_one("SELECT * FROM domains WHERE name=?", (domain_name,))
        if user['role'] != 'admin':
            if not domain or domain['user_id'] != user['user_id']:
                raise AuthorizationError()
        elif not domain:
            raise NotFoundError(f"Domain {domain_name} not found")
        return domain

    def _owned_row(self, user, table, row_id, label):
        row = self.db.fetch_one(f"SELECT * FROM {table} WHERE id=?", (row_id,))
        if user['role'] != 'admin':
            if not row or row['user_id'] != user['user_id']:
                raise AuthorizationError()
        elif not row:
            raise NotFoundError(f"{label} not found")
        return row

    def _scope(self, user):
        if user['role'] == 'admin':
            return '', ()
        return 'WHERE user_id=?', (user['user_id'],)

    def _check_quota(self, owner_id):
        limit = self.db.fetch_value("""
            SELECT p.max_emails FROM user_packages up JOIN packages p ON p.id = up.package_id
            WHERE up.user_id=?
        """, (owner_id,))
        if limit is None:
            return
        count = self.db.fetch_value("SELECT COUNT(*) FROM email_accounts WHERE user_id=?", (owner_id,))
        if count >= limit:
            raise ValidationError(f"Email account limit reached ({limit})")

    @staticmethod
    def _check_password(password):
        if not password or len(password) < 8:
            raise ValidationError("Password must be at least 8 characters")

    # ---- mailboxes ----

    def list_accounts(self, user):
        where, params = self._scope(user)
        return self.db.fetch_all(
            f"SELECT id, user_id, domain_id, email, quota_mb, active, created_at FROM email_accounts {where} ORDER BY email",
            params)

    def create_account(self, user, email, password, quota_mb=1024):
        local, domain_name = split_email(email)
        email = f"{local}@{domain_name}"
        self._check_password(password)
        domain = self.owned_domain(user, domain_name)
        if user['role'] != 'admin':
            self._check_quota(domain['user_id'])
        if self.db.fetch_value("SELECT COUNT(*) FROM email_accounts WHERE email=?", (email,)):
            raise ConflictError(f"{email} already exists")

        self.registrar.add_mailbox(email, password)
        try:
            account_id = self.db.insert('email_accounts', {
                'user_id': domain['user_id'],
                'domain_id': domain['id'],
                'email': email,
                'password_hash': self.registrar.hash_password(password),
                'quota_mb': int(quota_mb or 1024),
            })
        except sqlite3.IntegrityError:
            self.registrar.remove_mailbox(email)
            raise ConflictError(f"{email} already exists")
        return {'id': account_id, 'email': email, 'quota_mb': int(quota_mb or 1024)}

    def change_password(self, user, account_id, password):
        self._check_password(password)
        row = self._owned_row(user, 'email_accounts', account_id, 'Email account')
        self.registrar.set_mailbox_password(row['email'], password)
        self.db.update('email_accounts', {'password_hash': self.registrar.hash_password(password)},
                       'id=?', (account_id,))
        logger.info(f"Mailbox password changed: {row['email']}")

    def delete_account(self, user, account_id):
        row = self._owned_row(user, 'email_accounts', account_id, 'Email account')
        self.registrar.remove_autoresponder(row['email'])
        self.registrar.remove_mailbox(row['email'])
        with self.db.transaction() as conn:
            self.db.delete('email_autoresponders', 'email=?', (row['email'],), conn=conn)
            self.db.delete('email_accounts', 'id=?', (account_id,), conn=conn)

    # ---- forwarders ----

    def list_forwarders(self, user):
        where, params = self._scope(user)
        return self.db.fetch_all(f"SELECT * FROM email_forwarders {where} ORDER BY source", params)

    def create_forwarder(self, user, source, destination):
        local, domain_name = split_email(source)
        source = f"{local}@{domain_name}"
        dest_local, dest_domain = split_email(destination)
        destination = f"{dest_local}@{dest_domain}"
        domain = self.owned_domain(user, domain_name)
        try:
            forwarder_id = self.db.insert('email_forwarders', {
                'user_id': domain['user_id'], 'domain_id': domain['id'],
                'source': source, 'destination': destination,
            })
        except sqlite3.IntegrityError:
            raise ConflictError(f"Forwarder {source} -> {destination} already exists")
        self.registrar.add_forwarder(source, destination)
        logger.info(f"Forwarder created: {source} -> {destination}")
        return {'id': forwarder_id, 'source': source, 'destination': destination}

    def delete_forwarder(self, user, forwarder_id):
        row = self._owned_row(user, 'email_forwarders', forwarder_id, 'Forwarder')
        self.registrar.remove_forwarder(row['source'], row['destination'])
        self.db.delete('email_forwarders', 'id=?', (forwarder_id,))

    # ---- autoresponders ----

    def list_autoresponders(self, user):
        where, params = self._scope(user)
        return self.db.fetch_all(f"SELECT * FROM email_autoresponders {where} ORDER BY email", params)

    def set_autoresponder(self, user, email, subject, body, start_date=None, end_date=None):
        """Create or replace the vacation reply of an existing mailbox."""
        if not subject or not body:
            raise ValidationError("subject and body are required")
        local, domain_name = split_email(email)
        email = f"{local}@{domain_name}"
        domain = self.owned_domain(user, domain_name)
        if not self.db.fetch_value("SELECT COUNT(*) FROM email_accounts WHERE email=?", (email,)):
            raise ValidationError(f"No mailbox for {email}")

        self.registrar.set_autoresponder(email, subject, body)
        with self.db.transaction() as conn:
            self.db.delete('email_autoresponders', 'email=?', (email,), conn=conn)
            responder_id = self.db.insert('email_autoresponders', {
                'user_id': domain['user_id'], 'domain_id': domain['id'], 'email': email,
                'subject': subject, 'body': body, 'start_date': start_date, 'end_date': end_date,
            }, conn=conn)
        logger.info(f"Autoresponder set for {email}")
        return {'id': responder_id, 'email': email, 'subject': subject}

    def delete_autoresponder(self, user, responder_id):
        row = self._owned_row(user, 'email_autoresponders', responder_id, 'Autoresponder')
        self.registrar.remove_autoresponder(row['email'])
        self.db.delete('email_autoresponders', 'id=?', (responder_id,))

    # ---- DKIM ----

    def dkim(self, domain):
        settings = self.db.fetch_one("SELECT * FROM email_settings WHERE domain_id=?", (domain['id'],)) or {}
        return {
            'domain': domain['name'],
            'selector': settings.get('dkim_selector') or 'default',
            'enabled': bool(settings.get('dkim_enabled')),
            'record': self.registrar.dkim_public_record(domain['name']),
        }
