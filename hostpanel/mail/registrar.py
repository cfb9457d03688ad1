"""
Mail domain registration for Postfix, Dovecot and OpenDKIM.

Lookup tables are treated as sets of lines keyed by their first field:
adding is idempotent, removal is by key and a missing entry is not an error.
"""

import os
import re
import shutil
import logging

import bcrypt

from ..errors import ValidationError

logger = logging.getLogger(__name__)

DKIM_SELECTOR = 'default'

_LOCAL_PART_RE = re.compile(r'^[a-z0-9]([a-z0-9._+-]*[a-z0-9])?$')


def split_email(email):
    """Split and validate an address into (local, domain)."""
    email = (email or '').strip().lower()
    if email.count('@') != 1:
        raise ValidationError(f"Invalid email address: {email}")
    local, domain = email.split('@')
    if not local or not domain or not _LOCAL_PART_RE.match(local):
        raise ValidationError(f"Invalid email address: {email}")
    return local, domain


class LookupTable:
    """A line-oriented map file where the first whitespace-separated field is the key."""

    def __init__(self, path, separator=None):
        self.path = path
        self.separator = separator

    def lines(self):
        try:
            with open(self.path) as f:
                return [line.rstrip('\n') for line in f if line.strip()]
        except FileNotFoundError:
            return []

    def _key(self, line):
        if self.separator:
            return line.split(self.separator, 1)[0]
        return line.split()[0]

    def has_key(self, key):
        return any(self._key(line) == key for line in self.lines())

    def has_line(self, line):
        return line in self.lines()

    def add(self, line):
        """Append a line unless it is already present. Returns True when the file changed."""
        if self.has_line(line):
            return False
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        with open(self.path, 'a') as f:
            f.write(line + '\n')
        return True

    def remove(self, predicate):
        """Drop every line whose key satisfies predicate. Returns the number removed."""
        lines = self.lines()
        kept = [line for line in lines if not predicate(self._key(line), line)]
        if len(kept) == len(lines):
            return 0
        with open(self.path, 'w') as f:
            f.write(''.join(line + '\n' for line in kept))
        return len(lines) - len(kept)

    def remove_key(self, key):
        return self.remove(lambda k, line: k == key)


class MailDomainRegistrar:
    def __init__(self, config, runner):
        self.config = config
        self.runner = runner
        p = config.system_path
        self.vdomains = LookupTable(p('/etc/postfix/vdomains'))
        self.virtual = LookupTable(p('/etc/postfix/virtual'))
        self.vmailbox = LookupTable(p('/etc/postfix/vmailbox'))
        self.dovecot_users = LookupTable(p('/etc/dovecot/users'), separator=':')
        self.key_table = LookupTable(p('/etc/opendkim/KeyTable'))
        self.signing_table = LookupTable(p('/etc/opendkim/SigningTable'))
        self.trusted_hosts = LookupTable(p('/etc/opendkim/TrustedHosts'))

    # ---- paths ----

    def dkim_key_dir(self, domain):
        return self.config.system_path(f'/etc/opendkim/keys/{domain}')

    def domain_spool(self, domain):
        return self.config.system_path(f'/var/mail/vhosts/{domain}')

    def maildir(self, email):
        local, domain = split_email(email)
        return os.path.join(self.domain_spool(domain), local)

    # ---- helpers ----

    def _postmap(self, table):
        result = self.runner.run(['postmap', table.path])
        if not result.ok:
            logger.warning(f"postmap {table.path} failed: {result.output.strip()}")

    def _reload(self, *services):
        for service in services:
            result = self.runner.run(['systemctl', 'reload', service])
            if not result.ok:
                logger.warning(f"Reload of {service} failed: {result.output.strip()}")

    def _reload_dovecot(self):
        result = self.runner.run(['doveadm', 'reload'])
        if not result.ok:
            logger.warning(f"doveadm reload failed: {result.output.strip()}")

    # ---- domains ----

    def add_domain(self, domain):
        """Register a domain with Postfix and OpenDKIM. Safe to call repeatedly."""
        if self.vdomains.add(f"{domain} OK"):
            self._postmap(self.vdomains)

        self.ensure_dkim(domain)
        self.reconcile_dkim_tables(domain)

        spool = self.domain_spool(domain)
        os.makedirs(spool, exist_ok=True)
        os.chmod(spool, 0o770)
        self.runner.run(['chown', '-R', 'vmail:vmail', spool])

        self._reload('opendkim', 'postfix')
        logger.info(f"Mail domain registered: {domain}")

    def remove_domain(self, domain):
        """Undo add_domain plus every mailbox and alias under the domain."""
        suffix = f"@{domain}"
        removed_vdomains = self.vdomains.remove_key(domain)
        removed_virtual = self.virtual.remove(lambda k, line: k.endswith(suffix) or k == suffix)
        removed_vmailbox = self.vmailbox.remove(lambda k, line: k.endswith(suffix))
        self.dovecot_users.remove(lambda k, line: k.endswith(suffix))

        self.key_table.remove_key(f"{DKIM_SELECTOR}._domainkey.{domain}")
        self.signing_table.remove_key(f"*@{domain}")
        self.trusted_hosts.remove_key(domain)

        if removed_vdomains:
            self._postmap(self.vdomains)
        if removed_virtual:
            self._postmap(self.virtual)
        if removed_vmailbox:
            self._postmap(self.vmailbox)

        for path in (self.dkim_key_dir(domain), self.domain_spool(domain)):
            if os.path.isdir(path):
                shutil.rmtree(path)

        self._reload('opendkim', 'postfix')
        self._reload_dovecot()
        logger.info(f"Mail domain removed: {domain}")

    def is_registered(self, domain):
        return self.vdomains.has_key(domain)

    # ---- DKIM ----

    def ensure_dkim(self, domain):
        """Generate the DKIM key pair once; later calls leave it alone."""
        keydir = self.dkim_key_dir(domain)
        private_key = os.path.join(keydir, f"{DKIM_SELECTOR}.private")
        os.makedirs(keydir, exist_ok=True)
        os.chmod(keydir, 0o750)
        if os.path.exists(private_key):
            return private_key

        self.runner.check(['opendkim-genkey', '-s', DKIM_SELECTOR, '-d', domain, '-D', keydir], cwd=keydir)
        self.runner.run(['chown', '-R', 'opendkim:opendkim', keydir])
        if os.path.exists(private_key):
            os.chmod(private_key, 0o600)
        logger.info(f"DKIM key generated for {domain}")
        return private_key

    def reconcile_dkim_tables(self, domain):
        """One KeyTable, SigningTable and TrustedHosts line per DKIM domain."""
        keydir = self.dkim_key_dir(domain)
        record = f"{DKIM_SELECTOR}._domainkey.{domain}"
        key_line = f"{record} {domain}:{DKIM_SELECTOR}:{keydir}/{DKIM_SELECTOR}.private"
        signing_line = f"*@{domain} {record}"

        if not self.key_table.has_line(key_line):
            self.key_table.remove_key(record)
            self.key_table.add(key_line)
        if not self.signing_table.has_line(signing_line):
            self.signing_table.remove_key(f"*@{domain}")
            self.signing_table.add(signing_line)
        self.trusted_hosts.add(domain)

    def dkim_public_record(self, domain):
        """Contents of default.txt, the TXT record to publish, or None."""
        path = os.path.join(self.dkim_key_dir(domain), f"{DKIM_SELECTOR}.txt")
        try:
            with open(path) as f:
                return f.read()
        except FileNotFoundError:
            return None

    # ---- mailboxes ----

    def hash_password(self, password):
        """Hash with Dovecot's own tool so the scheme always matches the server."""
        result = self.runner.check(['doveadm', 'pw', '-s', 'BLF-CRYPT', '-p', password])
        hashed = result.output.strip()
        if not hashed and self.runner.simulate:
            hashed = '{BLF-CRYPT}' + bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')
        return hashed

    def add_mailbox(self, email, password):
        local, domain = split_email(email)
        if not self.is_registered(domain):
            raise ValidationError(f"{domain} is not a mail domain on this server")

        maildir = self.maildir(email)
        for sub in ('cur', 'new', 'tmp'):
            os.makedirs(os.path.join(maildir, sub), exist_ok=True)
        for path in (maildir, *(os.path.join(maildir, s) for s in ('cur', 'new', 'tmp'))):
            os.chmod(path, 0o700)
        self.runner.run(['chown', '-R', 'vmail:vmail', maildir])

        if not self.vmailbox.has_key(email):
            self.vmailbox.add(f"{email} {domain}/{local}/")
            self._postmap(self.vmailbox)

        self.dovecot_users.remove_key(email)
        self.dovecot_users.add(f"{email}:{self.hash_password(password)}")
        os.chmod(self.dovecot_users.path, 0o640)

        self._reload('postfix')
        logger.info(f"Mailbox created: {email}")

    def set_mailbox_password(self, email, password):
        if not self.dovecot_users.has_key(email):
            raise ValidationError(f"No mailbox for {email}")
        self.dovecot_users.remove_key(email)
        self.dovecot_users.add(f"{email}:{self.hash_password(password)}")
        self._reload_dovecot()

    def remove_mailbox(self, email):
        split_email(email)
        if self.vmailbox.remove_key(email):
            self._postmap(self.vmailbox)
        self.dovecot_users.remove_key(email)
        maildir = self.maildir(email)
        if os.path.isdir(maildir):
            shutil.rmtree(maildir)
        self._reload('postfix')
        self._reload_dovecot()
        logger.info(f"Mailbox removed: {email}")

    # ---- forwarders ----

    def add_forwarder(self, source, destination):
        split_email(source)
        split_email(destination)
        if self.virtual.add(f"{source} {destination}"):
            self._postmap(self.virtual)
            self._reload('postfix')

    def remove_forwarder(self, source, destination=None):
        if destination is None:
            removed = self.virtual.remove_key(source)
        else:
            removed = self.virtual.remove(lambda k, line: line == f"{source} {destination}")
        if removed:
            self._postmap(self.virtual)
            self._reload('postfix')

    # ---- autoresponders ----

    def sieve_path(self, email):
        return os.path.join(self.maildir(email), 'sieve', 'vacation.sieve')

    def set_autoresponder(self, email, subject, body, days=1):
        path = self.sieve_path(email)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        subject = subject.replace('\\', '\\\\').replace('"', '\\"')
        body = body.replace('\\', '\\\\').replace('"', '\\"')
        with open(path, 'w') as f:
            f.write(f'require ["vacation"];\nvacation\n  :days {int(days)}\n  :subject "{subject}"\n  "{body}";\n')
        os.chmod(path, 0o600)
        self.runner.run(['chown', '-R', 'vmail:vmail', os.path.dirname(path)])
        result = self.runner.run(['sievec', path])
        if not result.ok:
            logger.warning(f"sievec {path} failed: {result.output.strip()}")
        return path

    def remove_autoresponder(self, email):
        path = self.sieve_path(email)
        for candidate in (path, path + 'c'):
            if os.path.exists(candidate):
                os.remove(candidate)
