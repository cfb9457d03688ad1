"""
Let's Encrypt certificates and the HTTPS vhosts that use them.

Certificate state is read from the certbot live tree, never stored: the
domains table only mirrors ssl_enabled/ssl_expiry for listing.
"""

import os
import logging
from datetime import datetime, timezone

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..accounts.orchestrator import validate_domain
from ..errors import CommandError, ValidationError
from ..webserver.driver import VhostConfig, SYSTEM_WEBROOT

logger = logging.getLogger(__name__)

SYSTEM_SUBDOMAINS = ('mail', 'webmail', 'ftp')
DEFAULT_ISSUER = "Let's Encrypt"


def _utcnow():
    return datetime.now(timezone.utc)


def owned_name(domain, fqdn=None):
    """Normalized fqdn, which must be the domain itself or a name under it."""
    fqdn = validate_domain(fqdn or domain['name'])
    if fqdn != domain['name'] and not fqdn.endswith('.' + domain['name']):
        raise ValidationError(f"{fqdn} does not belong to {domain['name']}")
    return fqdn


def san_matches(fqdn, san):
    """True when a SAN entry covers fqdn, either exactly or as a wildcard over a direct child."""
    fqdn = fqdn.lower().rstrip('.')
    san = san.lower().rstrip('.')
    if san == fqdn:
        return True
    if san.startswith('*.'):
        base = san[2:]
        if fqdn == base:
            return True
        if fqdn.endswith('.' + base) and '.' not in fqdn[:-(len(base) + 1)]:
            return True
    return False


def classify(fqdn, domain_name):
    """Role of fqdn relative to its account domain: domain, www, mail, webmail, ftp or subdomain."""
    if fqdn == domain_name:
        return 'domain'
    prefix = fqdn[:-(len(domain_name) + 1)] if fqdn.endswith('.' + domain_name) else None
    if prefix == 'www':
        return 'www'
    if prefix in SYSTEM_SUBDOMAINS:
        return prefix
    return 'subdomain'


class SSLManager:
    def __init__(self, config, runner, db, driver, clock=_utcnow):
        self.config = config
        self.runner = runner
        self.db = db
        self.driver = driver
        self.clock = clock

    # ---- on-disk certificates ----

    @property
    def live_dir(self):
        return self.config.system_path('/etc/letsencrypt/live')

    def cert_paths(self, fqdn):
        base = os.path.join(self.live_dir, fqdn)
        return os.path.join(base, 'fullchain.pem'), os.path.join(base, 'privkey.pem')

    def load_certificate(self, fqdn):
        cert_path, _ = self.cert_paths(fqdn)
        try:
            with open(cert_path, 'rb') as f:
                return x509.load_pem_x509_certificate(f.read())
        except FileNotFoundError:
            return None
        except ValueError as e:
            logger.warning(f"Unreadable certificate {cert_path}: {e}")
            return None

    def certificate_info(self, fqdn):
        """Issuer, validity window and SAN list of the certificate for fqdn, or None."""
        cert = self.load_certificate(fqdn)
        if cert is None:
            return None

        orgs = cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
        issuer = orgs[0].value if orgs else DEFAULT_ISSUER
        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            names = san.value.get_values_for_type(x509.DNSName)
        except x509.ExtensionNotFound:
            names = []

        cert_path, key_path = self.cert_paths(fqdn)
        return {
            'issuer': issuer,
            'valid_from': cert.not_valid_before_utc,
            'valid_until': cert.not_valid_after_utc,
            'sans': names,
            'cert_path': cert_path,
            'key_path': key_path,
        }

    def status(self, fqdn, parent=None, domain_type='domain'):
        """Certificate status for one name, falling back to the parent's SAN/wildcard coverage."""
        entry = {
            'domain': fqdn,
            'domain_type': domain_type,
            'parent_domain': parent or '',
            'issuer': None,
            'valid_from': None,
            'valid_until': None,
            'days_left': None,
            'auto_renew': True,
            'cert_path': None,
            'key_path': None,
        }
        now = self.clock()
        info = self.certificate_info(fqdn)
        if info:
            entry.update(
                issuer=info['issuer'],
                valid_from=info['valid_from'].isoformat(),
                valid_until=info['valid_until'].isoformat(),
                cert_path=info['cert_path'],
                key_path=info['key_path'],
            )
            if now > info['valid_until']:
                entry['status'] = 'expired'
                entry['status_detail'] = 'certificate expired'
            elif now < info['valid_from']:
                entry['status'] = 'pending'
                entry['status_detail'] = 'certificate not yet valid'
            else:
                days_left = (info['valid_until'] - now).days
                entry['days_left'] = days_left
                entry['status'] = 'active'
                entry['status_detail'] = f"certificate valid, {days_left} days left"
            return entry

        parent_info = self.certificate_info(parent) if parent else None
        if parent_info and any(san_matches(fqdn, san) for san in parent_info['sans']):
            entry.update(
                issuer=parent_info['issuer'],
                valid_from=parent_info['valid_from'].isoformat(),
                valid_until=parent_info['valid_until'].isoformat(),
                days_left=(parent_info['valid_until'] - now).days,
            )
            if now > parent_info['valid_until']:
                entry['status'] = 'expired'
                entry['status_detail'] = f"parent certificate expired ({parent})"
            else:
                entry['status'] = 'active'
                entry['status_detail'] = f"covered by parent certificate ({parent})"
            return entry

        entry['status'] = 'none'
        entry['status_detail'] = 'no certificate'
        return entry

    def list_certificates(self, user):
        """Every name the caller can secure: each domain, its standard names and its subdomains."""
        if user['role'] == 'admin':
            domains = self.db.fetch_all("SELECT id, name FROM domains ORDER BY name")
            subdomains = self.db.fetch_all("""
                SELECT s.id, s.domain_id, s.full_name, d.name AS parent
                FROM subdomains s JOIN domains d ON s.domain_id = d.id
                ORDER BY s.full_name
            """)
        else:
            domains = self.db.fetch_all(
                "SELECT id, name FROM domains WHERE user_id=? ORDER BY name", (user['user_id'],))
            subdomains = self.db.fetch_all("""
                SELECT s.id, s.domain_id, s.full_name, d.name AS parent
                FROM subdomains s JOIN domains d ON s.domain_id = d.id
                WHERE s.user_id=? ORDER BY s.full_name
            """, (user['user_id'],))

        certificates = []
        for domain in domains:
            name = domain['name']
            names = [(name, None, 'domain')]
            names += [(f"{prefix}.{name}", name, prefix) for prefix in ('www',) + SYSTEM_SUBDOMAINS]
            for fqdn, parent, kind in names:
                entry = self.status(fqdn, parent, kind)
                entry.update(domain_id=domain['id'], subdomain_id=None)
                certificates.append(entry)

        for sub in subdomains:
            for fqdn, parent, kind in ((sub['full_name'], sub['parent'], 'subdomain'),
                                       (f"www.{sub['full_name']}", sub['full_name'], 'www')):
                entry = self.status(fqdn, parent, kind)
                entry.update(domain_id=sub['domain_id'], subdomain_id=sub['id'])
                certificates.append(entry)
        return certificates

    # ---- ACME client ----

    def _certbot_issue(self, names, webroot, email):
        args = ['certbot', 'certonly', '--webroot', '-w', webroot]
        for name in names:
            args += ['-d', name]
        args += ['--email', email, '--agree-tos', '--non-interactive']
        return self.runner.run(args, timeout=300)

    def issue(self, fqdn, webroot, email, include_www=False):
        """Obtain a certificate over HTTP-01. With include_www, retry once for fqdn alone."""
        names = [fqdn, f"www.{fqdn}"] if include_www else [fqdn]
        result = self._certbot_issue(names, webroot, email)
        if not result.ok and include_www:
            logger.warning(f"Issuance for {fqdn} with www failed, retrying without it: {result.output.strip()}")
            result = self._certbot_issue([fqdn], webroot, email)
        if not result.ok:
            logger.error(f"Certificate issuance for {fqdn} failed: {result.output.strip()}")
            raise CommandError(result.args, result.returncode, result.output,
                               message=f"Failed to issue certificate for {fqdn}")
        logger.info(f"Certificate issued for {fqdn}")
        return self.cert_paths(fqdn)

    def renew(self, fqdn):
        result = self.runner.run(['certbot', 'renew', '--cert-name', fqdn, '--non-interactive'], timeout=300)
        if not result.ok:
            raise CommandError(result.args, result.returncode, result.output,
                               message=f"Failed to renew certificate for {fqdn}")
        logger.info(f"Certificate renewed for {fqdn}")

    def revoke(self, fqdn):
        """Revoke and delete the certificate, then drop its HTTPS vhost."""
        result = self.runner.run(
            ['certbot', 'revoke', '--cert-name', fqdn, '--delete-after-revoke', '--non-interactive'], timeout=300)
        if not result.ok:
            raise CommandError(result.args, result.returncode, result.output,
                               message=f"Failed to revoke certificate for {fqdn}")
        self.driver.delete_ssl_vhost(fqdn)
        logger.info(f"Certificate revoked for {fqdn}")

    # ---- HTTPS vhosts ----

    def webroot_for(self, fqdn, kind, domain, username):
        """Directory certbot serves the HTTP-01 challenge from."""
        system_root = self.config.system_path(SYSTEM_WEBROOT)
        if kind in SYSTEM_SUBDOMAINS:
            return system_root
        if kind == 'subdomain':
            row = self.db.fetch_one("SELECT document_root FROM subdomains WHERE full_name=?", (fqdn,))
            root = row['document_root'] if row and row['document_root'] else None
        else:
            root = domain.get('document_root') or os.path.join(self.config.home_dir(username), 'public_html')
        if not root or not os.path.isdir(root):
            return system_root
        return root

    def configure_ssl_vhost(self, fqdn, kind, domain, username, document_root):
        """Render and enable the HTTPS vhost matching the name's role."""
        cert_file, key_file = self.cert_paths(fqdn)
        parent = domain['name']
        home = self.config.home_dir(username)
        php_version = domain.get('php_version') or self.config.php_version

        if kind == 'www' and self.driver.vhost_exists(f"{parent}-ssl"):
            # ServerAlias on the main HTTPS vhost already answers for www.
            return None

        if kind == 'webmail':
            if not hasattr(self.driver, 'webmail_config'):
                logger.info(f"{self.driver.name} does not host webmail, no HTTPS vhost for {fqdn}")
                return None
            vhost = self.driver.webmail_config(parent, cert_file, key_file)
        elif kind == 'mail':
            vhost = VhostConfig(fqdn, aliases=[], kind='redirect',
                                redirect_url=f"https://webmail.{parent}/",
                                cert_file=cert_file, key_file=key_file)
        elif kind == 'ftp':
            vhost = VhostConfig(fqdn, aliases=[], kind='static',
                                document_root=self.config.system_path(SYSTEM_WEBROOT),
                                cert_file=cert_file, key_file=key_file)
        elif kind == 'subdomain':
            app = self.db.fetch_one("""
                SELECT n.port FROM nodejs_apps n JOIN subdomains s ON n.subdomain_id = s.id
                WHERE s.full_name=?
            """, (fqdn,))
            vhost = VhostConfig(fqdn, username=username, home_dir=home, document_root=document_root,
                                php_version=php_version, aliases=[],
                                kind='proxy' if app else 'php',
                                proxy_port=app['port'] if app else None,
                                cert_file=cert_file, key_file=key_file)
        else:
            vhost = VhostConfig(fqdn, username=username, home_dir=home, document_root=document_root,
                                php_version=php_version, aliases=[] if kind == 'www' else None,
                                cert_file=cert_file, key_file=key_file)

        self.driver.prepare_ssl()
        return self.driver.create_ssl_vhost(vhost)

    def secure(self, domain, username, email, fqdn=None):
        """Issue a certificate for fqdn (default: the domain itself) and switch it to HTTPS."""
        fqdn = owned_name(domain, fqdn)
        kind = classify(fqdn, domain['name'])
        webroot = self.webroot_for(fqdn, kind, domain, username)
        self.issue(fqdn, webroot, email or f"admin@{domain['name']}", include_www=(kind == 'domain'))

        try:
            self.configure_ssl_vhost(fqdn, kind, domain, username, webroot)
        except CommandError as e:
            # The certificate exists; the vhost can be regenerated on the next issue.
            logger.warning(f"HTTPS vhost for {fqdn} not configured: {e}")

        if kind == 'domain':
            self._mark_domain(domain['id'], True)
        return self.status(fqdn, domain['name'] if kind != 'domain' else None, kind)

    def refresh(self, domain, fqdn=None):
        """Renew the certificate of one of the domain's names and report its status."""
        fqdn = owned_name(domain, fqdn)
        self.renew(fqdn)
        kind = classify(fqdn, domain['name'])
        return self.status(fqdn, domain['name'] if kind != 'domain' else None, kind)

    def unsecure(self, domain, fqdn=None):
        fqdn = owned_name(domain, fqdn)
        self.revoke(fqdn)
        if fqdn == domain['name']:
            self._mark_domain(domain['id'], False)

    def _mark_domain(self, domain_id, enabled):
        row = self.db.fetch_one("SELECT name FROM domains WHERE id=?", (domain_id,))
        if not row:
            return
        expiry = None
        if enabled:
            info = self.certificate_info(row['name'])
            expiry = info['valid_until'].strftime('%Y-%m-%d %H:%M:%S') if info else None
        self.db.update('domains', {'ssl_enabled': 1 if enabled else 0, 'ssl_expiry': expiry},
                       'id=?', (domain_id,))
