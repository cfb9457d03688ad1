"""
Virtual host management shared by the Apache and Nginx drivers.
Subclasses only know how to render their dialect and enable a site.
"""

import os
import logging

from ..errors import CommandError, ValidationError

logger = logging.getLogger(__name__)

VHOST_KINDS = ('php', 'proxy', 'redirect', 'static', 'webmail')

ROUNDCUBE_ROOT = '/usr/share/roundcube'
SYSTEM_WEBROOT = '/var/www/html'


class VhostConfig:
    """Everything needed to render one site's configuration."""

    def __init__(self, domain, username=None, home_dir=None, document_root=None,
                 php_version='8.2', aliases=None, kind='php', proxy_port=None,
                 redirect_url=None, cert_file=None, key_file=None):
        if kind not in VHOST_KINDS:
            raise ValidationError(f"Unknown vhost kind: {kind}")
        self.domain = domain
        self.username = username
        self.home_dir = home_dir
        self.document_root = document_root
        self.php_version = php_version or '8.2'
        self.aliases = list(aliases) if aliases is not None else [f"www.{domain}"]
        self.kind = kind
        self.proxy_port = proxy_port
        self.redirect_url = redirect_url
        self.cert_file = cert_file
        self.key_file = key_file

    @property
    def fpm_socket(self):
        return f"/run/php/php{self.php_version}-fpm-{self.username}.sock"

    @property
    def has_ssl(self):
        return bool(self.cert_file and self.key_file)


class VhostDriver:
    name = None
    service = None
    supports_htaccess = False
    config_root = None
    system_log_dir = None

    def __init__(self, config, runner):
        self.config = config
        self.runner = runner

    # ---- paths ----

    @property
    def sites_available(self):
        return self.config.system_path(os.path.join(self.config_root, 'sites-available'))

    @property
    def sites_enabled(self):
        return self.config.system_path(os.path.join(self.config_root, 'sites-enabled'))

    def conf_path(self, site):
        return os.path.join(self.sites_available, f"{site}.conf")

    def enabled_path(self, site):
        return os.path.join(self.sites_enabled, f"{site}.conf")

    def vhost_exists(self, site):
        return os.path.exists(self.conf_path(site))

    def log_paths(self, vhost, ssl=False):
        """Error and access log locations for a vhost."""
        if vhost.home_dir:
            logs = os.path.join(vhost.home_dir, 'logs')
            return os.path.join(logs, 'error.log'), os.path.join(logs, 'access.log')
        suffix = '-ssl' if ssl else ''
        return (
            os.path.join(self.system_log_dir, f"{vhost.domain}{suffix}-error.log"),
            os.path.join(self.system_log_dir, f"{vhost.domain}{suffix}-access.log"),
        )

    # ---- rendering ----

    def render(self, vhost):
        raise NotImplementedError

    def render_ssl(self, vhost):
        raise NotImplementedError

    # ---- lifecycle ----

    def write(self, site, content):
        os.makedirs(self.sites_available, exist_ok=True)
        path = self.conf_path(site)
        with open(path, 'w') as f:
            f.write(content)
        os.chmod(path, 0o644)
        logger.info(f"{self.name} config written: {path}")
        return path

    def enable_site(self, site):
        raise NotImplementedError

    def disable_site(self, site):
        raise NotImplementedError

    def _link_site(self, site):
        os.makedirs(self.sites_enabled, exist_ok=True)
        link = self.enabled_path(site)
        if os.path.lexists(link):
            os.remove(link)
        os.symlink(self.conf_path(site), link)

    def _unlink_site(self, site):
        link = self.enabled_path(site)
        if os.path.lexists(link):
            os.remove(link)

    def test_config(self):
        raise NotImplementedError

    def reload(self):
        """Test the configuration and reload the daemon only if the test passes."""
        result = self.test_config()
        if not result.ok:
            logger.error(f"{self.name} config test failed: {result.output.strip()}")
            raise CommandError(result.args, result.returncode, result.output,
                               message=f"{self.name} config test failed")

        reload_result = self.runner.run(['systemctl', 'reload', self.service])
        if not reload_result.ok:
            logger.warning(f"{self.name} reload failed: {reload_result.output.strip()}")
        else:
            logger.info(f"{self.name} reloaded")
        return reload_result.ok

    def _install(self, site, content):
        self.write(site, content)
        self.enable_site(site)
        self.reload()
        return self.conf_path(site)

    def create_vhost(self, vhost):
        """Write, enable and activate the plain HTTP vhost for a domain."""
        return self._install(vhost.domain, self.render(vhost))

    def create_ssl_vhost(self, vhost):
        if not vhost.has_ssl:
            raise ValidationError(f"No certificate paths given for {vhost.domain}")
        return self._install(f"{vhost.domain}-ssl", self.render_ssl(vhost))

    def delete_vhost(self, site, reload=True):
        """Disable and remove a site. A missing site is not an error."""
        try:
            self.disable_site(site)
        except CommandError as e:
            logger.warning(f"Failed to disable {site}: {e}")

        path = self.conf_path(site)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"{self.name} config deleted: {path}")

        if reload:
            self.reload()

    def delete_ssl_vhost(self, domain, reload=True):
        self.delete_vhost(f"{domain}-ssl", reload=reload)

    def create_webmail_vhost(self, domain):
        """Only Apache serves the bundled webmail; other servers skip it."""
        logger.info(f"{self.name} does not host webmail, skipping webmail.{domain}")
        return None

    def delete_webmail_vhost(self, domain):
        return None

    def prepare_ssl(self):
        """Hook for enabling TLS support in the daemon before the first HTTPS vhost."""
        return None


def create_driver(config, runner):
    """Pick the vhost driver for the configured web server."""
    from .apache import ApacheDriver
    from .nginx import NginxDriver

    if config.web_server == 'nginx':
        return NginxDriver(config, runner)
    return ApacheDriver(config, runner)
