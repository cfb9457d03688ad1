import logging

from .driver import VhostDriver, VhostConfig, ROUNDCUBE_ROOT

logger = logging.getLogger(__name__)

SECURITY_HEADERS = [
    'Header always set X-Frame-Options "SAMEORIGIN"',
    'Header always set X-Content-Type-Options "nosniff"',
    'Header always set X-XSS-Protection "1; mode=block"',
]
HSTS_HEADER = 'Header always set Strict-Transport-Security "max-age=31536000; includeSubDomains"'


class ApacheDriver(VhostDriver):
    """Apache 2.4 with a2ensite/a2dissite and per-user PHP-FPM sockets."""

    name = 'Apache'
    service = 'apache2'
    supports_htaccess = True
    config_root = '/etc/apache2'
    system_log_dir = '/var/log/apache2'

    def _body(self, vhost):
        lines = []
        if vhost.kind == 'redirect':
            lines.append(f"RedirectPermanent / {vhost.redirect_url}")
            return lines

        if vhost.kind == 'proxy':
            port = vhost.proxy_port
            lines += [
                'ProxyPreserveHost On',
                f'ProxyPass / http://127.0.0.1:{port}/',
                f'ProxyPassReverse / http://127.0.0.1:{port}/',
                '',
                'RewriteEngine On',
                'RewriteCond %{HTTP:Upgrade} websocket [NC]',
                'RewriteCond %{HTTP:Connection} upgrade [NC]',
                f'RewriteRule ^/?(.*) "ws://127.0.0.1:{port}/$1" [P,L]',
            ]
            return lines

        if vhost.kind == 'webmail':
            lines += [
                f'<Directory {vhost.document_root}>',
                '    Options +FollowSymLinks',
                '    AllowOverride All',
                '    Require all granted',
                '</Directory>',
                '',
                f'<Directory {vhost.document_root}/config>',
                '    Require all denied',
                '</Directory>',
            ]
            return lines

        lines += [
            f'<Directory {vhost.document_root}>',
            '    Options -Indexes +FollowSymLinks',
            '    AllowOverride All',
            '    Require all granted',
            '</Directory>',
        ]
        if vhost.kind == 'php':
            lines += [
                '',
                r'<FilesMatch \.php$>',
                f'    SetHandler "proxy:unix:{vhost.fpm_socket}|fcgi://localhost"',
                '</FilesMatch>',
            ]
        return lines

    def _render(self, vhost, ssl):
        error_log, access_log = self.log_paths(vhost, ssl=ssl)
        lines = [
            f"ServerName {vhost.domain}",
        ]
        if vhost.aliases:
            lines.append(f"ServerAlias {' '.join(vhost.aliases)}")
        if vhost.document_root and vhost.kind != 'redirect':
            lines.append(f"DocumentRoot {vhost.document_root}")
        if ssl:
            lines += [
                '',
                'SSLEngine on',
                f'SSLCertificateFile {vhost.cert_file}',
                f'SSLCertificateKeyFile {vhost.key_file}',
            ]
        lines += [
            '',
            f'ErrorLog {error_log}',
            f'CustomLog {access_log} combined',
            '',
        ]
        lines += self._body(vhost)
        if vhost.kind in ('php', 'static', 'proxy'):
            lines.append('')
            lines += SECURITY_HEADERS
            if ssl:
                lines.append(HSTS_HEADER)

        port = 443 if ssl else 80
        header = [f"# Virtual Host for {vhost.domain}"]
        if vhost.username:
            header.append(f"# User: {vhost.username}")
        header.append("# Managed by hostpanel; manual edits are overwritten")

        body = '\n'.join(f"    {line}" if line else '' for line in lines)
        return '\n'.join(header) + f"\n<VirtualHost *:{port}>\n{body}\n</VirtualHost>\n"

    def render(self, vhost):
        return self._render(vhost, ssl=False)

    def render_ssl(self, vhost):
        return self._render(vhost, ssl=True)

    def enable_site(self, site):
        if self.config.simulate:
            self._link_site(site)
            logger.info(f"[simulate] a2ensite {site}.conf")
            return
        self.runner.check(['a2ensite', f'{site}.conf'])

    def disable_site(self, site):
        if self.config.simulate:
            self._unlink_site(site)
            logger.info(f"[simulate] a2dissite {site}.conf")
            return
        result = self.runner.run(['a2dissite', f'{site}.conf'])
        if not result.ok:
            logger.warning(f"a2dissite {site}: {result.output.strip()}")

    def test_config(self):
        return self.runner.run(['apachectl', 'configtest'])

    def prepare_ssl(self):
        result = self.runner.run(['a2enmod', 'ssl'])
        if not result.ok:
            logger.warning(f"a2enmod ssl failed: {result.output.strip()}")

    def webmail_config(self, domain, cert_file=None, key_file=None):
        return VhostConfig(
            f"webmail.{domain}",
            document_root=ROUNDCUBE_ROOT,
            aliases=[],
            kind='webmail',
            cert_file=cert_file,
            key_file=key_file,
        )

    def create_webmail_vhost(self, domain):
        """Serve Roundcube on webmail.<domain>."""
        vhost = self.webmail_config(domain)
        return self._install(vhost.domain, self.render(vhost))

    def delete_webmail_vhost(self, domain):
        self.delete_vhost(f"webmail.{domain}")
