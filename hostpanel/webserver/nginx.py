import logging

from .driver import VhostDriver

logger = logging.getLogger(__name__)

SECURITY_HEADERS = [
    'add_header X-Frame-Options "SAMEORIGIN" always;',
    'add_header X-Content-Type-Options "nosniff" always;',
    'add_header X-XSS-Protection "1; mode=block" always;',
]
HSTS_HEADER = 'add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;'


class NginxDriver(VhostDriver):
    """Nginx with sites-enabled symlinks. No .htaccess support."""

    name = 'Nginx'
    service = 'nginx'
    supports_htaccess = False
    config_root = '/etc/nginx'
    system_log_dir = '/var/log/nginx'

    def _locations(self, vhost):
        if vhost.kind == 'redirect':
            return [f"return 301 {vhost.redirect_url.rstrip('/')}$request_uri;"]

        if vhost.kind == 'proxy':
            return [
                'location / {',
                f'    proxy_pass http://127.0.0.1:{vhost.proxy_port};',
                '    proxy_http_version 1.1;',
                '    proxy_set_header Host $host;',
                '    proxy_set_header X-Real-IP $remote_addr;',
                '    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;',
                '    proxy_set_header X-Forwarded-Proto $scheme;',
                '    proxy_set_header Upgrade $http_upgrade;',
                '    proxy_set_header Connection "upgrade";',
                '}',
            ]

        lines = ['location / {']
        if vhost.kind == 'php':
            lines.append('    try_files $uri $uri/ /index.php?$query_string;')
        else:
            lines.append('    try_files $uri $uri/ =404;')
        lines.append('}')

        if vhost.kind in ('php', 'webmail'):
            socket = vhost.fpm_socket if vhost.kind == 'php' else f"/run/php/php{vhost.php_version}-fpm.sock"
            lines += [
                '',
                r'location ~ \.php$ {',
                f'    fastcgi_pass unix:{socket};',
                '    fastcgi_index index.php;',
                '    fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;',
                '    include fastcgi_params;',
                '}',
            ]
        lines += [
            '',
            r'location ~ /\.ht {',
            '    deny all;',
            '}',
        ]
        return lines

    def _render(self, vhost, ssl):
        error_log, access_log = self.log_paths(vhost, ssl=ssl)
        names = ' '.join([vhost.domain] + vhost.aliases)
        lines = ['listen 443 ssl http2;' if ssl else 'listen 80;', f'server_name {names};']
        if vhost.document_root and vhost.kind not in ('redirect', 'proxy'):
            lines += [
                f'root {vhost.document_root};',
                'index index.php index.html index.htm;',
            ]
        if ssl:
            lines += [
                '',
                f'ssl_certificate {vhost.cert_file};',
                f'ssl_certificate_key {vhost.key_file};',
                'ssl_protocols TLSv1.2 TLSv1.3;',
                'ssl_prefer_server_ciphers off;',
            ]
        lines += [
            '',
            f'access_log {access_log};',
            f'error_log {error_log};',
            '',
        ]
        lines += self._locations(vhost)
        if vhost.kind in ('php', 'static', 'proxy'):
            lines.append('')
            lines += SECURITY_HEADERS
            if ssl:
                lines.append(HSTS_HEADER)

        header = [f"# Virtual Host for {vhost.domain}"]
        if vhost.username:
            header.append(f"# User: {vhost.username}")
        header.append("# Managed by hostpanel; manual edits are overwritten")

        body = '\n'.join(f"    {line}" if line else '' for line in lines)
        return '\n'.join(header) + f"\nserver {{\n{body}\n}}\n"

    def render(self, vhost):
        return self._render(vhost, ssl=False)

    def render_ssl(self, vhost):
        return self._render(vhost, ssl=True)

    def enable_site(self, site):
        self._link_site(site)
        logger.info(f"Enabled nginx site {site}")

    def disable_site(self, site):
        self._unlink_site(site)

    def test_config(self):
        return self.runner.run(['nginx', '-t'])
