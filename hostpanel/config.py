"""
Runtime configuration for the panel.
Everything is read from environment variables once at startup.
"""

import os
import socket


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Settings shared by the API server and the mail worker."""

    def __init__(self, **overrides):
        data_dir = os.path.expanduser(os.environ.get('HOSTPANEL_DATA_DIR', '~/.hostpanel'))

        self.data_dir = data_dir
        self.database_path = os.environ.get('HOSTPANEL_DB_PATH', os.path.join(data_dir, 'panel.db'))
        self.jwt_secret = os.environ.get('JWT_SECRET', 'hostpanel-dev-secret-change-in-production')
        self.jwt_expiry_hours = int(os.environ.get('JWT_EXPIRY_HOURS', '24'))
        self.port = int(os.environ.get('PORT', '8443'))
        self.php_version = os.environ.get('PHP_VERSION', '8.2')
        self.web_server = os.environ.get('WEB_SERVER', 'apache').lower()
        self.server_ip = os.environ.get('SERVER_IP', '127.0.0.1')
        self.environment = os.environ.get('ENVIRONMENT', 'production')
        self.simulate = _env_bool('SIMULATE', self.environment == 'development')
        self.simulate_base_path = os.environ.get('SIMULATE_BASE_PATH', os.path.join(data_dir, 'simulate'))
        self.admin_email = os.environ.get('ADMIN_EMAIL', 'admin@localhost')

        hostname = socket.getfqdn() or 'localhost'
        nameservers = os.environ.get('NAMESERVERS', f'ns1.{hostname},ns2.{hostname}')
        self.nameservers = [ns.strip().rstrip('.') for ns in nameservers.split(',') if ns.strip()]

        self.mysql_host = os.environ.get('MYSQL_HOST', 'localhost')
        self.mysql_root_user = os.environ.get('MYSQL_ROOT_USER', 'root')
        self.mysql_root_password = os.environ.get('MYSQL_ROOT_PASSWORD', '')

        self.mail_queue_interval = int(os.environ.get('MAIL_QUEUE_INTERVAL', '60'))
        self.mail_queue_batch = int(os.environ.get('MAIL_QUEUE_BATCH', '50'))
        self.sendmail_path = os.environ.get('SENDMAIL_PATH', '/usr/sbin/sendmail')

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown config option: {key}")
            setattr(self, key, value)

    def system_path(self, path):
        """Map an absolute system path into the simulate tree when simulating."""
        if not self.simulate:
            return path
        return os.path.join(self.simulate_base_path, path.lstrip('/'))

    @property
    def home_base_dir(self):
        return self.system_path('/home')

    def home_dir(self, username):
        return os.path.join(self.home_base_dir, username)


def load_config(**overrides):
    """Build the process configuration from the environment."""
    return Config(**overrides)
