"""
Per-user PHP-FPM pools.
Each POSIX user gets one pool file per PHP version, listening on its own
socket and confined to the user's home by open_basedir.
"""

import os
import re
import glob
import logging

from ..errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'memory_limit': '256M',
    'max_execution_time': 300,
    'max_input_time': 300,
    'post_max_size': '64M',
    'upload_max_filesize': '64M',
    'max_file_uploads': 20,
    'display_errors': 0,
    'error_reporting': 'E_ALL & ~E_DEPRECATED & ~E_STRICT',
}

DEFAULT_LIMITS = {
    'max_php_memory': '256M',
    'max_php_upload': '64M',
    'max_php_execution_time': 300,
}

DISABLED_FUNCTIONS = 'exec,passthru,shell_exec,system,proc_open,popen'

_ERROR_REPORTING_RE = re.compile(r"[A-Z_&|~^ ()0-9]+")

_UNITS = {'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3}


def parse_size(value):
    """Parse a php.ini size ('512', '64M', '1G') into bytes."""
    text = str(value).strip().upper()
    if not text:
        raise ValidationError("Empty size value")
    multiplier = 1
    if text[-1] in _UNITS:
        multiplier = _UNITS[text[-1]]
        text = text[:-1]
    if not text.isdigit():
        raise ValidationError(f"Invalid size value: {value}")
    return int(text) * multiplier


def normalize_settings(settings):
    """Merge user input over the defaults and coerce types."""
    merged = dict(DEFAULT_SETTINGS)
    for key, value in (settings or {}).items():
        if key in DEFAULT_SETTINGS and value is not None and value != '':
            if isinstance(value, str) and ('\r' in value or '\n' in value):
                raise ValidationError(f"{key} must be a single line")
            merged[key] = value

    for key in ('memory_limit', 'post_max_size', 'upload_max_filesize'):
        merged[key] = str(merged[key]).strip().upper()
        parse_size(merged[key])
    for key in ('max_execution_time', 'max_input_time', 'max_file_uploads'):
        try:
            merged[key] = int(merged[key])
        except (TypeError, ValueError):
            raise ValidationError(f"{key} must be an integer")
        if merged[key] < 0:
            raise ValidationError(f"{key} must not be negative")
    level = merged['error_reporting']
    if isinstance(level, bool):
        raise ValidationError("error_reporting must be a constant expression or an integer")
    if isinstance(level, int):
        merged['error_reporting'] = str(level)
    elif not (isinstance(level, str) and _ERROR_REPORTING_RE.fullmatch(level.strip())):
        raise ValidationError("error_reporting must be a constant expression or an integer")
    else:
        merged['error_reporting'] = level.strip()
    merged['display_errors'] = 1 if merged['display_errors'] in (1, True, '1', 'on', 'On', 'true') else 0
    return merged


def clamp_settings(settings, limits, is_admin=False):
    """
    Cap INI overrides at the owner's package limits.
    Admin callers bypass the caps; everyone else is clamped silently.
    """
    settings = normalize_settings(settings)
    if is_admin:
        return settings

    limits = {**DEFAULT_LIMITS, **{k: v for k, v in (limits or {}).items() if v not in (None, '')}}
    max_memory = str(limits['max_php_memory'])
    max_upload = str(limits['max_php_upload'])
    max_exec = int(limits['max_php_execution_time'])

    if parse_size(settings['memory_limit']) > parse_size(max_memory):
        settings['memory_limit'] = max_memory
    if settings['max_execution_time'] > max_exec:
        settings['max_execution_time'] = max_exec
    if parse_size(settings['upload_max_filesize']) > parse_size(max_upload):
        settings['upload_max_filesize'] = max_upload
    if parse_size(settings['post_max_size']) > parse_size(max_upload):
        settings['post_max_size'] = max_upload
    return settings


class PHPFPMManager:
    """Create, update and delete per-user PHP-FPM pools."""

    def __init__(self, config, runner):
        self.config = config
        self.runner = runner

    def pool_dir(self, php_version):
        return self.config.system_path(f"/etc/php/{php_version}/fpm/pool.d")

    def pool_path(self, username, php_version):
        return os.path.join(self.pool_dir(php_version), f"{username}.conf")

    @staticmethod
    def socket_path(username, php_version):
        return f"/run/php/php{php_version}-fpm-{username}.sock"

    def render_pool(self, username, home_dir, php_version, settings=None) -> str:
        s = normalize_settings(settings)
        display = 'on' if s['display_errors'] else 'off'
        return f"""[{username}]
; Pool for user {username}
user = {username}
group = {username}
listen = {self.socket_path(username, php_version)}
listen.owner = www-data
listen.group = www-data
listen.mode = 0660

pm = dynamic
pm.max_children = 5
pm.start_servers = 2
pm.min_spare_servers = 1
pm.max_spare_servers = 3
pm.max_requests = 500

; Logging
php_admin_value[error_log] = {home_dir}/logs/php-error.log
php_admin_flag[log_errors] = on

; Security
php_admin_value[open_basedir] = {home_dir}:/tmp:/usr/share/php
php_admin_value[disable_functions] = {DISABLED_FUNCTIONS}
php_admin_value[upload_tmp_dir] = {home_dir}/tmp
php_admin_value[session.save_path] = {home_dir}/tmp

; Limits
php_admin_value[memory_limit] = {s['memory_limit']}
php_admin_value[max_execution_time] = {s['max_execution_time']}
php_admin_value[max_input_time] = {s['max_input_time']}
php_admin_value[post_max_size] = {s['post_max_size']}
php_admin_value[upload_max_filesize] = {s['upload_max_filesize']}
php_admin_value[max_file_uploads] = {s['max_file_uploads']}
php_admin_flag[display_errors] = {display}
php_admin_value[error_reporting] = {s['error_reporting']}
"""

    def _write(self, username, home_dir, php_version, settings):
        os.makedirs(self.pool_dir(php_version), exist_ok=True)
        path = self.pool_path(username, php_version)
        with open(path, 'w') as f:
            f.write(self.render_pool(username, home_dir, php_version, settings))
        os.chmod(path, 0o644)
        return path

    def create_pool(self, username, home_dir, php_version=None, settings=None):
        """Write the user's pool with default limits and reload that FPM version."""
        php_version = php_version or self.config.php_version
        path = self._write(username, home_dir, php_version, settings)
        logger.info(f"PHP-FPM pool created: {path}")
        self.reload(php_version)
        return path

    def update_pool(self, username, home_dir, php_version, settings):
        """Rewrite the pool with new INI overrides. Only the matching version is reloaded."""
        path = self._write(username, home_dir, php_version, settings)
        logger.info(f"PHP-FPM pool updated: {path}")
        self.reload(php_version)
        return path

    def delete_pool(self, username, php_version=None, reload=True):
        """Remove the pool file for one version, or for every version when none is given."""
        versions = [php_version] if php_version else self.list_installed_versions() or [self.config.php_version]
        removed = []
        for version in versions:
            path = self.pool_path(username, version)
            if os.path.exists(path):
                os.remove(path)
                removed.append(version)
                logger.info(f"PHP-FPM pool deleted: {path}")
        if reload:
            for version in removed:
                self.reload(version)
        return removed

    def pool_versions(self, username):
        """PHP versions that currently have a pool for this user."""
        return [v for v in self.list_installed_versions() if os.path.exists(self.pool_path(username, v))]

    def list_installed_versions(self):
        pattern = self.config.system_path('/etc/php/*/fpm')
        versions = [os.path.basename(os.path.dirname(p)) for p in glob.glob(pattern)]
        return sorted(versions, key=lambda v: [int(x) if x.isdigit() else x for x in v.split('.')])

    def reload(self, php_version=None):
        """Reload php<ver>-fpm, starting it if inactive and restarting as a last resort."""
        service = f"php{php_version or self.config.php_version}-fpm"
        active = self.runner.run(['systemctl', 'is-active', '--quiet', service]).ok
        if not active:
            logger.warning(f"{service} was not active, starting it")
        result = self.runner.run(['systemctl', 'reload' if active else 'start', service])
        if result.ok:
            logger.info(f"{service} reloaded")
            return True

        logger.warning(f"{service} reload failed, trying restart: {result.output.strip()}")
        return self.restart(php_version)

    def restart(self, php_version=None):
        """Restart php<ver>-fpm so pool workers of removed pools exit."""
        service = f"php{php_version or self.config.php_version}-fpm"
        result = self.runner.run(['systemctl', 'restart', service])
        if not result.ok:
            logger.warning(f"{service} restart failed: {result.output.strip()}")
        return result.ok
