import logging
from datetime import datetime

from .pool_manager import DEFAULT_SETTINGS, clamp_settings

logger = logging.getLogger(__name__)


class PHPSettingsService:
    """Per-domain INI overrides stored in php_settings and applied to the owner's pool."""

    def __init__(self, config, db, fpm):
        self.config = config
        self.db = db
        self.fpm = fpm

    def get_settings(self, domain):
        row = self.db.fetch_one("SELECT * FROM php_settings WHERE domain_id=?", (domain['id'],))
        settings = dict(DEFAULT_SETTINGS)
        if row:
            settings.update({k: row[k] for k in DEFAULT_SETTINGS if row.get(k) is not None})
        settings['display_errors'] = bool(settings['display_errors'])
        settings['php_version'] = domain.get('php_version') or self.config.php_version
        return settings

    def package_limits(self, user_id):
        row = self.db.fetch_one("""
            SELECT p.max_php_memory, p.max_php_upload, p.max_php_execution_time
            FROM user_packages up JOIN packages p ON p.id = up.package_id
            WHERE up.user_id=?
        """, (user_id,))
        return row or {}

    def update_settings(self, user, domain, changes):
        """Store new overrides, clamped to the domain owner's package unless the caller is admin."""
        current = self.get_settings(domain)
        current.pop('php_version')
        current.update({k: v for k, v in (changes or {}).items() if k in DEFAULT_SETTINGS})

        settings = clamp_settings(current, self.package_limits(domain['user_id']),
                                  is_admin=user.get('role') == 'admin')

        if self.db.fetch_value("SELECT COUNT(*) FROM php_settings WHERE domain_id=?", (domain['id'],)):
            self.db.update('php_settings', {**settings, 'updated_at': datetime.now().strftime('%Y-%m-%d %H:%M:%S')}, 'domain_id=?', (domain['id'],))
        else:
            self.db.insert('php_settings', {'domain_id': domain['id'], **settings})

        owner = self.db.fetch_one("SELECT username FROM users WHERE id=?", (domain['user_id'],))
        php_version = domain.get('php_version') or self.config.php_version
        if owner:
            self.fpm.update_pool(owner['username'], self.config.home_dir(owner['username']), php_version, settings)
        logger.info(f"PHP settings updated for {domain['name']}")
        return self.get_settings(domain)
