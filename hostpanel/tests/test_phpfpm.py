import os
import unittest

from ..errors import ValidationError
from ..phpfpm import clamp_settings, normalize_settings, parse_size
from .helpers import ADMIN, PanelTestCase


class TestSizes(unittest.TestCase):
    """php.ini size parsing and clamping."""

    def test_parse_size(self):
        """Suffixes are binary multiples."""
        self.assertEqual(parse_size('512'), 512)
        self.assertEqual(parse_size('64K'), 64 * 1024)
        self.assertEqual(parse_size('64m'), 64 * 1024 ** 2)
        self.assertEqual(parse_size('1G'), 1024 ** 3)

    def test_parse_size_invalid(self):
        """Garbage sizes are rejected."""
        for value in ('', 'lots', '12X', '-5M'):
            with self.assertRaises(ValidationError):
                parse_size(value)

    def test_normalize_settings(self):
        """Unknown keys are dropped and types coerced."""
        settings = normalize_settings({'memory_limit': '512m', 'max_execution_time': '60',
                                       'display_errors': 'on', 'evil': 'x'})
        self.assertEqual(settings['memory_limit'], '512M')
        self.assertEqual(settings['max_execution_time'], 60)
        self.assertEqual(settings['display_errors'], 1)
        self.assertNotIn('evil', settings)

    def test_error_reporting_values(self):
        """error_reporting takes a constant expression or an integer, on one line."""
        self.assertEqual(normalize_settings({'error_reporting': 'E_ALL & ~E_NOTICE'})['error_reporting'],
                         'E_ALL & ~E_NOTICE')
        self.assertEqual(normalize_settings({'error_reporting': 32767})['error_reporting'], '32767')
        for bad in ('E_ALL\nuser = root', 'E_ALL\r', 'E_ALL; x', 'e_all', '/etc/passwd', True):
            with self.assertRaises(ValidationError, msg=repr(bad)):
                normalize_settings({'error_reporting': bad})

    def test_multiline_values_rejected(self):
        """No setting may carry a line break into the pool file."""
        with self.assertRaises(ValidationError):
            normalize_settings({'memory_limit': '64M\n[evil]'})

    def test_clamp_to_package(self):
        """Values above the package cap are lowered silently."""
        limits = {'max_php_memory': '256M', 'max_php_upload': '64M', 'max_php_execution_time': 300}
        settings = clamp_settings({'memory_limit': '1G', 'upload_max_filesize': '128M',
                                   'post_max_size': '128M', 'max_execution_time': 900}, limits)
        self.assertEqual(settings['memory_limit'], '256M')
        self.assertEqual(settings['upload_max_filesize'], '64M')
        self.assertEqual(settings['post_max_size'], '64M')
        self.assertEqual(settings['max_execution_time'], 300)

    def test_clamp_keeps_lower_values(self):
        """Values under the cap are untouched."""
        settings = clamp_settings({'memory_limit': '128M'}, {'max_php_memory': '256M'})
        self.assertEqual(settings['memory_limit'], '128M')

    def test_admin_bypasses_clamp(self):
        """Admin callers are not capped."""
        settings = clamp_settings({'memory_limit': '1G'}, {'max_php_memory': '256M'}, is_admin=True)
        self.assertEqual(settings['memory_limit'], '1G')


class TestPHPSettingsService(PanelTestCase):
    """Per-domain overrides applied to the owner's pool."""

    def setUp(self):
        super().setUp()
        self.account = self.create_account('alice', 'alice.example')
        self.domain = self.domain_of(self.account)
        self.pool = self.path('/etc/php/8.2/fpm/pool.d/alice.conf')

    def read_pool(self):
        with open(self.pool) as f:
            return f.read()

    def test_pool_created_with_account(self):
        """Account creation writes a pool confined to the home."""
        content = self.read_pool()
        home = self.config.home_dir('alice')
        self.assertIn('[alice]', content)
        self.assertIn('listen = /run/php/php8.2-fpm-alice.sock', content)
        self.assertIn(f'php_admin_value[open_basedir] = {home}:/tmp:/usr/share/php', content)
        self.assertIn('php_admin_value[memory_limit] = 256M', content)

    def test_user_request_is_clamped(self):
        """A tenant asking for 1G on Starter gets 256M in the row and the pool."""
        result = self.panel.php_settings.update_settings(self.user_of(self.account), self.domain,
                                                         {'memory_limit': '1G'})
        self.assertEqual(result['memory_limit'], '256M')
        row = self.db.fetch_one("SELECT memory_limit FROM php_settings WHERE domain_id=?", (self.domain['id'],))
        self.assertEqual(row['memory_limit'], '256M')
        self.assertIn('php_admin_value[memory_limit] = 256M', self.read_pool())

    def test_admin_request_is_applied(self):
        """An admin may exceed the package."""
        result = self.panel.php_settings.update_settings(ADMIN, self.domain, {'memory_limit': '1G'})
        self.assertEqual(result['memory_limit'], '1G')
        self.assertIn('php_admin_value[memory_limit] = 1G', self.read_pool())

    def test_injected_pool_directives_rejected(self):
        """A tenant cannot smuggle pool directives through error_reporting."""
        before = self.read_pool()
        with self.assertRaises(ValidationError):
            self.panel.php_settings.update_settings(
                self.user_of(self.account), self.domain,
                {'error_reporting': 'E_ALL\nphp_admin_value[open_basedir] = /\n[evil]\nuser = root'})
        self.assertEqual(self.read_pool(), before)
        self.assertNotIn('[evil]', self.read_pool())
        self.assertEqual(self.db.fetch_value("SELECT error_reporting FROM php_settings WHERE domain_id=?",
                                             (self.domain['id'],)), 'E_ALL & ~E_DEPRECATED & ~E_STRICT')

    def test_unrelated_settings_survive(self):
        """A partial update keeps the other stored values."""
        user = self.user_of(self.account)
        self.panel.php_settings.update_settings(user, self.domain, {'max_execution_time': 60})
        result = self.panel.php_settings.update_settings(user, self.domain, {'memory_limit': '128M'})
        self.assertEqual(result['max_execution_time'], 60)
        self.assertEqual(result['memory_limit'], '128M')
        self.assertEqual(result['php_version'], '8.2')

    def test_delete_pool(self):
        """Deleting a pool for one version removes only its file."""
        removed = self.panel.fpm.delete_pool('alice', '8.2')
        self.assertEqual(removed, ['8.2'])
        self.assertFalse(os.path.exists(self.pool))
        self.assertEqual(self.panel.fpm.delete_pool('alice', '8.2'), [])

    def test_installed_versions(self):
        """Versions are discovered from the fpm directories, sorted numerically."""
        for version in ('8.10', '7.4'):
            os.makedirs(self.path(f'/etc/php/{version}/fpm'), exist_ok=True)
        self.assertEqual(self.panel.fpm.list_installed_versions(), ['7.4', '8.2', '8.10'])
        self.assertEqual(self.panel.fpm.pool_versions('alice'), ['8.2'])


if __name__ == '__main__':
    unittest.main()
