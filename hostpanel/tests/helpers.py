"""Shared fixtures: a simulate-mode panel rooted in a temporary directory."""

import os
import shutil
import tempfile
import unittest

from ..config import Config
from ..errors import CommandError
from ..runner import CommandResult, CommandRunner
from ..schema import ensure_schema
from ..services import Panel

ADMIN = {'user_id': 1, 'username': 'admin', 'role': 'admin'}


def make_config(tmp, **overrides):
    options = {
        'data_dir': tmp,
        'database_path': os.path.join(tmp, 'panel.db'),
        'simulate': True,
        'simulate_base_path': os.path.join(tmp, 'root'),
        'jwt_secret': 'test-secret',
        'web_server': 'apache',
        'server_ip': '203.0.113.10',
        'nameservers': ['ns1.example.net', 'ns2.example.net'],
        'php_version': '8.2',
    }
    options.update(overrides)
    return Config(**options)


class ScriptedRunner(CommandRunner):
    """Simulating runner that fails the programs named in `failing`."""

    def __init__(self, failing=None):
        super().__init__(simulate=True)
        self.failing = dict(failing or {})
        self.calls = []

    def run(self, args, env=None, stdin=None, timeout=None, cwd=None):
        args = [str(a) for a in args]
        self.calls.append(args)
        if args[0] in self.failing:
            return CommandResult(args, 1, self.failing[args[0]])
        return CommandResult(args, 0, '')


class PanelTestCase(unittest.TestCase):
    web_server = 'apache'

    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix='hostpanel-test-')
        self.config = make_config(self.tmp, web_server=self.web_server)
        self.panel = Panel(self.config, runner=self.make_runner())
        ensure_schema(self.panel.db)
        self.db = self.panel.db

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def make_runner(self):
        return CommandRunner(simulate=True)

    def path(self, system_path):
        return self.config.system_path(system_path)

    def create_account(self, username='alice', domain='alice.example', package=None):
        return self.panel.accounts.create_account(
            username, f"{username}@mail.test", 'secret123', domain, package=package)

    def user_of(self, account):
        return {'user_id': account['id'], 'username': account['username'], 'role': 'user'}

    def domain_of(self, account):
        return self.db.fetch_one("SELECT * FROM domains WHERE id=?", (account['domain_id'],))


def raise_command_error(*_args, **_kwargs):
    raise CommandError(['false'], 1, 'boom')
