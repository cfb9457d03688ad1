"""
Package and module installers that run as streamed tasks.
"""

import re
import time
import logging
import threading

from ..errors import ValidationError

logger = logging.getLogger(__name__)

PHP_PACKAGES = ('fpm', 'cli', 'common', 'mysql', 'gd', 'curl', 'mbstring', 'xml', 'zip')

_VERSION_RE = re.compile(r'^\d+\.\d+$')
_NAME_RE = re.compile(r'^[a-z0-9][a-z0-9.+_-]*$')

APT_INSTALL = ['apt-get', 'install', '-y']
APT_REMOVE = ['apt-get', 'remove', '-y']


def _version(value):
    if not value or not _VERSION_RE.match(str(value)):
        raise ValidationError(f"Invalid PHP version: {value}")
    return str(value)


def _name(value, what):
    value = (value or '').strip().lower()
    if not _NAME_RE.match(value):
        raise ValidationError(f"Invalid {what}: {value}")
    return value


def php_steps(action, version):
    version = _version(version)
    service = f"php{version}-fpm"
    if action == 'install':
        packages = [f"php{version}-{pkg}" for pkg in PHP_PACKAGES]
        return [
            (['apt-get', 'update'], False),
            (APT_INSTALL + packages, True),
            (['systemctl', 'enable', service], False),
            (['systemctl', 'start', service], False),
        ]
    return [
        (['systemctl', 'stop', service], False),
        (['systemctl', 'disable', service], False),
        (APT_REMOVE + [f"php{version}-*"], True),
    ]


def php_extension_steps(action, extension, version):
    version = _version(version)
    package = f"php{version}-{_name(extension, 'extension')}"
    apt = APT_INSTALL if action == 'install' else APT_REMOVE
    return [
        (apt + [package], True),
        (['systemctl', 'restart', f"php{version}-fpm"], False),
    ]


def apache_module_steps(action, module):
    module = _name(module, 'module')
    tool = 'a2enmod' if action in ('enable', 'install') else 'a2dismod'
    return [
        ([tool, module], True),
        (['systemctl', 'reload', 'apache2'], False),
    ]


def software_steps(action, package):
    package = _name(package, 'package')
    if action == 'install':
        return [(['apt-get', 'update'], False), (APT_INSTALL + [package], True)]
    return [(APT_REMOVE + [package], True)]


ACTIONS = {
    'php': ('install', 'uninstall'),
    'php-extension': ('install', 'uninstall'),
    'apache-module': ('enable', 'disable'),
    'software': ('install', 'uninstall'),
}


def build_steps(task_type, action, target, php_version=None):
    """Validate a request and return its (argv, required) steps."""
    if task_type not in ACTIONS:
        raise ValidationError(f"Unknown task type: {task_type}")
    if action not in ACTIONS[task_type]:
        raise ValidationError(f"Unknown action for {task_type}: {action}")
    if task_type == 'php':
        return php_steps(action, target)
    if task_type == 'php-extension':
        return php_extension_steps(action, target, php_version)
    if task_type == 'apache-module':
        return apache_module_steps(action, target)
    return software_steps(action, target)


def task_name(task_type, action, target):
    return f"{task_type} {target} {action}"


class Installer:
    """Starts installer tasks on background threads and returns their ids at once."""

    def __init__(self, tasks, runner, config):
        self.tasks = tasks
        self.runner = runner
        self.config = config

    def start(self, task_type, action, target, php_version=None):
        steps = build_steps(task_type, action, target, php_version or self.config.php_version)
        task_id = f"{task_type}-{action}-{target}-{time.time_ns()}"
        self.tasks.create(task_id, task_type, task_name(task_type, action, target))

        thread = threading.Thread(
            target=self.tasks.run_steps,
            args=(task_id, self.runner, steps),
            daemon=True,
        )
        thread.start()
        return task_id
