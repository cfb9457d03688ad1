from flask import Blueprint

from ..auth import admin_required, token_required
from ..errors import NotFoundError
from .common import json_body, log_activity, ok, panel

bp = Blueprint('tasks', __name__)


def _start(task_type, action, target, php_version=None):
    task_id = panel().installer.start(task_type, action, target, php_version=php_version)
    log_activity('task_start', task_id)
    return ok({'task_id': task_id}, 202, 'Task started')


# ============== PHP Versions ==============

@bp.route('/php/versions', methods=['GET'])
@token_required
@admin_required
def list_php_versions():
    p = panel()
    return ok({
        'installed': p.fpm.list_installed_versions(),
        'default': p.config.php_version,
    })


@bp.route('/php/versions/<version>/install', methods=['POST'])
@token_required
@admin_required
def install_php_version(version):
    return _start('php', 'install', version)


@bp.route('/php/versions/<version>/uninstall', methods=['POST'])
@token_required
@admin_required
def uninstall_php_version(version):
    return _start('php', 'uninstall', version)


# ============== Streamed Tasks ==============

@bp.route('/install/start', methods=['POST'])
@token_required
@admin_required
def start_install():
    data = json_body('type', 'action', 'target')
    return _start(data['type'], data['action'], data['target'], data.get('php_version'))


@bp.route('/tasks', methods=['GET'])
@token_required
@admin_required
def list_tasks():
    return ok(panel().tasks.list())


@bp.route('/tasks/<task_id>', methods=['GET'])
@token_required
@admin_required
def get_task(task_id):
    task = panel().tasks.get(task_id)
    if task is None:
        raise NotFoundError('Task not found')
    return ok(task)
