from flask import Blueprint, request

from ..auth import admin_required, token_required
from ..errors import ValidationError
from .common import json_body, log_activity, ok, panel

bp = Blueprint('accounts', __name__)


# ============== Hosting Accounts (admin only) ==============

@bp.route('/accounts', methods=['GET'])
@token_required
@admin_required
def list_accounts():
    return ok(panel().accounts.list_accounts(request.current_user))


@bp.route('/accounts', methods=['POST'])
@token_required
@admin_required
def create_account():
    """Provision user, vhost, PHP pool, zone and mail domain in one go."""
    data = json_body('username', 'email', 'password', 'domain')
    account = panel().accounts.create_account(
        data['username'], data['email'], data['password'], data['domain'],
        package=data.get('package_id') or data.get('package'),
        parent_id=data.get('parent_id'),
    )
    log_activity('account_create', f"{account['username']} ({account['domain']})")
    return ok(account, 201, 'Account created')


@bp.route('/accounts/<int:user_id>', methods=['GET'])
@token_required
@admin_required
def get_account(user_id):
    return ok(panel().accounts.get_account(user_id))


@bp.route('/accounts/<int:user_id>', methods=['DELETE'])
@token_required
@admin_required
def delete_account(user_id):
    if user_id == request.current_user['user_id']:
        raise ValidationError('You cannot delete your own account')
    account = panel().accounts.get_account(user_id)
    panel().accounts.delete_account(user_id)
    log_activity('account_delete', account['username'])
    return ok(message='Account deleted')


@bp.route('/accounts/<int:user_id>/suspend', methods=['POST'])
@token_required
@admin_required
def suspend_account(user_id):
    panel().accounts.suspend_account(user_id)
    log_activity('account_suspend', str(user_id))
    return ok(message='Account suspended')


@bp.route('/accounts/<int:user_id>/unsuspend', methods=['POST'])
@token_required
@admin_required
def unsuspend_account(user_id):
    panel().accounts.unsuspend_account(user_id)
    log_activity('account_unsuspend', str(user_id))
    return ok(message='Account unsuspended')
