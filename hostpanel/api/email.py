from flask import Blueprint, request

from ..auth import admin_required, token_required
from ..errors import NotFoundError
from ..mail import MailQueue, split_email
from ..rbac import RBAC
from .common import active_required, json_body, log_activity, ok, panel

bp = Blueprint('email', __name__)


# ============== Mailboxes ==============

@bp.route('/email/accounts', methods=['GET'])
@token_required
def list_email_accounts():
    return ok(panel().email.list_accounts(request.current_user))


@bp.route('/email/accounts', methods=['POST'])
@token_required
@active_required
def create_email_account():
    data = json_body('email', 'password')
    account = panel().email.create_account(request.current_user, data['email'], data['password'],
                                           quota_mb=data.get('quota_mb') or 1024)
    log_activity('email_create', account['email'])
    return ok(account, 201, 'Email account created')


@bp.route('/email/accounts/<int:account_id>/password', methods=['PUT'])
@token_required
@active_required
def change_email_password(account_id):
    data = json_body('password')
    panel().email.change_password(request.current_user, account_id, data['password'])
    return ok(message='Password changed')


@bp.route('/email/accounts/<int:account_id>', methods=['DELETE'])
@token_required
@active_required
def delete_email_account(account_id):
    panel().email.delete_account(request.current_user, account_id)
    log_activity('email_delete', str(account_id))
    return ok(message='Email account deleted')


# ============== Forwarders ==============

@bp.route('/email/forwarders', methods=['GET'])
@token_required
def list_forwarders():
    return ok(panel().email.list_forwarders(request.current_user))


@bp.route('/email/forwarders', methods=['POST'])
@token_required
@active_required
def create_forwarder():
    data = json_body('source', 'destination')
    forwarder = panel().email.create_forwarder(request.current_user, data['source'], data['destination'])
    return ok(forwarder, 201, 'Forwarder created')


@bp.route('/email/forwarders/<int:forwarder_id>', methods=['DELETE'])
@token_required
@active_required
def delete_forwarder(forwarder_id):
    panel().email.delete_forwarder(request.current_user, forwarder_id)
    return ok(message='Forwarder deleted')


# ============== Autoresponders ==============

@bp.route('/email/autoresponders', methods=['GET'])
@token_required
def list_autoresponders():
    return ok(panel().email.list_autoresponders(request.current_user))


@bp.route('/email/autoresponders', methods=['POST'])
@token_required
@active_required
def set_autoresponder():
    data = json_body('email', 'subject', 'body')
    responder = panel().email.set_autoresponder(
        request.current_user, data['email'], data['subject'], data['body'],
        start_date=data.get('start_date'), end_date=data.get('end_date'))
    return ok(responder, 201, 'Autoresponder saved')


@bp.route('/email/autoresponders/<int:responder_id>', methods=['DELETE'])
@token_required
@active_required
def delete_autoresponder(responder_id):
    panel().email.delete_autoresponder(request.current_user, responder_id)
    return ok(message='Autoresponder deleted')


@bp.route('/email/dkim/<int:domain_id>', methods=['GET'])
@token_required
def get_dkim(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    return ok(panel().email.dkim(domain))


# ============== Outbound Mail ==============

@bp.route('/mail/send', methods=['POST'])
@token_required
@active_required
def send_mail():
    """Send through the local MTA, or queue when the package's hourly/daily cap is reached."""
    data = json_body('from', 'to', 'subject', 'body')
    user = request.current_user
    p = panel()
    _local, sender_domain = split_email(data['from'])
    domain = p.email.owned_domain(user, sender_domain)

    headers = data.get('headers')
    if isinstance(headers, list):
        headers = '\n'.join(headers)
    result = p.mail_queue.send(domain['user_id'], data['from'], data['to'], data['subject'], data['body'],
                               headers=headers)
    if result['status'] == 'queued':
        return ok(result, 202, 'Mail queued')
    return ok(result, message='Mail sent')


# ============== Mail Queue (admin only) ==============

@bp.route('/mail-queue', methods=['GET'])
@token_required
@admin_required
def list_queue():
    items = panel().mail_queue.list_items(status=request.args.get('status'),
                                          user_id=request.args.get('user_id', type=int),
                                          limit=request.args.get('limit', 100, type=int))
    return ok([MailQueue.serialize(item) for item in items])


@bp.route('/mail-queue/stats', methods=['GET'])
@token_required
@admin_required
def queue_stats():
    return ok(panel().mail_queue.stats())


@bp.route('/mail-queue/<int:item_id>/retry', methods=['POST'])
@token_required
@admin_required
def retry_queue_item(item_id):
    if not panel().mail_queue.retry(item_id):
        raise NotFoundError('Queue item not found')
    return ok(message='Queue item rescheduled')


@bp.route('/mail-queue/<int:item_id>', methods=['DELETE'])
@token_required
@admin_required
def delete_queue_item(item_id):
    if not panel().mail_queue.remove(item_id):
        raise NotFoundError('Queue item not found')
    return ok(message='Queue item deleted')
