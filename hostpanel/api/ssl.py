from flask import Blueprint, request

from ..auth import token_required
from ..rbac import RBAC
from .common import active_required, json_body, log_activity, ok, panel

bp = Blueprint('ssl', __name__)


def _target():
    data = json_body('domain_id')
    p = panel()
    domain = RBAC.get_domain_for(p.db, request.current_user, data['domain_id'])
    owner = p.db.fetch_one("SELECT username, email FROM users WHERE id=?", (domain['user_id'],))
    return domain, owner, data.get('fqdn')


# ============== SSL Certificates ==============

@bp.route('/ssl', methods=['GET'])
@token_required
def list_certificates():
    return ok(panel().ssl.list_certificates(request.current_user))


@bp.route('/ssl/issue', methods=['POST'])
@token_required
@active_required
def issue_certificate():
    domain, owner, fqdn = _target()
    status = panel().ssl.secure(domain, owner['username'], owner['email'], fqdn=fqdn)
    log_activity('ssl_issue', status['domain'])
    return ok(status, 201, 'Certificate issued')


@bp.route('/ssl/renew', methods=['POST'])
@token_required
@active_required
def renew_certificate():
    domain, _owner, fqdn = _target()
    return ok(panel().ssl.refresh(domain, fqdn), message='Certificate renewed')


@bp.route('/ssl/revoke', methods=['POST'])
@token_required
@active_required
def revoke_certificate():
    domain, _owner, fqdn = _target()
    panel().ssl.unsecure(domain, fqdn)
    log_activity('ssl_revoke', fqdn or domain['name'])
    return ok(message='Certificate revoked')
