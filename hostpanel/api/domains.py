from flask import Blueprint, request

from ..auth import token_required
from ..rbac import RBAC
from .common import active_required, json_body, log_activity, ok, panel

bp = Blueprint('domains', __name__)


# ============== Domains ==============

@bp.route('/domains', methods=['GET'])
@token_required
def list_domains():
    user = request.current_user
    db = panel().db
    if RBAC.is_admin(user):
        domains = db.fetch_all("SELECT * FROM domains ORDER BY name")
    else:
        domains = db.fetch_all("SELECT * FROM domains WHERE user_id=? ORDER BY name", (user['user_id'],))
    return ok(domains)


@bp.route('/domains/<int:domain_id>', methods=['GET'])
@token_required
def get_domain(domain_id):
    return ok(RBAC.get_domain_for(panel().db, request.current_user, domain_id))


# ============== Subdomains ==============

@bp.route('/domains/<int:domain_id>/subdomains', methods=['GET'])
@token_required
def list_subdomains(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    return ok(panel().subdomains.list_subdomains(domain))


@bp.route('/domains/<int:domain_id>/subdomains', methods=['POST'])
@token_required
@active_required
def create_subdomain(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    data = json_body('name')
    subdomain = panel().subdomains.create_subdomain(
        request.current_user, domain, data['name'],
        document_root=data.get('document_root'),
        redirect_url=data.get('redirect_url'),
        redirect_type=data.get('redirect_type'),
        proxy_port=data.get('proxy_port'),
    )
    log_activity('subdomain_create', subdomain['full_name'])
    return ok(subdomain, 201, 'Subdomain created')


@bp.route('/subdomains/<int:subdomain_id>', methods=['DELETE'])
@token_required
@active_required
def delete_subdomain(subdomain_id):
    panel().subdomains.delete_subdomain(request.current_user, subdomain_id)
    log_activity('subdomain_delete', str(subdomain_id))
    return ok(message='Subdomain deleted')


# ============== DNS Records ==============

@bp.route('/dns/<int:domain_id>/records', methods=['GET'])
@token_required
def list_dns_records(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    return ok(panel().dns_records.list_records(domain['id']))


@bp.route('/dns/<int:domain_id>/records', methods=['POST'])
@token_required
@active_required
def add_dns_record(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    data = json_body('name', 'type', 'content')
    record = panel().dns_records.add_record(domain, data)
    log_activity('dns_record_add', f"{domain['name']} {record['type']} {record['name']}")
    return ok(record, 201, 'Record added')


@bp.route('/dns/records/<int:record_id>', methods=['DELETE'])
@token_required
@active_required
def delete_dns_record(record_id):
    panel().dns_records.delete_record(request.current_user, record_id)
    log_activity('dns_record_delete', str(record_id))
    return ok(message='Record deleted')


# ============== PHP Settings ==============

@bp.route('/php/domains/<int:domain_id>/settings', methods=['GET'])
@token_required
def get_php_settings(domain_id):
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    p = panel()
    return ok({
        'settings': p.php_settings.get_settings(domain),
        'limits': p.php_settings.package_limits(domain['user_id']),
    })


@bp.route('/php/domains/<int:domain_id>/settings', methods=['PUT'])
@token_required
@active_required
def update_php_settings(domain_id):
    """Non-admin values above the package caps are clamped, not rejected."""
    domain = RBAC.get_domain_for(panel().db, request.current_user, domain_id)
    data = json_body()
    changes = data.get('settings', data)
    settings = panel().php_settings.update_settings(request.current_user, domain, changes)
    log_activity('php_settings_update', domain['name'])
    return ok(settings, message='PHP settings updated')
