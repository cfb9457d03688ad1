from functools import wraps

from flask import current_app, jsonify, request

from ..errors import ValidationError


def panel():
    return current_app.extensions['hostpanel']


def ok(data=None, status=200, message=None):
    body = {'success': True}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    return jsonify(body), status


def json_body(*required):
    data = request.get_json(silent=True) or {}
    missing = [key for key in required if data.get(key) in (None, '')]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required")
    return data


def active_required(f):
    """Suspended accounts may read but not change anything. Apply after token_required."""
    @wraps(f)
    def decorated(*args, **kwargs):
        panel().accounts.ensure_active(request.current_user)
        return f(*args, **kwargs)

    return decorated


def log_activity(action, details=None):
    user = getattr(request, 'current_user', None) or {}
    panel().db.insert('activity_logs', {
        'user_id': user.get('user_id'),
        'action': action,
        'details': details,
        'ip_address': request.remote_addr,
    })
