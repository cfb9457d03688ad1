from flask import Blueprint, current_app, request

from .. import __version__
from ..auth import authenticate_user, create_jwt_token, token_required
from ..errors import AuthenticationError, AuthorizationError, NotFoundError
from .common import json_body, log_activity, ok, panel

bp = Blueprint('auth', __name__)


# ============== Health Check ==============

@bp.route('/health', methods=['GET'])
def health():
    return ok({
        'status': 'ok',
        'service': 'hostpanel',
        'version': __version__,
        'simulate': panel().config.simulate,
    })


# ============== Auth Endpoints ==============

@bp.route('/auth/login', methods=['POST'])
def login():
    """Login endpoint: return JWT token."""
    data = json_body('username', 'password')
    p = panel()

    user = authenticate_user(p.db, data['username'], data['password'])
    if not user:
        raise AuthenticationError('Invalid credentials')
    if not user['active']:
        raise AuthorizationError('Account is suspended')

    token = create_jwt_token(user['id'], user['username'], user['role'],
                             current_app.config['JWT_SECRET'], p.config.jwt_expiry_hours)
    request.current_user = {'user_id': user['id'], 'username': user['username'], 'role': user['role']}
    log_activity('login')
    return ok({
        'token': token,
        'user': {
            'id': user['id'],
            'username': user['username'],
            'email': user['email'],
            'role': user['role'],
        },
    })


@bp.route('/auth/me', methods=['GET'])
@token_required
def me():
    user = panel().db.fetch_one(
        "SELECT id, username, email, role, active, parent_id, created_at FROM users WHERE id=?",
        (request.current_user['user_id'],))
    if not user:
        raise NotFoundError('User not found')
    user['active'] = bool(user['active'])
    return ok(user)
