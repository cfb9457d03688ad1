import jwt
import bcrypt
from functools import wraps
from datetime import datetime, timedelta, timezone

from flask import request, jsonify, current_app


def hash_password(password):
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password, hashed):
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


def create_jwt_token(user_id, username, role, secret, expiry_hours=24):
    """Create a JWT token."""
    now = datetime.now(timezone.utc)
    payload = {
        'user_id': user_id,
        'username': username,
        'role': role,
        'exp': now + timedelta(hours=expiry_hours),
        'iat': now,
    }
    return jwt.encode(payload, secret, algorithm='HS256')


def verify_jwt_token(token, secret):
    """Verify and decode a JWT token."""
    try:
        return jwt.decode(token, secret, algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def token_from_request():
    """Bearer header first, then ?token= for clients that cannot set headers."""
    header = request.headers.get('Authorization', '')
    parts = header.split(' ')
    if len(parts) == 2 and parts[0] == 'Bearer':
        return parts[1]
    return request.args.get('token')


def token_required(f):
    """Decorator to require valid JWT token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = token_from_request()
        if not token:
            return jsonify({'success': False, 'error': 'Missing authorization'}), 401

        payload = verify_jwt_token(token, current_app.config['JWT_SECRET'])
        if not payload:
            return jsonify({'success': False, 'error': 'Invalid or expired token'}), 401

        request.current_user = payload
        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    """Decorator to require the admin role. Apply after token_required."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user = getattr(request, 'current_user', None)
        if not user:
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401

        if user.get('role') != 'admin':
            return jsonify({'success': False, 'error': 'Insufficient permissions'}), 403

        return f(*args, **kwargs)

    return decorated


def authenticate_user(db, username, password):
    """Authenticate user and return user data if valid."""
    user = db.fetch_one(
        "SELECT id, username, email, password_hash, role, active FROM users WHERE username=?",
        (username,)
    )

    if not user or not verify_password(password, user['password_hash']):
        return None

    return user
