"""
Auth Module
Owner: CC1
Domain: Auth & Multi-tenancy

Bearer JWTs carrying the caller's organisation:
- sub: user id
- org_id: organisation the caller acts for
- tenant_id: tenant the organisation lives in
"""

import os
import jwt
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from flask import request, jsonify, g

# JWT Configuration
JWT_SECRET = os.environ.get('JWT_SECRET', secrets.token_hex(32))
JWT_ALGORITHM = 'HS256'
JWT_EXPIRY_HOURS = int(os.environ.get('JWT_EXPIRY_HOURS', 168))


def generate_jwt(user_id: str, email: str = None, org_id: str = None, tenant_id: str = None) -> str:
    """Generate a JWT token for an authenticated user acting for an org."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': user_id,
        'email': email,
        'org_id': org_id,
        'tenant_id': tenant_id,
        'iat': now,
        'exp': now + timedelta(hours=JWT_EXPIRY_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_jwt(token: str) -> dict:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise ValueError('Token has expired')
    except jwt.InvalidTokenError as e:
        raise ValueError(f'Invalid token: {str(e)}')


def require_jwt(f):
    """Decorator to require JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')

        if not auth_header.startswith('Bearer '):
            return jsonify({'error': 'Authorization header required'}), 401

        token = auth_header[7:]

        try:
            payload = verify_jwt(token)
        except ValueError as e:
            return jsonify({'error': str(e)}), 401

        g.current_user = payload
        return f(*args, **kwargs)

    return decorated
