from functools import wraps

import jwt
from flask import current_app, g, request

from .errors import AuthError, ForbiddenError


def extract_token_from_header():
    """Pull the Bearer token out of the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise AuthError("Authorization header missing")

    try:
        auth_type, token = auth_header.split(" ", 1)
    except ValueError:
        raise AuthError("Invalid Authorization header format")

    if auth_type.lower() != "bearer" or not token.strip():
        raise AuthError("Token must be a Bearer token")

    return token.strip()


def decode_token(token):
    config = current_app.config
    try:
        payload = jwt.decode(
            token,
            config["AUTH_JWT_SECRET"],
            algorithms=[config["AUTH_JWT_ALGORITHM"]],
            audience=config["AUTH_JWT_AUDIENCE"],
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Token missing subject")
    return user_id


def require_auth(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        g.user_id = decode_token(extract_token_from_header())
        return view(*args, **kwargs)

    return wrapper


def ensure_same_user(claimed_user_id):
    """A body-supplied user id must name the authenticated caller."""
    if claimed_user_id is not None and str(claimed_user_id) != g.user_id:
        raise ForbiddenError("User ID mismatch")
