"""
Authentication: Firebase ID tokens presented as bearer tokens

Every protected route receives the caller's identity through Flask-Login's
request loader; services are always handed the uid explicitly.
"""
from functools import lru_cache

import jwt
from jwt import InvalidTokenError, PyJWKClient, PyJWKClientError
from flask import current_app, jsonify
from flask_login import UserMixin

from pdf2md import login_manager
from pdf2md.exceptions import Unauthorized

GOOGLE_SIGNING_KEYS_URL = (
    "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
)


class AuthenticatedUser(UserMixin):
    """A Firebase user for the duration of one request"""

    def __init__(self, uid, email=None):
        self.id = uid
        self.email = email

    def __repr__(self):
        return f"<AuthenticatedUser {self.id}>"


@lru_cache(maxsize=8)
def _jwks_client(jwks_url):
    return PyJWKClient(jwks_url)


class FirebaseTokenVerifier:
    """Verifies Firebase ID tokens against Google's published signing keys"""

    def __init__(self, project_id, jwks_url=GOOGLE_SIGNING_KEYS_URL, leeway=60):
        self.project_id = project_id
        self.jwks_url = jwks_url
        self.leeway = leeway

    def verify(self, token):
        if not self.project_id:
            raise Unauthorized("Identity verification is not configured")
        try:
            signing_key = _jwks_client(self.jwks_url).get_signing_key_from_jwt(token).key
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"https://securetoken.google.com/{self.project_id}",
                leeway=self.leeway,
                options={"require": ["exp", "iat", "aud", "iss", "sub"]},
            )
        except (InvalidTokenError, PyJWKClientError) as e:
            raise Unauthorized(f"Invalid token: {e}") from e

        uid = (claims.get("sub") or "").strip()
        if not uid:
            raise Unauthorized("Token has no subject")
        return AuthenticatedUser(uid, claims.get("email"))


def init_auth(app):
    """Initialize authentication"""
    app.extensions.setdefault('token_verifier', FirebaseTokenVerifier(app.config.get('FIREBASE_PROJECT_ID', '')))


def bearer_token(request):
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


@login_manager.request_loader
def load_user_from_request(request):
    """Load the caller from the Authorization header"""
    token = bearer_token(request)
    if not token:
        return None
    try:
        return current_app.extensions['token_verifier'].verify(token)
    except Unauthorized as e:
        current_app.logger.info('Rejected identity token: %s', e.message)
        return None


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify(Unauthorized().to_dict()), 401
