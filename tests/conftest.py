"""
Test Configuration and Fixtures
"""
import pytest
from flask import g, has_app_context
from flask.testing import FlaskClient

from pdf2md import create_app, db
from pdf2md.auth import AuthenticatedUser
from pdf2md.exceptions import Unauthorized
from webhook_helpers import OTHER_USER_ID, TEST_USER_ID


class FakeTokenVerifier:
    """Maps fixed bearer tokens to Firebase uids"""

    def __init__(self, tokens):
        self.tokens = tokens

    def verify(self, token):
        uid = self.tokens.get(token)
        if uid is None:
            raise Unauthorized('Invalid token')
        return AuthenticatedUser(uid, f'{uid}@example.com')


class FreshIdentityClient(FlaskClient):
    """Test client that re-reads the bearer token on every request

    The app context stays pushed for the whole test, so Flask-Login would
    otherwise keep the first caller cached on `g`.
    """

    def open(self, *args, **kwargs):
        if has_app_context():
            g.pop('_login_user', None)
        return super().open(*args, **kwargs)


@pytest.fixture(scope='function')
def app():
    """Create application for testing, with a fresh in-memory database"""
    app = create_app('testing')
    app.test_client_class = FreshIdentityClient
    app.extensions['token_verifier'] = FakeTokenVerifier({
        'valid-token': TEST_USER_ID,
        'other-token': OTHER_USER_ID,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session for testing"""
    yield db.session
    db.session.rollback()


@pytest.fixture
def auth_headers():
    return {'Authorization': 'Bearer valid-token'}


@pytest.fixture
def other_auth_headers():
    return {'Authorization': 'Bearer other-token'}
