"""Session token 簽發/驗證和 Access Guard 的測試"""

from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest
from flask_jwt_extended import create_access_token, create_refresh_token, decode_token

from config import TestingConfig
from app import create_app
from errors import Unauthenticated
from sessions import get_session_issuer

from conftest import register


def cookie_header(response, name='token'):
    for header in response.headers.getlist('Set-Cookie'):
        if header.startswith(f'{name}='):
            return header
    return None


def verify_cookie(app, token):
    """在帶著 token cookie 的 request context 裡驗證"""
    with app.test_request_context(headers={'Cookie': f'token={token}'}):
        return get_session_issuer().verify_request()


class TestSessionIssuer:

    def test_issue_then_verify_returns_user_id(self, app):
        with app.app_context():
            token = get_session_issuer().issue('user-123')
        assert verify_cookie(app, token) == 'user-123'

    def test_token_expires_after_seven_days(self, app):
        with app.app_context():
            token = get_session_issuer().issue('user-123')
            claims = pyjwt.decode(
                token, app.config['JWT_SECRET_KEY'], algorithms=['HS256']
            )
        assert claims['sub'] == 'user-123'
        assert claims['exp'] - claims['iat'] == 7 * 24 * 60 * 60

    def test_missing_cookie_is_not_authenticated(self, app):
        with app.test_request_context():
            with pytest.raises(Unauthenticated) as exc:
                get_session_issuer().verify_request()
        assert exc.value.message == 'Not Authenticated!'

    def test_cookie_in_query_string_is_ignored(self, app):
        with app.app_context():
            token = get_session_issuer().issue('user-123')
        with app.test_request_context(query_string={'token': token}):
            with pytest.raises(Unauthenticated):
                get_session_issuer().verify_request()

    def test_expired_token_is_rejected(self, app):
        with app.app_context():
            token = create_access_token(identity='user-123', expires_delta=timedelta(seconds=-1))
        with pytest.raises(Unauthenticated) as exc:
            verify_cookie(app, token)
        assert exc.value.message == 'Invalid Token'

    def test_token_signed_with_other_secret_is_rejected(self, app):
        now = datetime.now(timezone.utc)
        forged = pyjwt.encode(
            {
                'sub': 'user-123',
                'type': 'access',
                'fresh': False,
                'jti': 'abc',
                'iat': now,
                'nbf': now,
                'exp': now + timedelta(days=7),
            },
            'not-the-server-secret-but-long-enough-for-hmac',
            algorithm='HS256'
        )
        with pytest.raises(Unauthenticated):
            verify_cookie(app, forged)

    def test_tampered_token_is_rejected(self, app):
        with app.app_context():
            token = get_session_issuer().issue('user-123')
        header, payload, signature = token.split('.')
        tampered = '.'.join([header, payload, signature[::-1]])
        with pytest.raises(Unauthenticated):
            verify_cookie(app, tampered)

    @pytest.mark.parametrize('token', ['', 'not-a-token', 'a.b.c'])
    def test_malformed_token_is_rejected(self, app, token):
        with pytest.raises(Unauthenticated):
            verify_cookie(app, token)

    def test_refresh_token_is_not_a_session(self, app):
        with app.app_context():
            token = create_refresh_token(identity='user-123')
        with pytest.raises(Unauthenticated):
            verify_cookie(app, token)


class TestSessionCookie:

    def test_register_sets_http_only_cookie(self, client):
        response = register(client)
        header = cookie_header(response)

        assert header is not None
        assert 'HttpOnly' in header
        assert 'Path=/' in header
        assert 'Max-Age=604800' in header
        assert 'SameSite=Lax' in header
        assert '; Secure' not in header

    def test_cookie_holds_a_session_token_for_the_user(self, app, client):
        body = register(client).get_json()
        token = client.get_cookie('token').value

        with app.app_context():
            claims = decode_token(token)
        assert claims['sub'] == body['id']
        assert claims['type'] == 'access'

    def test_no_csrf_cookie_is_set(self, client):
        response = register(client)
        names = [h.split('=', 1)[0] for h in response.headers.getlist('Set-Cookie')]
        assert names == ['token']

    def test_production_cookie_is_secure_and_cross_site(self):
        class ProductionCookieConfig(TestingConfig):
            JWT_COOKIE_SECURE = True
            JWT_COOKIE_SAMESITE = 'None'

        app = create_app(ProductionCookieConfig)
        response = register(app.test_client())
        header = cookie_header(response)

        assert '; Secure' in header
        assert 'SameSite=None' in header
        assert 'HttpOnly' in header


class TestAccessGuard:

    def test_missing_cookie_is_unauthenticated(self, client):
        response = client.get('/auth/me')
        assert response.status_code == 401
        assert response.get_json() == {'error': 'Not Authenticated!'}

    def test_invalid_cookie_is_unauthenticated(self, client):
        client.set_cookie('token', 'definitelynotatoken')
        response = client.get('/tasks')
        assert response.status_code == 401
        assert response.get_json() == {'error': 'Invalid Token'}

    def test_token_for_unknown_user_is_unauthenticated(self, app, client):
        with app.app_context():
            token = get_session_issuer().issue('no-such-user')
        client.set_cookie('token', token)
        assert client.get('/auth/me').status_code == 401

    def test_valid_cookie_resolves_identity(self, client, user):
        response = client.get('/auth/me')
        assert response.status_code == 200
        assert response.get_json() == {'valid': True, 'userId': user['id']}

    def test_identity_is_not_taken_from_query_string(self, client, user, other_user):
        response = client.get(f"/auth/me?userId={other_user['id']}")
        assert response.get_json()['userId'] == user['id']
