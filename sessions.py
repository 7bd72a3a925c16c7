"""
Session token 的簽發與驗證

Token 是無狀態的 JWT (flask-jwt-extended 簽章),伺服器端不存 session。
身分只從簽章過的 ``sub`` claim 取得,不信任任何客戶端自己帶的 user id。
"""

from flask import current_app
from flask_jwt_extended import (
    create_access_token, get_jwt_identity, set_access_cookies,
    unset_access_cookies, verify_jwt_in_request
)
from flask_jwt_extended.exceptions import JWTExtendedException, NoAuthorizationError
from jwt.exceptions import PyJWTError
from errors import Unauthenticated
import logging

logger = logging.getLogger(__name__)


class SessionIssuer:
    """
    簽發/驗證 session token,cookie 交給 flask-jwt-extended 處理

    cookie 屬性都從 app.config 讀:
    - JWT_ACCESS_COOKIE_NAME ('token'), JWT_ACCESS_COOKIE_PATH ('/')
    - JWT_COOKIE_SECURE, JWT_COOKIE_SAMESITE (依環境不同)
    - SESSION_TTL (token 到期時間和 cookie max-age 一致)
    """

    def __init__(self, app=None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        app.extensions['session_issuer'] = self

    @property
    def max_age(self):
        return int(current_app.config['SESSION_TTL'].total_seconds())

    def issue(self, user_id):
        """產生帶 user id 和到期時間的簽章 token"""
        return create_access_token(
            identity=str(user_id),
            expires_delta=current_app.config['SESSION_TTL']
        )

    def verify_request(self):
        """
        驗證目前 request 的 token cookie 並回傳 user id

        沒有 cookie -> Unauthenticated('Not Authenticated!')
        簽章不符、格式錯誤、過期、不是 access token -> Unauthenticated('Invalid Token')
        """
        try:
            verify_jwt_in_request(locations=['cookies'])
        except NoAuthorizationError:
            raise Unauthenticated('Not Authenticated!')
        except (PyJWTError, JWTExtendedException) as e:
            logger.warning(f"Session token rejected: {e.__class__.__name__}")
            raise Unauthenticated('Invalid Token')

        user_id = get_jwt_identity()
        if not isinstance(user_id, str) or not user_id:
            raise Unauthenticated('Invalid Token')

        return user_id

    def set_cookie(self, response, token):
        set_access_cookies(response, token, max_age=self.max_age)
        return response

    def clear_cookie(self, response):
        unset_access_cookies(response)
        return response


def get_session_issuer():
    """從 Flask app extensions 取得 SessionIssuer (不用 global variable)"""
    return current_app.extensions['session_issuer']
