from dataclasses import dataclass
from functools import wraps
from flask import request
from models import db, User
from errors import Unauthenticated
from sessions import get_session_issuer
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedRequest:
    """只有 login_required 驗證成功後才會建立,帶著已驗證的 user id"""
    user_id: str


def authenticate(session=None):
    """
    從 cookie 解出目前的使用者

    1. 沒有 cookie -> Unauthenticated
    2. token 驗證失敗 -> Unauthenticated
    3. token 有效但帳號已被刪除 -> Unauthenticated
    """
    session = session if session is not None else db.session

    try:
        user_id = get_session_issuer().verify_request()
    except Unauthenticated:
        logger.warning(f"Unauthenticated access attempt from: {request.remote_addr}")
        raise

    if session.get(User, user_id) is None:
        logger.warning(f"Token valid but user not found: {user_id}")
        raise Unauthenticated('Invalid Token')

    return AuthenticatedRequest(user_id=user_id)


def login_required(view):
    """
    保護路由的 decorator

    驗證成功後把 AuthenticatedRequest 當第一個參數傳給 view,
    view 不可以從 body 或 query string 取得 user id
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        auth = authenticate()
        return view(auth, *args, **kwargs)
    return wrapper
