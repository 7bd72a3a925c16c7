from flask import Blueprint, request, jsonify, current_app
from marshmallow import Schema, fields, validate, validates, EXCLUDE
from marshmallow import ValidationError as MarshmallowValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from models import db, User, Task
from errors import (
    Conflict, InternalError, InvalidCredentials, Unauthenticated,
    validate_request_data
)
from extensions import limiter
from guard import login_required
from sessions import get_session_issuer
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

LOGIN_REQUIRED_MESSAGE = 'Please enter both email and password'


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

def _check_password_length(value):
    min_length = current_app.config['PASSWORD_MIN_LENGTH']
    max_length = current_app.config['PASSWORD_MAX_LENGTH']
    if len(value) < min_length:
        raise MarshmallowValidationError(
            f'Password must be at least {min_length} characters long.'
        )
    if len(value) > max_length:
        raise MarshmallowValidationError(
            f'Password must be at most {max_length} characters long.'
        )


class RegisterSchema(Schema):
    """註冊輸入驗證"""

    class Meta:
        unknown = EXCLUDE

    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'null': 'Email is required',
        'invalid': 'Please enter a valid email address.'
    })
    password = fields.Str(required=True, error_messages={
        'required': 'Password is required',
        'null': 'Password is required'
    })

    @validates('password')
    def validate_password(self, value, **kwargs):
        _check_password_length(value)


class LoginSchema(Schema):
    """登入輸入驗證 (只檢查有沒有填,不檢查格式)"""

    class Meta:
        unknown = EXCLUDE

    email = fields.Str(
        required=True,
        validate=validate.Length(min=1, error=LOGIN_REQUIRED_MESSAGE),
        error_messages={'required': LOGIN_REQUIRED_MESSAGE, 'null': LOGIN_REQUIRED_MESSAGE}
    )
    password = fields.Str(
        required=True,
        validate=validate.Length(min=1, error=LOGIN_REQUIRED_MESSAGE),
        error_messages={'required': LOGIN_REQUIRED_MESSAGE, 'null': LOGIN_REQUIRED_MESSAGE}
    )


class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(allow_none=True, validate=validate.Length(max=100))
    current_password = fields.Str(data_key='currentPassword', allow_none=True)
    new_password = fields.Str(data_key='newPassword', allow_none=True)

    @validates('new_password')
    def validate_new_password(self, value, **kwargs):
        # 空字串代表不改密碼
        if value:
            _check_password_length(value)


def profile_to_dict(user, *keys):
    """只輸出指定欄位,password_hash 永遠不會出現在回應裡"""
    projection = {'id': user.id, 'email': user.email, 'name': user.name}
    return {key: projection[key] for key in keys}


# ============================================
# Account Service
# ============================================

class AccountService:
    """
    帳號相關的操作

    session 和 hasher 由呼叫端傳進來,測試時可以換成替身
    """

    def __init__(self, session, hasher):
        self.session = session
        self.hasher = hasher

    def _hash(self, password):
        return self.hasher.generate_password_hash(password).decode('utf-8')

    def _load_user(self, auth):
        user = self.session.get(User, auth.user_id)
        if user is None:
            raise Unauthenticated('Invalid Token')
        return user

    def register(self, email, password):
        # 檢查 email 是否已存在
        if self.session.query(User).filter_by(email=email).first():
            raise Conflict('Email already exists')

        user = User(email=email, password_hash=self._hash(password))

        try:
            self.session.add(user)
            self.session.commit()
        except IntegrityError:
            # 同時有兩個相同 email 的註冊請求
            self.session.rollback()
            raise Conflict('Email already exists')
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Registration error for {email}: {str(e)}", exc_info=True)
            raise InternalError('Internal Server Error')

        logger.info(f"New user registered: {user.id}")
        return user

    def login(self, email, password):
        user = self.session.query(User).filter_by(email=email).first()

        # 不要區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
        if not user or not self.hasher.check_password_hash(user.password_hash, password):
            logger.warning(f"Failed login attempt for email: {email}")
            raise InvalidCredentials('Invalid email or password')

        logger.info(f"User logged in: {user.id}")
        return user

    def get_profile(self, auth):
        return self._load_user(auth)

    def update_profile(self, auth, changes):
        user = self._load_user(auth)

        new_password = changes.get('new_password')
        if new_password:
            current_password = changes.get('current_password')
            if not current_password or not self.hasher.check_password_hash(
                user.password_hash, current_password
            ):
                logger.warning(f"Profile update with wrong current password: {user.id}")
                raise InvalidCredentials('Incorrect current password')
            user.password_hash = self._hash(new_password)

        if 'name' in changes:
            user.name = changes['name']

        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Profile update error for {user.id}: {str(e)}", exc_info=True)
            raise InternalError('Failed to update profile')

        logger.info(f"User profile updated: {user.id}")
        return user

    def delete_account(self, auth):
        """先刪任務再刪使用者,兩個刪除在同一個 transaction 裡"""
        try:
            task_count = self.session.query(Task).filter_by(
                user_id=auth.user_id
            ).delete(synchronize_session=False)
            self.session.query(User).filter_by(
                id=auth.user_id
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Account deletion error for {auth.user_id}: {str(e)}", exc_info=True)
            raise InternalError('Failed to delete account')

        logger.info(f"Account deleted: {auth.user_id} ({task_count} tasks)")


def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例 (不用 global variable)"""
    return current_app.extensions['bcrypt']


def get_account_service():
    return AccountService(db.session, get_bcrypt())


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit(lambda: current_app.config['REGISTER_RATE_LIMIT'])
def register():
    """
    使用者註冊

    成功時直接登入 (設定 session cookie),只回傳 id 和 email
    """
    result = validate_request_data(RegisterSchema, request.get_json(silent=True))

    user = get_account_service().register(result['email'], result['password'])

    issuer = get_session_issuer()
    response = jsonify(profile_to_dict(user, 'id', 'email'))
    response.status_code = 201
    return issuer.set_cookie(response, issuer.issue(user.id))


# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit(lambda: current_app.config['LOGIN_RATE_LIMIT'])
def login():
    """使用者登入"""
    result = validate_request_data(LoginSchema, request.get_json(silent=True))

    user = get_account_service().login(result['email'], result['password'])

    issuer = get_session_issuer()
    response = jsonify(profile_to_dict(user, 'id', 'email', 'name'))
    return issuer.set_cookie(response, issuer.issue(user.id))


# ============================================
# 登出 API
# ============================================

@auth_bp.route('/logout', methods=['POST'])
def logout():
    """
    登出

    Token 是無狀態的,清掉 cookie 就好。不需要登入,重複呼叫也一樣成功
    """
    response = jsonify({'message': 'Logged out'})
    return get_session_issuer().clear_cookie(response)


# ============================================
# 取得當前使用者
# ============================================

@auth_bp.route('/me', methods=['GET'])
@login_required
def get_me(auth):
    """讓前端確認是否已登入"""
    return jsonify({'valid': True, 'userId': auth.user_id}), 200


@auth_bp.route('/profile', methods=['GET'])
@login_required
def get_profile(auth):
    user = get_account_service().get_profile(auth)
    return jsonify(profile_to_dict(user, 'id', 'email', 'name')), 200


# ============================================
# 更新個人資料 / 修改密碼
# ============================================

@auth_bp.route('/profile', methods=['PUT'])
@login_required
def update_profile(auth):
    """
    更新名稱,有帶 newPassword 時一併修改密碼

    修改密碼必須提供正確的 currentPassword
    """
    result = validate_request_data(UpdateProfileSchema, request.get_json(silent=True))

    user = get_account_service().update_profile(auth, result)

    return jsonify(profile_to_dict(user, 'id', 'name', 'email')), 200


# ============================================
# 刪除帳號
# ============================================

@auth_bp.route('/profile', methods=['DELETE'])
@login_required
def delete_account(auth):
    """刪除帳號和所有任務,並清掉 session cookie"""
    get_account_service().delete_account(auth)

    response = jsonify({'message': 'Account deleted'})
    return get_session_issuer().clear_cookie(response)
