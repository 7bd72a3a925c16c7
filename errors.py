from flask import jsonify, request
from marshmallow import ValidationError as MarshmallowValidationError
from werkzeug.exceptions import HTTPException
from models import db


# ============================================
# 錯誤類別
# ============================================

class TaskFlowError(Exception):
    """所有 API 錯誤的基底類別,每個子類別對應一個 HTTP status"""
    status_code = 500
    message = 'An unexpected error occurred. Please try again later.'

    def __init__(self, message=None, details=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.details = details

    def to_dict(self):
        payload = {'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(TaskFlowError):
    """輸入格式錯誤或缺少欄位"""
    status_code = 400
    message = 'Validation failed'


class Conflict(TaskFlowError):
    """違反唯一性 (例如 email 重複)"""
    status_code = 400
    message = 'Email already exists'


class InvalidCredentials(TaskFlowError):
    """
    帳號或密碼錯誤

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
    """
    status_code = 400
    message = 'Invalid email or password'


class Unauthenticated(TaskFlowError):
    """沒有 session 或 session 無效/過期"""
    status_code = 401
    message = 'Not Authenticated!'


class Forbidden(TaskFlowError):
    """
    不是資源的擁有者

    資源不存在也回這個,不洩漏別人的資料是否存在
    """
    status_code = 403
    message = 'Unauthorized or Task not found'


class InternalError(TaskFlowError):
    """資料庫等內部錯誤,只給前端通用訊息"""
    status_code = 500
    message = 'Internal Server Error'


def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        dict: 驗證過的資料

    Raises:
        ValidationError: error 是第一個錯誤訊息,details 是全部欄位的錯誤
    """
    schema = schema_class()
    try:
        return schema.load(data if isinstance(data, dict) else {})
    except MarshmallowValidationError as err:
        raise ValidationError(first_error_message(err.messages), details=err.messages)


def first_error_message(messages):
    """
    從 marshmallow 的錯誤 dict 取出第一個錯誤訊息

    欄位順序跟 schema 宣告順序一樣,所以會是第一個違反的規則
    """
    if isinstance(messages, dict):
        for value in messages.values():
            return first_error_message(value)
    if isinstance(messages, (list, tuple)) and messages:
        return first_error_message(messages[0])
    if isinstance(messages, str):
        return messages
    return ValidationError.message


# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):
    """把錯誤類別和 HTTP 錯誤都轉成統一的 JSON 格式"""

    @app.errorhandler(TaskFlowError)
    def handle_taskflow_error(error):
        if isinstance(error, InternalError):
            db.session.rollback()
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        """404, 405, 429 等 werkzeug 錯誤"""
        if error.code == 429:
            app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': error.description or error.name,
            'status': error.code
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        處理所有未預期的錯誤

        1. rollback transaction
        2. 記錄完整的 stack trace 到 log
        3. 不洩漏錯誤細節給前端
        """
        db.session.rollback()

        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({'error': InternalError.message}), 500
