from flask import Flask, request, jsonify
from config import get_config
from models import db
from errors import register_error_handlers
from extensions import bcrypt, cors, jwt, limiter
from sessions import SessionIssuer
from sqlalchemy import text
from datetime import datetime, timezone
import logging
from logging.handlers import RotatingFileHandler
import os


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 設定統一的 log format
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # handler 只掛在 root logger,app.logger 和各模組的 logger 都會 propagate 上來
    root_logger = logging.getLogger()
    root_logger.addHandler(info_handler)
    root_logger.addHandler(error_handler)
    root_logger.setLevel(getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO))

    app.logger.info('Application startup')


# ============================================
# App Factory
# ============================================

def create_app(config_class=None):
    """建立並設定 Flask app"""
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # CORS: 帶 cookie 的跨站請求必須指定來源,不能用 '*'
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type']
    )

    # ============================================
    # 擴展初始化
    # ============================================

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    app.extensions['bcrypt'] = bcrypt
    limiter.init_app(app)
    SessionIssuer(app)

    if not app.debug and not app.testing:
        setup_logging(app)

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    # ============================================
    # 註冊 Blueprints
    # ============================================

    from auth import auth_bp
    app.register_blueprint(auth_bp, url_prefix='/auth')

    from tasks import tasks_bp
    app.register_blueprint(tasks_bp, url_prefix='/tasks')

    register_error_handlers(app)
    register_request_hooks(app)
    register_routes(app)

    return app


# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        """記錄每個請求"""
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        """記錄每個回應並加上 security headers"""
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response


def register_routes(app):

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """
        健康檢查端點

        用於 load balancer 或監控系統檢查服務是否正常
        """
        try:
            db.session.execute(text('SELECT 1'))

            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.now(timezone.utc).isoformat()
            }), 200
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    def home():
        """API 首頁"""
        return jsonify({
            'message': 'TaskFlow API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'logout': {'path': '/auth/logout', 'methods': ['POST']},
                    'me': {'path': '/auth/me', 'methods': ['GET']},
                    'profile': {'path': '/auth/profile', 'methods': ['GET', 'PUT', 'DELETE']}
                },
                'tasks': {
                    'list': {'path': '/tasks', 'methods': ['GET', 'POST']},
                    'status': {'path': '/tasks/:id/status', 'methods': ['PATCH']},
                    'title': {'path': '/tasks/:id/title', 'methods': ['PATCH']},
                    'date': {'path': '/tasks/:id/date', 'methods': ['PATCH']},
                    'detail': {'path': '/tasks/:id', 'methods': ['DELETE']}
                }
            },
            'rate_limits': {
                'default': app.config['RATELIMIT_DEFAULT'],
                'auth': {
                    'register': app.config['REGISTER_RATE_LIMIT'],
                    'login': app.config['LOGIN_RATE_LIMIT']
                }
            }
        })


# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server
    # 應該用 gunicorn: gunicorn "app:create_app()"
    app = create_app()

    port = int(os.getenv('PORT', 4000))

    app.run(
        debug=app.config['DEBUG'],
        port=port,
        host='0.0.0.0'  # 允許外部訪問
    )
