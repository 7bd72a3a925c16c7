from flask_bcrypt import Bcrypt
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# ============================================
# Flask 擴展 (在 create_app 裡 init_app)
# ============================================

bcrypt = Bcrypt()
jwt = JWTManager()
cors = CORS()

# 預設 limit 和 storage 從 app.config 的 RATELIMIT_* 讀取
limiter = Limiter(key_func=get_remote_address)
