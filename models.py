from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
import uuid

db = SQLAlchemy()

PRIORITIES = ('LOW', 'MEDIUM', 'HIGH')
DEFAULT_PRIORITY = 'LOW'


def generate_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


# ============================================
# 1. User 模型 (Credential Store)
# ============================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    # 只存 bcrypt hash,明文密碼不落地
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # 刪除帳號時一起刪除任務
    tasks = db.relationship(
        'Task',
        backref='owner',
        lazy=True,
        cascade='all,delete-orphan',
        passive_deletes=True
    )

    def __repr__(self):
        return f'<User {self.id}>'


# ============================================
# 2. Task 模型 (Task Store)
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.String(36), primary_key=True, default=generate_id)
    title = db.Column(db.String(255), nullable=False)
    priority = db.Column(db.String(10), nullable=False, default=DEFAULT_PRIORITY)  # LOW, MEDIUM, HIGH
    due_date = db.Column(db.Date, nullable=True)
    is_done = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    # 擁有者在建立時決定,之後不會再改
    user_id = db.Column(
        db.String(36),
        db.ForeignKey('users.id', ondelete='CASCADE'),
        nullable=False
    )

    # 索引
    __table_args__ = (
        db.Index('idx_task_user_created', 'user_id', 'created_at'),
        db.Index('idx_task_due_date', 'due_date'),
    )

    def __repr__(self):
        return f'<Task {self.id}>'
