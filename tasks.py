from flask import Blueprint, request, jsonify
from marshmallow import Schema, fields, validate, validates, pre_load, EXCLUDE
from marshmallow import ValidationError as MarshmallowValidationError
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from models import db, Task, PRIORITIES, DEFAULT_PRIORITY
from errors import Forbidden, InternalError, validate_request_data
from guard import login_required
from datetime import date, timezone
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

TASK_FILTERS = ('ALL', 'ACTIVE', 'HIGH', 'OVERDUE')
TITLE_REQUIRED_MESSAGE = 'Title is required'


# ============================================
# Input Validation Schemas
# ============================================

class CalendarDate(fields.Date):
    """
    日期欄位

    接受 "2025-01-30",也接受完整的 ISO timestamp (只取日期部分)。
    空字串視為沒有日期
    """

    def _deserialize(self, value, attr, data, **kwargs):
        if value == '':
            return None
        if isinstance(value, str) and 'T' in value:
            value = value.split('T', 1)[0]
        return super()._deserialize(value, attr, data, **kwargs)


class StrictBool(fields.Bool):
    """只接受 JSON 的 true/false,1、0、"yes" 這些都算格式錯誤"""

    def _deserialize(self, value, attr, data, **kwargs):
        if type(value) is not bool:
            raise self.make_error('invalid')
        return value


class TitleSchema(Schema):
    """有 title 欄位的 schema 共用: 必填且不能只有空白"""

    class Meta:
        unknown = EXCLUDE

    title = fields.Str(
        required=True,
        validate=validate.Length(max=255),
        error_messages={'required': TITLE_REQUIRED_MESSAGE, 'null': TITLE_REQUIRED_MESSAGE}
    )

    @validates('title')
    def validate_title(self, value, **kwargs):
        if not value.strip():
            raise MarshmallowValidationError(TITLE_REQUIRED_MESSAGE)


class CreateTaskSchema(TitleSchema):
    """建立任務驗證 (user_id 一律用登入者,body 帶的會被忽略)"""

    priority = fields.Str(
        validate=validate.OneOf(PRIORITIES, error='Priority must be one of: LOW, MEDIUM, HIGH'),
        load_default=DEFAULT_PRIORITY
    )
    due_date = CalendarDate(data_key='dueDate', allow_none=True, load_default=None)

    @pre_load
    def drop_empty_priority(self, data, **kwargs):
        # priority 沒選就用預設值 LOW
        if isinstance(data, dict) and not data.get('priority'):
            data = {key: value for key, value in data.items() if key != 'priority'}
        return data


class UpdateStatusSchema(Schema):
    """更新完成狀態驗證"""

    class Meta:
        unknown = EXCLUDE

    is_done = StrictBool(
        data_key='isDone',
        required=True,
        error_messages={'required': 'isDone is required', 'invalid': 'isDone must be a boolean'}
    )


class UpdateTitleSchema(TitleSchema):
    """更新標題驗證"""


class UpdateDueDateSchema(Schema):
    """更新截止日期驗證 (null 或空字串代表清除)"""

    class Meta:
        unknown = EXCLUDE

    due_date = CalendarDate(data_key='dueDate', allow_none=True, load_default=None)


class ListTasksSchema(Schema):
    """任務列表的 query string"""

    class Meta:
        unknown = EXCLUDE

    filter = fields.Str(
        validate=validate.OneOf(TASK_FILTERS, error='Filter must be one of: ALL, ACTIVE, HIGH, OVERDUE'),
        load_default='ALL'
    )
    q = fields.Str(load_default='')

    @pre_load
    def normalize_filter(self, data, **kwargs):
        data = dict(data)
        if data.get('filter'):
            data['filter'] = data['filter'].upper()
        else:
            data.pop('filter', None)
        return data


class UTCDateTime(fields.DateTime):
    """SQLite 讀回來的時間沒有時區,一律當成 UTC 輸出 (+00:00)"""

    def _serialize(self, value, attr, obj, **kwargs):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return super()._serialize(value, attr, obj, **kwargs)


class TaskSchema(Schema):
    """任務的 JSON 輸出格式"""
    id = fields.Str()
    title = fields.Str()
    priority = fields.Str()
    due_date = fields.Date(data_key='dueDate', allow_none=True)
    is_done = fields.Bool(data_key='isDone')
    created_at = UTCDateTime(data_key='createdAt')
    user_id = fields.Str(data_key='userId')


task_schema = TaskSchema()
tasks_schema = TaskSchema(many=True)


# ============================================
# Task Service
# ============================================

class TaskService:
    """
    任務的 CRUD,全部以登入者為範圍

    每次修改都重新用 (id, user_id) 查一次,不存在或不是自己的任務
    一律回 Forbidden,不洩漏別人的任務是否存在
    """

    def __init__(self, session):
        self.session = session

    def _owned_task(self, auth, task_id):
        task = self.session.query(Task).filter_by(
            id=task_id,
            user_id=auth.user_id
        ).first()
        if task is None:
            logger.warning(f"Task access denied: task {task_id} for user {auth.user_id}")
            raise Forbidden('Unauthorized or Task not found')
        return task

    def _commit(self, action):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Task {action} error: {str(e)}", exc_info=True)
            raise InternalError(f'Failed to {action} task')

    def list(self, auth, task_filter='ALL', search=''):
        query = self.session.query(Task).filter_by(user_id=auth.user_id)

        # 篩選
        if task_filter == 'ACTIVE':
            query = query.filter(Task.is_done.is_(False))
        elif task_filter == 'HIGH':
            query = query.filter(Task.priority == 'HIGH')
        elif task_filter == 'OVERDUE':
            # 今天以前 (不含今天) 到期且還沒完成
            query = query.filter(
                Task.is_done.is_(False),
                Task.due_date.isnot(None),
                Task.due_date < date.today()
            )

        # 標題搜尋 (不分大小寫)
        if search:
            query = query.filter(
                func.lower(Task.title).contains(search.lower(), autoescape=True)
            )

        try:
            return query.order_by(Task.created_at.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching tasks: {str(e)}", exc_info=True)
            raise InternalError('Failed to fetch tasks')

    def create(self, auth, title, priority=DEFAULT_PRIORITY, due_date=None):
        task = Task(
            title=title,
            priority=priority or DEFAULT_PRIORITY,
            due_date=due_date,
            user_id=auth.user_id
        )
        self.session.add(task)
        self._commit('create')

        logger.info(f"Task created: {task.id} by user {auth.user_id}")
        return task

    def toggle_status(self, auth, task_id, is_done):
        task = self._owned_task(auth, task_id)
        task.is_done = is_done
        self._commit('update')
        return task

    def update_title(self, auth, task_id, title):
        task = self._owned_task(auth, task_id)
        task.title = title
        self._commit('update')
        return task

    def update_due_date(self, auth, task_id, due_date):
        task = self._owned_task(auth, task_id)
        task.due_date = due_date
        self._commit('update')
        return task

    def delete(self, auth, task_id):
        task = self._owned_task(auth, task_id)
        self.session.delete(task)
        self._commit('delete')

        logger.info(f"Task deleted: {task_id} by user {auth.user_id}")


def get_task_service():
    return TaskService(db.session)


# ============================================
# 查詢我的任務
# ============================================

@tasks_bp.route('', methods=['GET'])
@login_required
def get_tasks(auth):
    """
    查詢登入者的任務列表 (新的在前)

    Query string:
        filter: ALL | ACTIVE | HIGH | OVERDUE
        q: 標題關鍵字
    """
    params = validate_request_data(ListTasksSchema, request.args.to_dict())

    tasks = get_task_service().list(auth, params['filter'], params['q'])

    return jsonify(tasks_schema.dump(tasks)), 200


# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@login_required
def create_task(auth):
    result = validate_request_data(CreateTaskSchema, request.get_json(silent=True))

    task = get_task_service().create(
        auth,
        title=result['title'],
        priority=result['priority'],
        due_date=result['due_date']
    )

    return jsonify(task_schema.dump(task)), 200


# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/<task_id>/status', methods=['PATCH'])
@login_required
def toggle_task_status(auth, task_id):
    """標記完成 / 未完成"""
    result = validate_request_data(UpdateStatusSchema, request.get_json(silent=True))
    task = get_task_service().toggle_status(auth, task_id, result['is_done'])

    return jsonify(task_schema.dump(task)), 200


@tasks_bp.route('/<task_id>/title', methods=['PATCH'])
@login_required
def update_task_title(auth, task_id):
    result = validate_request_data(UpdateTitleSchema, request.get_json(silent=True))
    task = get_task_service().update_title(auth, task_id, result['title'])

    return jsonify(task_schema.dump(task)), 200


@tasks_bp.route('/<task_id>/date', methods=['PATCH'])
@login_required
def update_task_date(auth, task_id):
    """更新或清除截止日期"""
    result = validate_request_data(UpdateDueDateSchema, request.get_json(silent=True))
    task = get_task_service().update_due_date(auth, task_id, result['due_date'])

    return jsonify(task_schema.dump(task)), 200


# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/<task_id>', methods=['DELETE'])
@login_required
def delete_task(auth, task_id):
    get_task_service().delete(auth, task_id)

    return jsonify({'message': 'Task deleted'}), 200
