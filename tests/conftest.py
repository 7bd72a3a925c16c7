import pytest

from app import create_app
from config import TestingConfig
from models import db


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def other_client(app):
    """第二個使用者用的 client (各自的 cookie jar)"""
    return app.test_client()


def register(client, email='alice@example.com', password='password123'):
    return client.post('/auth/register', json={'email': email, 'password': password})


def create_task(client, **payload):
    payload.setdefault('title', 'Buy milk')
    return client.post('/tasks', json=payload)


@pytest.fixture
def user(client):
    """已註冊並登入的使用者"""
    response = register(client)
    assert response.status_code == 201
    return response.get_json()


@pytest.fixture
def other_user(other_client):
    response = register(other_client, email='bob@example.com')
    assert response.status_code == 201
    return response.get_json()
