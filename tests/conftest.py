import datetime, itertools
from typing import Any, Optional

import pytest
from flask import Flask
from flask.testing import FlaskClient

from app import create_app
from backends import BackendError


class MemoryRecordStore:
    '''Dict-backed record store that counts get_by_key round trips.'''

    def __init__(self) -> None:
        self.tables : dict[str, list[dict[str, Any]]] = {}
        self.ids = itertools.count(1)
        self.lookups : int = 0

    def rows(self, table:str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def list(self, table:str, order_by:str, descending:bool=True) -> list[dict[str, Any]]:
        return sorted((dict(row) for row in self.rows(table)), key=lambda row: row[order_by], reverse=descending)

    def get_by_key(self, table:str, key:str, value:Any) -> Optional[dict[str, Any]]:
        self.lookups += 1
        for row in self.rows(table):
            if row.get(key) == value:
                return dict(row)
        return None

    def insert(self, table:str, record:dict[str, Any]) -> dict[str, Any]:
        row : dict[str, Any] = {'id': next(self.ids), 'created_at': datetime.datetime.utcnow(), 'file_url': None}
        row.update(record)
        self.rows(table).append(row)
        return dict(row)

    def update(self, table:str, key:str, value:Any, fields:dict[str, Any]) -> None:
        for row in self.rows(table):
            if row.get(key) == value:
                row.update(fields)

    def delete(self, table:str, key:str, value:Any) -> None:
        self.tables[table] = [row for row in self.rows(table) if row.get(key) != value]


class MemoryObjectStore:
    def __init__(self) -> None:
        self.objects : dict[tuple[str, str], bytes] = {}
        self.removed : list[str] = []

    def upload(self, bucket:str, name:str, data:bytes, content_type:str) -> None:
        self.objects[(bucket, name)] = data

    def remove(self, bucket:str, names:list[str]) -> None:
        for name in names:
            self.removed.append(name)
            self.objects.pop((bucket, name), None)

    def get_public_url(self, bucket:str, name:str) -> str:
        return f'https://storage.example.com/object/public/{bucket}/{name}'


class FailingRecordStore:
    def __getattr__(self, name:str):
        def fail(*args, **kwargs):
            raise BackendError(f'{name} is unavailable')
        return fail


def build_app(tmp_path, backends=None) -> Flask:
    return create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{tmp_path / "test.db"}',
        'SUPABASE_URL': '',
        'SUPABASE_KEY': '',
        'MEDIA_DIR': str(tmp_path / 'media'),
        'BLOG_TABLE': 'blogs',
        'BLOG_BUCKET': 'blog-files',
        'ADMIN_USERNAME': 'admin',
        'ADMIN_PASSWORD': 'hunter2',
    }, backends=backends)


def log_in(client:FlaskClient) -> FlaskClient:
    with client.session_transaction() as sess:
        sess['is_authenticated'] = True
    return client


@pytest.fixture
def app(tmp_path) -> Flask:
    return build_app(tmp_path)


@pytest.fixture
def client(app) -> FlaskClient:
    return app.test_client()


@pytest.fixture
def admin_client(app) -> FlaskClient:
    return log_in(app.test_client())


@pytest.fixture
def records(app):
    return app.extensions['blog_records']


@pytest.fixture
def memory_backends():
    return MemoryRecordStore(), MemoryObjectStore()


@pytest.fixture
def memory_app(tmp_path, memory_backends) -> Flask:
    return build_app(tmp_path, backends=memory_backends)
