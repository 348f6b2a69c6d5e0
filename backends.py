'''
Record and object stores the blog delegates to.

Production runs against a hosted Supabase project (a PostgREST table plus a
storage bucket). Without Supabase credentials the app falls back to a local
SQL database through Flask-SQLAlchemy and a media directory on disk.
'''
import os
from typing import Any, Optional, Protocol

import httpx
from postgrest.exceptions import APIError
from sqlalchemy.exc import SQLAlchemyError
from storage3.exceptions import StorageApiError
from supabase import Client, create_client

from models import db, Post


class BackendError(Exception):
    '''A remote store or bucket call failed.'''


class RecordStore(Protocol):
    def list(self, table:str, order_by:str, descending:bool=True) -> list[dict[str, Any]]: ...
    def get_by_key(self, table:str, key:str, value:Any) -> Optional[dict[str, Any]]: ...
    def insert(self, table:str, record:dict[str, Any]) -> dict[str, Any]: ...
    def update(self, table:str, key:str, value:Any, fields:dict[str, Any]) -> None: ...
    def delete(self, table:str, key:str, value:Any) -> None: ...


class ObjectStore(Protocol):
    def upload(self, bucket:str, name:str, data:bytes, content_type:str) -> None: ...
    def remove(self, bucket:str, names:list[str]) -> None: ...
    def get_public_url(self, bucket:str, name:str) -> str: ...


def object_name_from_url(url:str) -> str:
    return url.rstrip('/').split('/')[-1]


class SupabaseRecordStore:
    def __init__(self, client:Client) -> None:
        self.client = client

    def list(self, table:str, order_by:str, descending:bool=True) -> list[dict[str, Any]]:
        try:
            response = self.client.table(table).select('*').order(order_by, desc=descending).execute()
        except (APIError, httpx.HTTPError) as error:
            raise BackendError(f'listing {table} failed: {error}') from error
        return response.data or []

    def get_by_key(self, table:str, key:str, value:Any) -> Optional[dict[str, Any]]:
        try:
            response = self.client.table(table).select('*').eq(key, value).limit(1).execute()
        except (APIError, httpx.HTTPError) as error:
            raise BackendError(f'reading {table}.{key}={value} failed: {error}') from error
        rows : list[dict[str, Any]] = response.data or []
        return rows[0] if rows else None

    def insert(self, table:str, record:dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.table(table).insert(record).execute()
        except (APIError, httpx.HTTPError) as error:
            raise BackendError(f'inserting into {table} failed: {error}') from error
        rows : list[dict[str, Any]] = response.data or []
        return rows[0] if rows else dict(record)

    def update(self, table:str, key:str, value:Any, fields:dict[str, Any]) -> None:
        try:
            self.client.table(table).update(fields).eq(key, value).execute()
        except (APIError, httpx.HTTPError) as error:
            raise BackendError(f'updating {table}.{key}={value} failed: {error}') from error

    def delete(self, table:str, key:str, value:Any) -> None:
        try:
            self.client.table(table).delete().eq(key, value).execute()
        except (APIError, httpx.HTTPError) as error:
            raise BackendError(f'deleting {table}.{key}={value} failed: {error}') from error


class SupabaseObjectStore:
    def __init__(self, client:Client) -> None:
        self.client = client

    def upload(self, bucket:str, name:str, data:bytes, content_type:str) -> None:
        try:
            self.client.storage.from_(bucket).upload(
                path=name,
                file=data,
                file_options={'content-type': content_type, 'cache-control': '3600'},
            )
        except (StorageApiError, httpx.HTTPError) as error:
            raise BackendError(f'uploading {bucket}/{name} failed: {error}') from error

    def remove(self, bucket:str, names:list[str]) -> None:
        try:
            self.client.storage.from_(bucket).remove(names)
        except (StorageApiError, httpx.HTTPError) as error:
            raise BackendError(f'removing {names} from {bucket} failed: {error}') from error

    def get_public_url(self, bucket:str, name:str) -> str:
        return self.client.storage.from_(bucket).get_public_url(name)


class SqlRecordStore:
    '''Flask-SQLAlchemy stand-in for the hosted table store; needs an app context.'''

    models : dict[str, type] = {Post.__tablename__: Post}

    def _model(self, table:str) -> type:
        try:
            return self.models[table]
        except KeyError:
            raise BackendError(f'unknown table {table}') from None

    def list(self, table:str, order_by:str, descending:bool=True) -> list[dict[str, Any]]:
        model = self._model(table)
        column = getattr(model, order_by)
        try:
            rows = model.query.order_by(column.desc() if descending else column.asc()).all()
        except SQLAlchemyError as error:
            raise BackendError(f'listing {table} failed: {error}') from error
        return [row.to_dict() for row in rows]

    def get_by_key(self, table:str, key:str, value:Any) -> Optional[dict[str, Any]]:
        model = self._model(table)
        try:
            row = model.query.filter_by(**{key: value}).first()
        except SQLAlchemyError as error:
            raise BackendError(f'reading {table}.{key}={value} failed: {error}') from error
        return row.to_dict() if row else None

    def insert(self, table:str, record:dict[str, Any]) -> dict[str, Any]:
        row = self._model(table)(**record)
        try:
            db.session.add(row)
            db.session.commit()
        except SQLAlchemyError as error:
            db.session.rollback()
            raise BackendError(f'inserting into {table} failed: {error}') from error
        return row.to_dict()

    def update(self, table:str, key:str, value:Any, fields:dict[str, Any]) -> None:
        model = self._model(table)
        try:
            model.query.filter_by(**{key: value}).update(fields)
            db.session.commit()
        except SQLAlchemyError as error:
            db.session.rollback()
            raise BackendError(f'updating {table}.{key}={value} failed: {error}') from error

    def delete(self, table:str, key:str, value:Any) -> None:
        model = self._model(table)
        try:
            model.query.filter_by(**{key: value}).delete()
            db.session.commit()
        except SQLAlchemyError as error:
            db.session.rollback()
            raise BackendError(f'deleting {table}.{key}={value} failed: {error}') from error


class LocalObjectStore:
    '''Keeps bucket objects under media_dir/<bucket>/ and serves them from url_prefix.'''

    def __init__(self, media_dir:str, url_prefix:str='/media') -> None:
        self.media_dir = media_dir
        self.url_prefix = url_prefix.rstrip('/')

    def path(self, bucket:str, name:str) -> str:
        return os.path.join(self.media_dir, bucket, os.path.basename(name))

    def upload(self, bucket:str, name:str, data:bytes, content_type:str) -> None:
        target : str = self.path(bucket, name)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, 'xb') as handle:
                handle.write(data)
        except OSError as error:
            raise BackendError(f'uploading {bucket}/{name} failed: {error}') from error

    def remove(self, bucket:str, names:list[str]) -> None:
        for name in names:
            try:
                os.remove(self.path(bucket, name))
            except FileNotFoundError:
                continue
            except OSError as error:
                raise BackendError(f'removing {bucket}/{name} failed: {error}') from error

    def get_public_url(self, bucket:str, name:str) -> str:
        return f'{self.url_prefix}/{bucket}/{name}'


def create_backends(config:dict[str, Any]) -> tuple[RecordStore, ObjectStore]:
    if config.get('SUPABASE_URL') and config.get('SUPABASE_KEY'):
        client : Client = create_client(config['SUPABASE_URL'], config['SUPABASE_KEY'])
        return SupabaseRecordStore(client), SupabaseObjectStore(client)
    return SqlRecordStore(), LocalObjectStore(config['MEDIA_DIR'])
