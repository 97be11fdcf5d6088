import sys
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from settings import Settings  # noqa: E402

FIXED_NOW = datetime(2024, 5, 17, 3, 4, 5, 987654, tzinfo=timezone.utc)


def make_sqlite_db(path, rows=("alpha", "beta")):
    """Creates a small real SQLite database with one table."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
        conn.executemany("INSERT INTO items (name) VALUES (?)", [(r,) for r in rows])
        conn.commit()
    finally:
        conn.close()
    return path


@contextmanager
def exclusive_lock(path):
    """Holds a writer's exclusive lock on path, as a busy application would."""
    conn = sqlite3.connect(str(path), isolation_level=None)
    try:
        conn.execute("BEGIN EXCLUSIVE")
        yield conn
    finally:
        conn.execute("ROLLBACK")
        conn.close()


def read_rows(path):
    conn = sqlite3.connect(str(path))
    try:
        return [r[0] for r in conn.execute("SELECT name FROM items ORDER BY id")]
    finally:
        conn.close()


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": f"{code} error"}}, operation)


class FakePaginator:
    def __init__(self, client):
        self.client = client

    def paginate(self, Bucket, Prefix=""):
        if self.client.list_error:
            raise client_error("AccessDenied", "ListObjectsV2")
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        # two pages to exercise pagination
        half = len(keys) // 2
        for chunk in (keys[:half], keys[half:]):
            yield {"Contents": [{"Key": k, "LastModified": self.client.objects[k][1]} for k in chunk]}


class FakeS3:
    """Just enough of the boto3 S3 client for the backup run."""

    def __init__(self, buckets=("backups",), fail_upload=None, deny_create=False,
                 delete_errors=(), list_error=False):
        self.buckets = set(buckets)
        self.objects = {}
        self.fail_upload = fail_upload or (lambda key: False)
        self.deny_create = deny_create
        self.delete_errors = set(delete_errors)
        self.list_error = list_error
        self.head_bucket_calls = 0
        self.created = []
        self.deleted = []

    def head_bucket(self, Bucket):
        self.head_bucket_calls += 1
        if Bucket not in self.buckets:
            raise client_error("404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket, CreateBucketConfiguration=None):
        if self.deny_create:
            raise client_error("AccessDenied", "CreateBucket")
        self.buckets.add(Bucket)
        self.created.append((Bucket, CreateBucketConfiguration))
        return {}

    def upload_fileobj(self, Fileobj, Bucket, Key, Config=None, Callback=None):
        if self.fail_upload(Key):
            raise client_error("InternalError", "PutObject")
        data = Fileobj.read()
        self.objects[Key] = (data, datetime.now(timezone.utc))
        if Callback:
            Callback(len(data))

    def head_object(self, Bucket, Key):
        return {"ETag": '"abc123"', "ResponseMetadata": {"RequestId": "req-1", "HostId": "host-1"}}

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def delete_objects(self, Bucket, Delete):
        errors = []
        for item in Delete["Objects"]:
            key = item["Key"]
            if key in self.delete_errors:
                errors.append({"Key": key, "Code": "AccessDenied", "Message": "denied"})
                continue
            self.objects.pop(key, None)
            self.deleted.append(key)
        response = {"ResponseMetadata": {"RequestId": "req-del"}}
        if errors:
            response["Errors"] = errors
        return response


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def make_settings(tmp_path):
    """Settings factory with credentials filled in and no external tools required."""
    def factory(**overrides):
        base = Settings(
            access_key="key",
            secret_key="secret",
            bucket="backups",
            region="us-east-1",
            prefix="sqlite",
            compression_cmd="",
            scratch_dir=str(tmp_path / "scratch"),
        )
        return replace(base, **overrides)
    return factory
