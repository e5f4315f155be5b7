from __future__ import annotations

import random
from datetime import datetime
from types import SimpleNamespace

import pytest
from supabase import AuthError, PostgrestAPIError, StorageException

from config import Settings

PROJECT_URL = "https://proj.supabase.co"
UNIQUE_KEYS = {"presences": ("badgeId", "timestamp")}


def _comparable(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).replace(tzinfo=None)
        except ValueError:
            return value
    return value


class FakeQuery:
    def __init__(self, client: "FakeClient", table: str):
        self.client = client
        self.table = table
        self.op = "select"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.negate_next = False
        self.orders = []
        self.bounds = None
        self.max_rows = None
        self.count = None
        self.head = False

    def select(self, *columns, count=None, head=None):
        self.op, self.count, self.head = "select", count, bool(head)
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, data):
        self.op, self.payload = "update", data
        return self

    def upsert(self, rows, on_conflict=None):
        rows = rows if isinstance(rows, list) else [rows]
        self.op, self.payload, self.on_conflict = "upsert", rows, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    @property
    def not_(self):
        self.negate_next = True
        return self

    def _filter(self, test):
        if self.negate_next:
            self.negate_next = False
            self.filters.append(lambda r: not test(r))
        else:
            self.filters.append(test)
        return self

    def eq(self, col, value):
        return self._filter(lambda r: r.get(col) == value)

    def gte(self, col, value):
        return self._filter(lambda r: r.get(col) is not None and _comparable(r[col]) >= _comparable(value))

    def lte(self, col, value):
        return self._filter(lambda r: r.get(col) is not None and _comparable(r[col]) <= _comparable(value))

    def in_(self, col, values):
        return self._filter(lambda r: r.get(col) in values)

    def ilike(self, col, pattern):
        needle = pattern.strip("%").lower()
        return self._filter(lambda r: needle in str(r.get(col) or "").lower())

    def is_(self, col, value):
        return self._filter(lambda r: r.get(col) is None if value == "null" else r.get(col) == value)

    def order(self, col, desc=False):
        self.orders.append((col, desc))
        return self

    def range(self, start, end):
        self.bounds = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def _matching(self):
        return [r for r in self.client.tables.setdefault(self.table, []) if all(f(r) for f in self.filters)]

    def execute(self):
        self.client.calls.append((self.table, self.op, self.bounds, tuple(self.orders)))
        if self.table in self.client.errors:
            raise self.client.errors[self.table]
        rows = self.client.tables.setdefault(self.table, [])

        if self.op == "select":
            data = self._matching()
            if self.client.unordered_scans:
                # without ORDER BY the database may return rows in any order, per request
                self.client.rng.shuffle(data)
            for col, desc in reversed(self.orders):
                data.sort(key=lambda r: (r.get(col) is None, r.get(col) or ""), reverse=desc)
            total = len(data)
            if self.bounds:
                data = data[self.bounds[0]:self.bounds[1] + 1]
            if self.max_rows:
                data = data[:self.max_rows]
            if self.head:
                data = []
            return SimpleNamespace(data=[dict(r) for r in data], count=total if self.count else None)

        if self.op == "insert":
            new = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for row in new:
                if self._conflicts(row):
                    raise PostgrestAPIError({"message": "duplicate key value violates unique constraint",
                                             "code": "23505"})
                out.append(self.client.add(self.table, row))
            return SimpleNamespace(data=out)

        if self.op == "upsert":
            out = []
            keys = tuple(self.on_conflict.split(",")) if self.on_conflict else ("id",)
            for row in self.payload:
                existing = next((r for r in rows if all(r.get(k) == row.get(k) for k in keys)), None)
                if existing is not None:
                    existing.update(row)
                    out.append(dict(existing))
                else:
                    out.append(self.client.add(self.table, row))
            return SimpleNamespace(data=out)

        if self.op == "update":
            out = []
            for r in self._matching():
                r.update(self.payload)
                out.append(dict(r))
            return SimpleNamespace(data=out)

        matched = self._matching()
        self.client.tables[self.table] = [r for r in rows if r not in matched]
        return SimpleNamespace(data=matched)

    def _conflicts(self, row):
        keys = UNIQUE_KEYS.get(self.table)
        if not keys:
            return False
        return any(all(r.get(k) == row.get(k) for k in keys) for r in self.client.tables[self.table])


class FakeRpc:
    def __init__(self, client, name, params):
        self.client, self.name, self.params = client, name, params

    def execute(self):
        self.client.rpc_calls.append((self.name, self.params))
        result = self.client.rpc_results.get(self.name)
        if isinstance(result, Exception):
            raise result
        return SimpleNamespace(data=result)


class FakeBucket:
    def __init__(self, storage, name):
        self.storage, self.name = storage, name

    def upload(self, path, data, file_options=None):
        if (self.name, path) in self.storage.files:
            raise StorageException({"statusCode": 409, "error": "Duplicate", "message": "exists"})
        self.storage.files[(self.name, path)] = (data, file_options)
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        self.storage.url_calls += 1
        return f"{PROJECT_URL}/storage/v1/object/public/{self.name}/{path}"

    def remove(self, paths):
        for p in paths:
            self.storage.files.pop((self.name, p), None)
        return [{"name": p} for p in paths]


class FakeStorage:
    def __init__(self):
        self.files = {}
        self.url_calls = 0

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeAuth:
    def __init__(self):
        self.users = {}
        self.signed_in = None
        self.password_updates = []

    def sign_in_with_password(self, credentials):
        user = self.users.get(credentials["email"])
        if user is None or user["password"] != credentials["password"]:
            raise AuthError("Invalid login credentials", None)
        self.signed_in = user
        return SimpleNamespace(user=SimpleNamespace(id=user["id"], email=credentials["email"]))

    def sign_up(self, credentials):
        uid = f"user-{len(self.users) + 1}"
        self.users[credentials["email"]] = {"id": uid, "password": credentials["password"],
                                            "data": credentials.get("options", {}).get("data")}
        return SimpleNamespace(user=SimpleNamespace(id=uid, email=credentials["email"]))

    def update_user(self, attributes):
        self.password_updates.append(attributes["password"])
        return SimpleNamespace(user=self.signed_in)

    def sign_out(self):
        self.signed_in = None


class FakeFunctions:
    def __init__(self):
        self.invocations = []
        self.error = None

    def invoke(self, name, invoke_options=None):
        if self.error:
            raise self.error
        self.invocations.append((name, invoke_options["body"]))
        return b'{"ok": true}'


class FakeClient:
    """Just enough of the supabase Client surface for the data-access modules."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls = []
        self.errors = {}
        self.rpc_calls = []
        self.rpc_results = {}
        self.storage = FakeStorage()
        self.auth = FakeAuth()
        self.functions = FakeFunctions()
        self.unordered_scans = False
        self.rng = random.Random(7)
        self._next_id = {}

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def add(self, table, row):
        self._next_id[table] = self._next_id.get(table, 0) + 1
        stored = {"id": self._next_id[table], **row}
        self.tables.setdefault(table, []).append(stored)
        return dict(stored)

    def seed(self, table, rows):
        return [self.add(table, r) for r in rows]


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def settings():
    return Settings(supabase_url=PROJECT_URL, supabase_key="anon-key", app_url="https://app.bodyforce.test")
