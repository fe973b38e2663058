"""
Shared fixtures: an in-memory stand-in for the Supabase query builder, a
scripted Kie.ai session and a Cloudinary mock transport.
"""

import copy
import itertools
import json
import uuid
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from avatar_worker import metrics
from avatar_worker.config import CloudinarySettings, KieSettings, Settings, SupabaseSettings
from avatar_worker.main import build_services


# ═════════════════════════════════════════════════════════════════════════════
# Fake Supabase
# ═════════════════════════════════════════════════════════════════════════════

def _column(row: dict, column: str):
    if "->>" in column:
        parent, key = column.split("->>", 1)
        value = (row.get(parent) or {}).get(key)
        return str(value) if value is not None else None
    return row.get(column)


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self._order = None
        self._limit = None

    def select(self, columns="*"):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: _column(row, column) == value)
        return self

    def is_(self, column, value):
        self.filters.append(lambda row: _column(row, column) is None)
        return self

    def or_(self, expression):
        clauses = [clause.split(".eq.", 1) for clause in expression.split(",")]
        self.filters.append(lambda row: any(str(row.get(c)) == v for c, v in clauses))
        return self

    def contains(self, column, value):
        def matches(row):
            items = row.get(column) or []
            return all(any(sub.items() <= item.items() for item in items) for sub in value)

        self.filters.append(matches)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        self.db.executed.append((self.table, self.op))
        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in items:
                row = copy.deepcopy(item)
                row.setdefault("id", str(uuid.uuid4()))
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return SimpleNamespace(data=inserted)

        matched = [row for row in rows if all(f(row) for f in self.filters)]
        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=copy.deepcopy(matched))


class FakeRpc:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        if self.db.rpc_error:
            raise self.db.rpc_error
        handler = getattr(self.db, f"_rpc_{self.name}")
        return SimpleNamespace(data=handler(self.params))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.executed = []
        self.rpc_error = None

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def set_balance(self, user_id, credits):
        self.rows("credit_balance").append({"user_id": user_id, "credits": credits})

    def balance(self, user_id):
        for row in self.rows("credit_balance"):
            if row["user_id"] == user_id:
                return row["credits"]
        return None

    def _rpc_charge_generation_credits(self, params):
        balance = next((r for r in self.rows("credit_balance") if r["user_id"] == params["p_user_id"]), None)
        if balance is None:
            return {"charged": False, "reason": "no_balance"}
        for tx in self.rows("credit_transactions"):
            if tx["type"] == "debit" and tx["metadata"].get("generation_id") == params["p_generation_id"]:
                return {"charged": False, "reason": "already_charged", "balance_after": balance["credits"]}
        balance["credits"] = max(balance["credits"] - params["p_amount"], 0)
        self.rows("credit_transactions").append({
            "user_id": params["p_user_id"],
            "type": "debit",
            "amount": params["p_amount"],
            "balance_after": balance["credits"],
            "description": params["p_description"],
            "metadata": copy.deepcopy(params["p_metadata"]),
        })
        return {"charged": True, "balance_after": balance["credits"]}


# ═════════════════════════════════════════════════════════════════════════════
# Fake Kie.ai session
# ═════════════════════════════════════════════════════════════════════════════

class FakeHTTPResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (json.dumps(body) if body is not None else "")
        self.headers = headers or {}

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


class FakeKieSession:
    """Records every request; answers from per-path queues or with a fresh task id."""

    def __init__(self):
        self.calls = []
        self.queued = {}
        self._ids = itertools.count(1)

    def queue(self, path, *responses):
        self.queued.setdefault(path, []).extend(responses)

    def request(self, method, url, headers=None, json=None, params=None, timeout=None):
        path = url.split("/api/v1/", 1)[1]
        self.calls.append(SimpleNamespace(method=method, path=path, json=json, params=params, headers=headers))
        pending = self.queued.get(path)
        if pending:
            response = pending.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return FakeHTTPResponse(200, {"code": 200, "msg": "success", "data": {"taskId": f"task-{next(self._ids)}"}})

    def calls_to(self, path):
        return [c for c in self.calls if c.path == path]


# ═════════════════════════════════════════════════════════════════════════════
# Fixtures
# ═════════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def settings():
    return Settings(
        kie=KieSettings(api_key="test-kie-key", api_base="https://api.kie.ai/api/v1", poll_max_retries=0),
        supabase=SupabaseSettings(url="", service_role_key=""),
        cloudinary=CloudinarySettings(cloud_name="demo", api_key="cloud-key", api_secret="cloud-secret"),
        public_base_url="https://worker.test",
        worker_secret="",
        environment="development",
    )


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def kie_session():
    return FakeKieSession()


@pytest.fixture
def cloudinary_uploads():
    return []


@pytest.fixture
def http(cloudinary_uploads):
    def handler(request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        cloudinary_uploads.append(form)
        return httpx.Response(200, json={"public_id": form["public_id"], "resource_type": "video"})

    return httpx.Client(transport=httpx.MockTransport(handler))


@pytest.fixture
def services(settings, db, kie_session, http):
    return build_services(settings, db, kie_session, http)


@pytest.fixture
def make_record(services):
    """Insert a generation row with sensible defaults."""

    def _make(**fields):
        row = {
            "id": str(uuid.uuid4()),
            "user_id": "user-1",
            "image_url": "https://img.test/avatar.png",
            "model": "veo3_fast",
            "aspect_ratio": "16:9",
            "duration": 8,
            "number_of_scenes": 1,
            "scene_prompts": [{"prompt": "Presenter waves", "script": "Hello there"}],
            "current_scene": 1,
            "is_multi_scene": False,
            "video_segments": [],
            "initial_status": "pending",
            "extended_status": "pending",
            "final_video_status": "pending",
            "is_final": False,
            "cancelled": False,
            "retry_count": 0,
            "metadata": {},
        }
        row.update(fields)
        return services.store.create(row)

    return _make


# ── Callback payload builders ──

def veo_success(task_id, url):
    return {"code": 200, "msg": "success", "data": {"taskId": task_id, "info": {"resultUrls": [url]}}}


def veo_failure(task_id, message, code=400):
    return {"code": code, "msg": message, "data": {"taskId": task_id}}


def market_success(task_id, url, encoded=True):
    result = {"resultUrls": [url]}
    return {
        "code": 200,
        "msg": "success",
        "data": {
            "taskId": task_id,
            "state": "success",
            "resultJson": json.dumps(result) if encoded else result,
        },
    }


def market_failure(task_id, message):
    return {"code": 200, "data": {"taskId": task_id, "state": "fail", "failMsg": message}}
