import copy
import json
from types import SimpleNamespace

import httpx
import pytest
import stripe

import src.utils.notify as notify_utils
import src.utils.postmark as postmark_utils
import src.utils.shippo as shippo_utils
import src.utils.supabase as supabase_utils

WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_SECRET = "internal-secret"
ADMIN_KEY = "admin-key"

MUTATING_OPS = ("insert", "update", "upsert", "delete")


# ---------- in-memory Supabase ----------


class FakeQuery:
    def __init__(self, db, table, op, payload=None, columns="*", on_conflict=None, ignore_duplicates=False):
        self.db = db
        self.table = table
        self.op = op
        self.payload = payload
        self.columns = columns
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        self.filters = []
        self._order = None
        self._limit = None

    def _add(self, fn):
        self.filters.append(fn)
        return self

    def eq(self, col, val):
        return self._add(lambda r: r.get(col) == val)

    def neq(self, col, val):
        return self._add(lambda r: r.get(col) != val)

    def in_(self, col, vals):
        vals = list(vals)
        return self._add(lambda r: r.get(col) in vals)

    def lt(self, col, val):
        return self._add(lambda r: r.get(col) is not None and r.get(col) < val)

    def lte(self, col, val):
        return self._add(lambda r: r.get(col) is not None and r.get(col) <= val)

    def gt(self, col, val):
        return self._add(lambda r: r.get(col) is not None and r.get(col) > val)

    def gte(self, col, val):
        return self._add(lambda r: r.get(col) is not None and r.get(col) >= val)

    def is_(self, col, val):
        if val in ("null", None):
            return self._add(lambda r: r.get(col) is None)
        return self._add(lambda r: r.get(col) == val)

    def order(self, col, desc=False):
        self._order = (col, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _match(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        if self.op in MUTATING_OPS:
            self.db.ops.append((self.table, self.op, copy.deepcopy(self.payload)))

        if self.op == "select":
            out = [copy.deepcopy(r) for r in rows if self._match(r)]
            if self._order:
                col, desc = self._order
                out.sort(key=lambda r: str(r.get(col) or ""), reverse=desc)
            if self._limit:
                out = out[: self._limit]
            return SimpleNamespace(data=out)

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for item in items:
                row = dict(item)
                row.setdefault("id", f"{self.table}-{len(rows) + 1}")
                rows.append(row)
                out.append(copy.deepcopy(row))
            return SimpleNamespace(data=out)

        if self.op == "update":
            out = []
            for r in rows:
                if self._match(r):
                    r.update(copy.deepcopy(self.payload))
                    out.append(copy.deepcopy(r))
            return SimpleNamespace(data=out)

        if self.op == "upsert":
            key = self.on_conflict or "id"
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for item in items:
                existing = next((r for r in rows if r.get(key) == item.get(key)), None)
                if existing is not None:
                    if self.ignore_duplicates:
                        continue
                    existing.update(copy.deepcopy(item))
                    out.append(copy.deepcopy(existing))
                else:
                    row = dict(item)
                    row.setdefault("id", f"{self.table}-{len(rows) + 1}")
                    rows.append(row)
                    out.append(copy.deepcopy(row))
            return SimpleNamespace(data=out)

        if self.op == "delete":
            kept = [r for r in rows if not self._match(r)]
            removed = [r for r in rows if self._match(r)]
            self.db.tables[self.table] = kept
            return SimpleNamespace(data=removed)

        raise AssertionError(f"unsupported op {self.op}")


class FakeTable:
    def __init__(self, db, name):
        self.db = db
        self.name = name

    def select(self, columns="*"):
        return FakeQuery(self.db, self.name, "select", columns=columns)

    def insert(self, payload):
        return FakeQuery(self.db, self.name, "insert", payload)

    def update(self, payload):
        return FakeQuery(self.db, self.name, "update", payload)

    def upsert(self, payload, on_conflict="", ignore_duplicates=False, **kwargs):
        return FakeQuery(
            self.db, self.name, "upsert", payload,
            on_conflict=on_conflict or None, ignore_duplicates=ignore_duplicates,
        )

    def delete(self):
        return FakeQuery(self.db, self.name, "delete")


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.ops = []

    def table(self, name):
        return FakeTable(self, name)

    def rows(self, name):
        return self.tables.get(name, [])

    def row(self, name, **match):
        for r in self.rows(name):
            if all(r.get(k) == v for k, v in match.items()):
                return r
        return None

    def seed(self, name, *rows):
        self.tables.setdefault(name, []).extend(dict(r) for r in rows)

    def mutations(self):
        return [op for op in self.ops if op[1] in MUTATING_OPS]


# ---------- Stripe ----------


class StripeRecorder:
    def __init__(self):
        self.sessions = []
        self.refunds = []
        self.transfers = []
        self.session_error = None
        self.refund_error = None
        self.transfer_error = None

    def create_session(self, **kwargs):
        if self.session_error:
            raise self.session_error
        self.sessions.append(kwargs)
        n = len(self.sessions)
        return {"id": f"cs_test_{n}", "url": f"https://checkout.stripe.com/c/pay/cs_test_{n}"}

    def create_refund(self, **kwargs):
        if self.refund_error:
            raise self.refund_error
        self.refunds.append(kwargs)
        return {
            "id": f"re_test_{len(self.refunds)}",
            "amount": kwargs.get("amount"),
            "status": "succeeded",
        }

    def create_transfer(self, **kwargs):
        if self.transfer_error:
            raise self.transfer_error
        self.transfers.append(kwargs)
        return {"id": f"tr_test_{len(self.transfers)}", "amount": kwargs["amount"]}


# ---------- outbound HTTP ----------


class HttpRecorder:
    def __init__(self, status_code=200):
        self.requests = []
        self.status_code = status_code

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode() or "{}")
        self.requests.append(SimpleNamespace(url=str(request.url), headers=request.headers, json=body))
        return httpx.Response(self.status_code, json={"ok": True})

    def factory(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    @property
    def payloads(self):
        return [r.json for r in self.requests]


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("INTERNAL_API_SECRET", INTERNAL_SECRET)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("SITE_URL", "https://hemline.test")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    for name in (
        "POSTMARK_SERVER_TOKEN",
        "SHIPPO_WEBHOOK_SECRET",
        "PLATFORM_FEE_RATE",
        "STRIPE_CURRENCY",
        "ADMIN_SECRET",
        "CART_HOLD_MINUTES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def db(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(supabase_utils, "_client", fake)
    return fake


@pytest.fixture(autouse=True)
def stripe_api(monkeypatch):
    recorder = StripeRecorder()
    monkeypatch.setattr(stripe.checkout.Session, "create", recorder.create_session)
    monkeypatch.setattr(stripe.Refund, "create", recorder.create_refund)
    monkeypatch.setattr(stripe.Transfer, "create", recorder.create_transfer)
    return recorder


@pytest.fixture(autouse=True)
def notifications(monkeypatch):
    recorder = HttpRecorder()
    monkeypatch.setattr(notify_utils, "_client", recorder.factory)
    return recorder


@pytest.fixture(autouse=True)
def emails(monkeypatch):
    recorder = HttpRecorder()
    monkeypatch.setattr(postmark_utils, "_client", recorder.factory)
    return recorder


@pytest.fixture(autouse=True)
def shippo_http(monkeypatch):
    recorder = HttpRecorder(status_code=201)
    monkeypatch.setattr(shippo_utils, "_client", recorder.factory)
    return recorder


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as c:
        # fresh limiter per test so counts never leak between tests
        app.state.rate_limiter = None
        yield c


@pytest.fixture
def clock_at(monkeypatch):
    """Freeze src.utils.clock.utcnow at the given datetime."""
    import src.utils.clock as clock

    def _freeze(dt):
        monkeypatch.setattr(clock, "utcnow", lambda: dt)
        return dt

    return _freeze
