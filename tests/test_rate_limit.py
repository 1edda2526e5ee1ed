from src.utils.rate_limit import SlidingWindowLimiter, limiter_from_env


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ---------- limiter ----------

def test_limit_is_enforced_per_key():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60, clock=clock)

    assert limiter.hit("1.1.1.1") is None
    assert limiter.hit("1.1.1.1") is None
    assert limiter.hit("1.1.1.1") == 60
    assert limiter.hit("2.2.2.2") is None


def test_slots_free_up_as_the_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60, clock=clock)
    limiter.hit("k")
    clock.now += 30
    limiter.hit("k")

    clock.now += 20
    assert limiter.hit("k") == 10

    clock.now += 10
    assert limiter.hit("k") is None
    assert limiter.hit("k") == 30


def test_reset_clears_all_counts():
    limiter = SlidingWindowLimiter(limit=1, window_seconds=60, clock=FakeClock())
    limiter.hit("k")
    limiter.reset()
    assert limiter.hit("k") is None


def test_limit_read_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "5")
    assert limiter_from_env().limit == 5
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "lots")
    assert limiter_from_env().limit == 30


# ---------- endpoint dependency ----------

def test_cancel_endpoint_returns_429_when_limited(client):
    client.app.state.rate_limiter = SlidingWindowLimiter(limit=1, window_seconds=60, clock=FakeClock())
    body = {"order_id": "HM-NOPE", "buyer_id": "usr_1"}
    headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}

    assert client.post("/api/v1/orders/cancel", json=body, headers=headers).status_code == 404

    res = client.post("/api/v1/orders/cancel", json=body, headers=headers)
    assert res.status_code == 429
    assert res.json()["code"] == "rate_limited"
    assert res.headers["retry-after"] == "60"

    other = {"x-forwarded-for": "198.51.100.2"}
    assert client.post("/api/v1/orders/cancel", json=body, headers=other).status_code == 404
