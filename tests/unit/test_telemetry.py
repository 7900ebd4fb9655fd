import pytest

from agentloop.telemetry import BoundedCache, TelemetryEvent, TelemetrySession


class TestBoundedCache:
    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            BoundedCache(0)

    def test_evicts_least_recently_used(self):
        cache = BoundedCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_put_existing_refreshes(self):
        cache = BoundedCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 10)
        cache.put("c", 3)

        assert cache.get("a") == 10
        assert cache.get("b") is None

    def test_get_or_create_calls_factory_once(self):
        cache = BoundedCache(4)
        calls = []

        def factory():
            calls.append(1)
            return "v"

        assert cache.get_or_create("k", factory) == "v"
        assert cache.get_or_create("k", factory) == "v"
        assert len(calls) == 1

    def test_clear(self):
        cache = BoundedCache(2)
        cache.put("a", 1)
        cache.clear()
        assert len(cache) == 0


class TestTelemetrySession:
    def test_message_id_stable_for_same_content(self):
        session = TelemetrySession()
        first = session.message_id([{"role": "user", "content": "hi"}])
        second = session.message_id([{"role": "user", "content": "hi"}])
        other = session.message_id([{"role": "user", "content": "bye"}])

        assert first == second
        assert first != other

    def test_sessions_do_not_share_ids(self):
        payload = {"tools": []}
        assert (
            TelemetrySession().request_options_id(payload)
            != TelemetrySession().request_options_id(payload)
        )

    def test_cache_capacity_bounds_ids(self):
        session = TelemetrySession(cache_capacity=1)
        first = session.message_id("a")
        session.message_id("b")
        assert session.message_id("a") != first

    def test_send_records_and_exports(self):
        exported = []
        session = TelemetrySession(exporter=exported.append)

        session.send("toolCallingLoop.fetch", {"model": "m"}, {"iteration": 2})

        expected = TelemetryEvent("toolCallingLoop.fetch", {"model": "m"}, {"iteration": 2})
        assert session.events == [expected]
        assert exported == [expected]
