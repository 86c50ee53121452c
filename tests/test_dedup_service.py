import pytest

from relay.config import Settings
from relay.services import dedup_service
from relay.services.dedup_service import DedupGate


class TestDedupGate:
    @pytest.mark.asyncio
    async def test_second_delivery_is_duplicate(self, fake_redis):
        gate = DedupGate(fake_redis, ttl_seconds=600)

        assert await gate.is_duplicate("Ev1") is False
        assert await gate.is_duplicate("Ev1") is True

    @pytest.mark.asyncio
    async def test_distinct_ids_are_both_fresh(self, fake_redis):
        gate = DedupGate(fake_redis, ttl_seconds=600)

        assert await gate.is_duplicate("Ev1") is False
        assert await gate.is_duplicate("Ev2") is False

    @pytest.mark.asyncio
    async def test_writes_prefixed_key_with_ttl(self, fake_redis):
        redis_client = fake_redis
        gate = DedupGate(redis_client, ttl_seconds=600)

        await gate.is_duplicate("Ev1")

        assert redis_client.calls == [("evt_Ev1", "1", 600, True)]

    @pytest.mark.asyncio
    async def test_missing_event_id_skips_store(self, fake_redis):
        redis_client = fake_redis
        gate = DedupGate(redis_client)

        assert await gate.is_duplicate(None) is False
        assert await gate.is_duplicate("") is False
        assert redis_client.calls == []

    @pytest.mark.asyncio
    async def test_fails_open_when_store_unavailable(self, broken_redis):
        gate = DedupGate(broken_redis)

        assert await gate.is_duplicate("Ev1") is False
        assert await gate.is_duplicate("Ev1") is False

    @pytest.mark.asyncio
    async def test_fails_open_without_store(self):
        gate = DedupGate(None)

        assert await gate.is_duplicate("Ev1") is False


class TestFromSettings:
    def test_no_redis_url_gives_gate_without_store(self):
        gate = DedupGate.from_settings(Settings(_env_file=None, redis_url=None, dedup_ttl_seconds=42))

        assert gate.redis_client is None
        assert gate.ttl_seconds == 42

    def test_redis_client_is_reused_for_same_url(self, monkeypatch):
        monkeypatch.setattr(dedup_service, "_redis_client", None)
        monkeypatch.setattr(dedup_service, "_redis_url", None)

        first = dedup_service.get_redis_client("redis://localhost:6379/0", 0.3)
        second = dedup_service.get_redis_client("redis://localhost:6379/0", 0.3)

        assert first is second
