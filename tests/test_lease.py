"""
Tests for task leases.
"""
from taskfeed.lease import Lease, LeaseManager, lease_id


class TestLeaseManager:
    """Tests for LeaseManager against the memory store."""

    async def test_claim_creates_lease_document(self, store, clock):
        leases = LeaseManager(store, owner="w1", ttl=10.0, clock=clock)

        lease = await leases.claim("o", "T1")

        assert lease.owner == "w1"
        assert lease.attempts == 1
        assert lease.expires_at == clock.now + 10.0
        doc = await store.get("o", lease_id("T1"))
        assert doc["kind"] == "lease"
        assert doc["taskId"] == "T1"

    async def test_live_lease_blocks_other_workers(self, store, clock):
        first = LeaseManager(store, owner="w1", ttl=10.0, clock=clock)
        second = LeaseManager(store, owner="w2", ttl=10.0, clock=clock)

        assert await first.claim("o", "T1") is not None
        assert await second.claim("o", "T1") is None

    async def test_expired_lease_is_taken_over(self, store, clock):
        first = LeaseManager(store, owner="w1", ttl=10.0, clock=clock)
        second = LeaseManager(store, owner="w2", ttl=10.0, clock=clock)
        original = await first.claim("o", "T1")

        clock.advance(11.0)
        taken = await second.claim("o", "T1")

        assert taken.owner == "w2"
        assert taken.attempts == 2
        # The previous holder lost it
        assert await first.renew("o", original) is None

    async def test_renew_extends_expiry(self, store, clock):
        leases = LeaseManager(store, owner="w1", ttl=10.0, clock=clock)
        lease = await leases.claim("o", "T1")

        clock.advance(5.0)
        renewed = await leases.renew("o", lease)

        assert renewed.expires_at == clock.now + 10.0
        assert renewed.revision != lease.revision

    async def test_release_only_by_owner(self, store, clock):
        first = LeaseManager(store, owner="w1", ttl=10.0, clock=clock)
        second = LeaseManager(store, owner="w2", ttl=10.0, clock=clock)
        await first.claim("o", "T1")

        assert await second.release("o", "T1") is False
        assert await first.get("o", "T1") is not None

        assert await second.release("o", "T1", force=True) is True
        assert await first.get("o", "T1") is None
        assert await first.release("o", "T1") is False

    def test_lease_expiry(self):
        lease = Lease(id=lease_id("T1"), task_id="T1", owner="w1", expires_at=100.0)
        assert not lease.is_expired(99.0)
        assert lease.is_expired(100.0)
