"""
Tests for coherence_sync.anchor

Covers:
- Remote mapping wins over the local visitor id
- New mappings are established with a server timestamp
- Admins bypass the mapping
- Store failures keep the local id
- Upgrade capture / clear / collision handling
- Re-anchoring from a recovery grant
"""

from datetime import datetime

import pytest

from coherence_sync import config as cfg
from coherence_sync.anchor import IdentityAnchor, MigrationChannel
from coherence_sync.errors import IdentityCollisionError, TransientStoreError
from coherence_sync.identity import IdentitySession
from coherence_sync.models import MigrationPayload
from storage.memory import MemoryProgressStore


class FailingStore(MemoryProgressStore):

    async def get(self, collection, doc_id):
        raise TransientStoreError("offline")

    async def set(self, collection, doc_id, doc):
        raise TransientStoreError("offline")


@pytest.fixture
def identity(local):
    return IdentitySession(local)


class TestMigrationChannel:

    def test_capture_and_consume_once(self):
        channel = MigrationChannel()
        channel.capture(9, 61.5)
        assert channel.pending == MigrationPayload(day=9, score=61.5)
        assert channel.consume() == MigrationPayload(day=9, score=61.5)
        assert channel.consume() is None


class TestReconcile:

    @pytest.mark.asyncio
    async def test_remote_mapping_overwrites_local(self, store, identity, observer):
        local_id = identity.visitor_id
        await store.set(cfg.MAPPING_COLLECTION, observer.uid, {"visitorId": "visitor-B"})
        anchor = IdentityAnchor(store, identity)
        seen = []
        anchor.add_listener(seen.append)

        result = await anchor.reconcile(observer)

        assert local_id != "visitor-B"
        assert result == "visitor-B"
        assert identity.visitor_id == "visitor-B"
        assert seen == ["visitor-B"]
        assert anchor.reanchored == 1

    @pytest.mark.asyncio
    async def test_matching_mapping_is_a_no_op(self, store, identity, observer):
        await store.set(cfg.MAPPING_COLLECTION, observer.uid, {"visitorId": identity.visitor_id})
        anchor = IdentityAnchor(store, identity)
        await anchor.reconcile(observer)
        assert anchor.reanchored == 0

    @pytest.mark.asyncio
    async def test_missing_mapping_is_established(self, store, identity, observer, clock):
        anchor = IdentityAnchor(store, identity)
        result = await anchor.reconcile(observer)

        mapping = await store.get(cfg.MAPPING_COLLECTION, observer.uid)
        assert result == identity.visitor_id
        assert mapping["visitorId"] == identity.visitor_id
        assert isinstance(mapping["lastUpdated"], datetime)
        assert mapping["lastUpdated"] == clock.now

    @pytest.mark.asyncio
    async def test_admin_skips_mapping(self, store, identity, admin):
        anchor = IdentityAnchor(store, identity)
        await anchor.reconcile(admin)
        assert await store.get(cfg.MAPPING_COLLECTION, admin.uid) is None

    @pytest.mark.asyncio
    async def test_store_failure_keeps_local_id(self, identity, observer):
        anchor = IdentityAnchor(FailingStore(), identity)
        assert await anchor.reconcile(observer) == identity.visitor_id


class TestUpgrade:

    @pytest.mark.asyncio
    async def test_success_clears_payload(self, store, identity, gateway):
        anchor = IdentityAnchor(store, identity)
        anon = await gateway.sign_in_anonymous()
        upgraded = await anchor.upgrade(
            gateway, anon, "password", {"email": "new@d.test", "password": "pw"}, day=4, score=70
        )
        assert upgraded.uid == anon.uid
        assert not upgraded.is_anonymous
        assert anchor.migration.pending is None

    @pytest.mark.asyncio
    async def test_collision_keeps_payload_and_raises(self, store, identity, gateway):
        creds = {"email": "taken@d.test", "password": "pw"}
        await gateway.sign_in_with_credential("password", creds)
        anon = await gateway.sign_in_anonymous()
        anchor = IdentityAnchor(store, identity)

        with pytest.raises(IdentityCollisionError):
            await anchor.upgrade(gateway, anon, "password", creds, day=12, score=55)
        assert anchor.migration.pending == MigrationPayload(day=12, score=55)

    @pytest.mark.asyncio
    async def test_collision_can_switch_principal(self, store, identity, gateway):
        creds = {"email": "taken@d.test", "password": "pw"}
        owner = await gateway.sign_in_with_credential("password", creds)
        anon = await gateway.sign_in_anonymous()
        anchor = IdentityAnchor(store, identity)

        switched = await anchor.upgrade(
            gateway, anon, "password", creds, day=12, score=55, switch_on_collision=True
        )
        assert switched.uid == owner.uid
        assert anchor.migration.pending == MigrationPayload(day=12, score=55)


class TestReanchor:

    @pytest.mark.asyncio
    async def test_adopts_visitor_and_signs_in(self, store, identity, gateway, minter):
        anchor = IdentityAnchor(store, identity)
        token, _ = minter.mint("original-uid")
        principal = await anchor.reanchor(gateway, "visitor-orig", token)
        assert principal.uid == "original-uid"
        assert identity.visitor_id == "visitor-orig"
        assert anchor.reanchored == 1
