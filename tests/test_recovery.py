"""
Tests for coherence_sync.recovery

Covers:
- Code format and normalization
- Idempotent assignment per visitor
- Code-space exhaustion
- Redemption into a signed grant
- HTTP channel error mapping (httpx.MockTransport)
- Visitor ownership and reuse only for the same uid
- HTTP channel against the real app (httpx.ASGITransport)
"""

import random
import re

import httpx
import pytest

from coherence_sync import config as cfg
from coherence_sync.errors import RecoveryCodeInvalid, RecoveryError
from coherence_sync.recovery import (
    AccessCodeService,
    HttpRecoveryChannel,
    RecoveryGrant,
    generate_code,
    normalize_code,
)

CODE_RE = re.compile(r"^[ABCDEFGHJKMNPQRSTUVWXYZ23456789]{3}-[ABCDEFGHJKMNPQRSTUVWXYZ23456789]{3}$")


class ConstantRandom(random.Random):
    """Always picks the first letter of the alphabet."""

    def choice(self, seq):
        return seq[0]


@pytest.fixture
def service(store, minter):
    return AccessCodeService(store, minter, rng=random.Random(7))


class TestCodes:

    def test_format(self):
        rng = random.Random(1)
        for _ in range(50):
            assert CODE_RE.match(generate_code(rng))

    def test_secure_default(self):
        assert CODE_RE.match(generate_code())

    def test_normalize(self):
        assert normalize_code("  k7p-3qx \n") == "K7P-3QX"
        assert normalize_code(None) == ""


class TestAccessCodeService:

    @pytest.mark.asyncio
    async def test_assign_writes_both_sides(self, service, store, clock):
        code = await service.assign("uid-1", "visitor-1")

        entry = await store.get(cfg.ACCESS_CODE_COLLECTION, code)
        assert entry["uid"] == "uid-1"
        assert entry["visitorId"] == "visitor-1"
        assert entry["createdAt"] == clock.now
        observer = await store.get(cfg.OBSERVER_COLLECTION, "visitor-1")
        assert observer["accessCode"] == code

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, service):
        first = await service.assign("uid-1", "visitor-1")
        second = await service.assign("uid-1", "visitor-1")
        assert first == second
        assert service.stats == {"assigned": 1, "reused": 1, "recovered": 0, "rejected": 0}

    @pytest.mark.asyncio
    async def test_code_of_another_uid_is_not_reused(self, service, store):
        first = await service.assign("uid-1", "visitor-1")
        second = await service.assign("uid-2", "visitor-1")
        assert second != first
        assert (await store.get(cfg.ACCESS_CODE_COLLECTION, second))["uid"] == "uid-2"

    @pytest.mark.asyncio
    async def test_owns_visitor(self, service, store):
        await store.set(cfg.MAPPING_COLLECTION, "uid-1", {"visitorId": "visitor-1"})
        assert await service.owns_visitor("uid-1", "visitor-1")
        assert await service.owns_visitor("uid-2", "uid-2")
        assert not await service.owns_visitor("uid-2", "visitor-1")
        assert not await service.owns_visitor("uid-1", "visitor-9")

    @pytest.mark.asyncio
    async def test_stale_code_is_replaced(self, service, store):
        first = await service.assign("uid-1", "visitor-1")
        await store.delete(cfg.ACCESS_CODE_COLLECTION, first)
        second = await service.assign("uid-1", "visitor-1")
        assert second != first

    @pytest.mark.asyncio
    async def test_exhaustion(self, store, minter):
        service = AccessCodeService(store, minter, rng=ConstantRandom())
        await store.set(cfg.ACCESS_CODE_COLLECTION, "AAA-AAA", {"uid": "someone"})
        with pytest.raises(RecoveryError):
            await service.assign("uid-2", "visitor-2")

    @pytest.mark.asyncio
    async def test_recover(self, service, minter):
        code = await service.assign("uid-1", "visitor-1")
        grant = await service.recover(f" {code.lower()} ")
        assert grant.visitor_id == "visitor-1"
        assert minter.verify(grant.token) == "uid-1"

    @pytest.mark.asyncio
    async def test_unknown_code(self, service):
        with pytest.raises(RecoveryCodeInvalid) as exc:
            await service.recover("ABC-DEF")
        assert str(exc.value) == "Signal frequency invalid or expired."
        assert service.stats["rejected"] == 1


class TestHttpRecoveryChannel:

    def channel(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://recovery.test")
        return HttpRecoveryChannel(client=client)

    @pytest.mark.asyncio
    async def test_grant(self, minter):
        token, expires_at = minter.mint("uid-1")

        def handler(request):
            assert request.url.path == "/api/v1/recovery/recover"
            return httpx.Response(200, json=RecoveryGrant(token, "visitor-1", expires_at).to_dict())

        grant = await self.channel(handler).recover("abc-def")
        assert grant.token == token
        assert grant.visitor_id == "visitor-1"
        assert grant.expires_at == expires_at

    @pytest.mark.asyncio
    async def test_404_is_invalid_code(self):
        channel = self.channel(lambda request: httpx.Response(404, json={"detail": "nope"}))
        with pytest.raises(RecoveryCodeInvalid):
            await channel.recover("abc-def")

    @pytest.mark.asyncio
    async def test_server_error(self):
        channel = self.channel(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(RecoveryError):
            await channel.recover("abc-def")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RecoveryError):
            await self.channel(handler).assign("uid-1", "visitor-1", token="t")

    @pytest.mark.asyncio
    async def test_assign_sends_bearer_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"code": "ABC-DEF", "visitorId": "visitor-1"})

        assert await self.channel(handler).assign("uid-1", "visitor-1", token="tok") == "ABC-DEF"
        assert seen["auth"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_assign_without_token(self):
        channel = self.channel(lambda request: httpx.Response(200, json={"code": "ABC-DEF"}))
        with pytest.raises(RecoveryError):
            await channel.assign("uid-1", "visitor-1")

    @pytest.mark.asyncio
    async def test_assign_refused(self):
        channel = self.channel(lambda request: httpx.Response(401, json={"detail": "no"}))
        with pytest.raises(RecoveryError):
            await channel.assign("uid-1", "visitor-1", token="t")

    @pytest.mark.asyncio
    async def test_against_app(self, store, minter):
        from api.server import create_app

        app = create_app(store=store, minter=minter)
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://recovery.test")
        channel = HttpRecoveryChannel(client=client)

        await store.set(cfg.MAPPING_COLLECTION, "uid-1", {"visitorId": "visitor-1"})
        token, _ = minter.mint("uid-1")
        code = await channel.assign("uid-1", "visitor-1", token=token)
        grant = await channel.recover(code)
        assert grant.visitor_id == "visitor-1"
        assert minter.verify(grant.token) == "uid-1"

        with pytest.raises(RecoveryCodeInvalid):
            await channel.recover("ZZZ-ZZZ")
        await client.aclose()
