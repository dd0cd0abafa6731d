"""
Tests for coherence_sync.identity and coherence_sync.auth

Covers:
- Lazy visitor identity creation and persistence
- Corrupt session blobs are regenerated
- File-backed local state
- Recovery token minting and verification
- Local gateway sign-in, linking and collisions
"""

import json

import pytest

from coherence_sync import config as cfg
from coherence_sync.auth import TokenMinter, credential_key
from coherence_sync.errors import AuthenticationError, IdentityCollisionError
from coherence_sync.identity import FileStateStore, IdentitySession, LocalStateStore
from coherence_sync.models import Role

ADMIN_EMAIL = "admin@delta.test"


class TestIdentitySession:

    def test_created_lazily_and_reused(self, local):
        session = IdentitySession(local)
        assert local.get(cfg.IDENTITY_KEY) is None
        first = session.get()
        assert json.loads(local.get(cfg.IDENTITY_KEY))["visitorId"] == first.visitor_id
        assert session.get() == first

    def test_corrupt_blob_regenerates(self, local):
        local.set(cfg.IDENTITY_KEY, "{not json")
        identity = IdentitySession(local).get()
        assert identity.visitor_id
        assert json.loads(local.get(cfg.IDENTITY_KEY))["visitorId"] == identity.visitor_id

    def test_blob_missing_fields_regenerates(self, local):
        local.set(cfg.IDENTITY_KEY, json.dumps({"visitorId": "only-id"}))
        identity = IdentitySession(local).get()
        assert identity.visitor_id != "only-id"

    def test_adopt_keeps_token(self, local):
        session = IdentitySession(local)
        before = session.get()
        after = session.adopt("remote-visitor")
        assert after.visitor_id == "remote-visitor"
        assert after.visitor_token == before.visitor_token
        assert session.visitor_id == "remote-visitor"


class TestFileStateStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "local_state.json"
        first = IdentitySession(FileStateStore(path)).get()
        second = IdentitySession(FileStateStore(path)).get()
        assert first == second

    def test_remove(self, tmp_path):
        path = tmp_path / "local_state.json"
        store = FileStateStore(path)
        store.set("logout_ghost", "{}")
        store.remove("logout_ghost")
        assert FileStateStore(path).get("logout_ghost") is None

    def test_unreadable_file_starts_empty(self, tmp_path):
        path = tmp_path / "local_state.json"
        path.write_text("garbage")
        assert FileStateStore(path).get(cfg.IDENTITY_KEY) is None


class TestTokenMinter:

    def test_round_trip(self, minter):
        token, expires_at = minter.mint("uid-42")
        assert minter.verify(token) == "uid-42"
        assert expires_at > minter._clock()

    def test_tampered_signature(self, minter):
        token, _ = minter.mint("uid-42")
        with pytest.raises(AuthenticationError):
            minter.verify(token[:-1] + ("0" if token[-1] != "0" else "1"))

    def test_other_secret_rejected(self, minter, clock):
        token, _ = minter.mint("uid-42")
        with pytest.raises(AuthenticationError):
            TokenMinter(secret="other", clock=clock).verify(token)

    def test_expired(self, minter, clock):
        token, _ = minter.mint("uid-42")
        clock.advance(hours=2)
        with pytest.raises(AuthenticationError):
            minter.verify(token)

    def test_malformed(self, minter):
        with pytest.raises(AuthenticationError):
            minter.verify("no-dot-here")


class TestLocalAuthGateway:

    def test_credential_key(self):
        assert credential_key("password", {"email": " A@B.test "}) == "a@b.test"
        assert credential_key("google.com", {"subject": "g-1"}) == "g-1"
        with pytest.raises(ValueError):
            credential_key("password", {})

    @pytest.mark.asyncio
    async def test_anonymous(self, gateway):
        principal = await gateway.sign_in_anonymous()
        assert principal.is_anonymous
        assert principal.role == Role.OBSERVER
        assert gateway.current == principal

    @pytest.mark.asyncio
    async def test_sign_up_then_sign_in(self, gateway):
        creds = {"email": "obs@delta.test", "password": "pw"}
        created = await gateway.sign_in_with_credential("password", creds)
        again = await gateway.sign_in_with_credential("password", creds)
        assert created.uid == again.uid
        assert created.linked_credential_kinds == frozenset({"password"})

    @pytest.mark.asyncio
    async def test_wrong_password(self, gateway):
        await gateway.sign_in_with_credential("password", {"email": "o@d.test", "password": "pw"})
        with pytest.raises(AuthenticationError):
            await gateway.sign_in_with_credential("password", {"email": "o@d.test", "password": "nope"})

    @pytest.mark.asyncio
    async def test_admin_email_gets_admin_role(self, gateway):
        principal = await gateway.sign_in_with_credential(
            "password", {"email": ADMIN_EMAIL, "password": "pw"}
        )
        assert principal.is_admin

    @pytest.mark.asyncio
    async def test_link_in_place(self, gateway):
        anon = await gateway.sign_in_anonymous()
        linked = await gateway.link_credential(anon, "google.com", {"subject": "g-1", "email": "g@d.test"})
        assert linked.uid == anon.uid
        assert not linked.is_anonymous

    @pytest.mark.asyncio
    async def test_link_collision(self, gateway):
        owner = await gateway.sign_in_with_credential("password", {"email": "taken@d.test", "password": "pw"})
        anon = await gateway.sign_in_anonymous()
        with pytest.raises(IdentityCollisionError) as exc:
            await gateway.link_credential(anon, "password", {"email": "taken@d.test", "password": "pw"})
        assert exc.value.existing_uid == owner.uid

    @pytest.mark.asyncio
    async def test_email_bound_to_other_kind_collides(self, gateway):
        await gateway.sign_in_with_credential("password", {"email": "x@d.test", "password": "pw"})
        with pytest.raises(IdentityCollisionError):
            await gateway.sign_in_with_credential("google.com", {"subject": "g-9", "email": "x@d.test"})

    @pytest.mark.asyncio
    async def test_token_sign_in(self, gateway, minter):
        token, _ = minter.mint("recovered-uid")
        principal = await gateway.sign_in_with_token(token)
        assert principal.uid == "recovered-uid"

    @pytest.mark.asyncio
    async def test_listeners_see_sign_out(self, gateway):
        seen = []
        gateway.add_listener(seen.append)
        await gateway.sign_in_anonymous()
        await gateway.sign_out()
        assert seen[-1] is None
        assert gateway.current is None

    def test_local_state_store_is_plain_dict(self):
        store = LocalStateStore()
        store.set("k", "v")
        assert store.get("k") == "v"
        store.remove("missing")
