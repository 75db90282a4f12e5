"""Tests for logout, sign-out-everywhere, session listing and validity checks."""

from datetime import timedelta

import pytest

from tokenward.service.errors import TokenReusedError, UnavailableError
from tokenward.service.fingerprint import DeviceInfo
from tokenward.storage.errors import StoreUnavailable

LAPTOP = DeviceInfo(user_agent="Mozilla/5.0 (X11; Linux)", device_id="laptop-1")
PHONE = DeviceInfo(user_agent="Mobile Safari", device_id="phone-7")
TABLET = DeviceInfo(user_agent="Tablet", device_id="tablet-2")


async def test_login_refresh_reuse_scenario(manager, users):
    u1 = users.create_user("u1")
    first = manager.issue(u1, LAPTOP)

    second = await manager.refresh(first.refresh_token, LAPTOP)

    assert second.family_id == first.family_id
    assert manager.valid(first.access_token) is True
    with pytest.raises(TokenReusedError):
        await manager.refresh(first.refresh_token, LAPTOP)
    assert manager.valid(second.access_token) is False


class TestRevoke:
    def test_revoke_refresh_token(self, manager, store, user):
        pair = manager.issue(user, LAPTOP)

        assert manager.revoke(pair.refresh_token) is True

        assert store.is_token_revoked(pair.session_id) is True
        assert manager.valid(pair.refresh_token) is False
        assert manager.list_sessions(user.id) == []

    def test_revoke_is_idempotent(self, manager, user):
        pair = manager.issue(user, LAPTOP)

        assert manager.revoke(pair.refresh_token) is True
        assert manager.revoke(pair.refresh_token) is False

    def test_revoke_ignores_access_tokens_and_garbage(self, manager, user):
        pair = manager.issue(user, LAPTOP)

        assert manager.revoke(pair.access_token) is False
        assert manager.revoke("garbage") is False
        assert manager.revoke("") is False
        assert manager.valid(pair.access_token) is True

    def test_revoke_non_ascii_signature_is_a_no_op(self, manager, store, user):
        pair = manager.issue(user, LAPTOP)
        header, payload, _ = pair.refresh_token.split(".")

        assert manager.revoke(f"{header}.{payload}.ééé") is False
        assert store.is_token_revoked(pair.session_id) is False

    def test_revoke_expired_token_is_a_no_op(self, manager, codec):
        token = codec.encode(
            {"typ": "refresh", "sub": "u1", "jti": "jti_old", "fam": "fam_old"},
            timedelta(minutes=1),
            now=0,
        )

        assert manager.revoke(token) is False
        assert manager.revoke(token) is False

    def test_revoke_marker_uses_logout_reason(self, manager, store, user):
        pair = manager.issue(user, LAPTOP)
        manager.revoke(pair.refresh_token)

        markers = [
            marker for shard in store._token_shards for marker in shard.markers.values()
        ]

        assert len(markers) == 1
        assert markers[0].reason == "logout"
        assert markers[0].user_id == user.id
        assert markers[0].expires_at == pair.refresh_token_expires_at

    def test_store_outage_surfaces_as_unavailable(self, manager, store, user, monkeypatch):
        pair = manager.issue(user, LAPTOP)

        def broken(marker):
            raise StoreUnavailable("token store lock timed out")

        monkeypatch.setattr(store, "add_revoked_marker", broken)

        with pytest.raises(UnavailableError):
            manager.revoke(pair.refresh_token)


class TestRevokeAll:
    async def test_revoke_all_user_tokens(self, manager, audit, user):
        laptop = manager.issue(user, LAPTOP)
        phone = manager.issue(user, PHONE)
        rotated = await manager.refresh(laptop.refresh_token, LAPTOP)

        deleted = manager.revoke_all_user_tokens(user.id)

        assert deleted == 3
        assert manager.list_sessions(user.id) == []
        for token in (laptop.access_token, phone.access_token, rotated.access_token):
            assert manager.valid(token) is False
        events = audit.named("tokens_revoked_all")
        assert len(events) == 1
        assert events[0].fields["families_revoked"] == 2

    def test_revoke_all_leaves_other_users_alone(self, manager, users, user):
        other = users.create_user("u2")
        pair = manager.issue(other, LAPTOP)
        manager.issue(user, LAPTOP)

        manager.revoke_all_user_tokens(user.id)

        assert manager.valid(pair.access_token) is True
        assert len(manager.list_sessions(other.id)) == 1

    def test_revoke_all_for_unknown_user(self, manager):
        assert manager.revoke_all_user_tokens("nobody") == 0


class TestRevokeOtherSessions:
    async def test_only_the_kept_session_survives(self, manager, user):
        laptop = manager.issue(user, LAPTOP)
        phone = manager.issue(user, PHONE)
        tablet = manager.issue(user, TABLET)

        revoked = manager.revoke_other_sessions(user.id, phone.session_id)

        assert revoked == 2
        sessions = manager.list_sessions(user.id)
        assert [session.session_id for session in sessions] == [phone.session_id]
        assert manager.valid(laptop.refresh_token) is False
        assert manager.valid(tablet.refresh_token) is False
        rotated = await manager.refresh(phone.refresh_token, PHONE)
        assert rotated.family_id == phone.family_id

    def test_repeat_revokes_nothing_new(self, manager, user):
        keep = manager.issue(user, LAPTOP)
        manager.issue(user, PHONE)

        assert manager.revoke_other_sessions(user.id, keep.session_id) == 1
        assert manager.revoke_other_sessions(user.id, keep.session_id) == 0


class TestRevokeFamily:
    def test_revoke_family(self, manager, audit, user):
        pair = manager.issue(user, LAPTOP)

        assert manager.revoke_family(pair.family_id) is True
        assert manager.revoke_family(pair.family_id) is False

        assert manager.valid(pair.access_token) is False
        events = audit.named("token_family_revoked")
        assert len(events) == 1
        assert events[0].fields["reason"] == "admin"

    def test_unknown_family(self, manager):
        assert manager.revoke_family("fam_missing", reason="incident") is False


class TestListSessions:
    async def test_newest_first_and_only_active(self, manager, user):
        laptop = manager.issue(user, LAPTOP, session_name="laptop")
        phone = manager.issue(user, PHONE, session_name="phone")
        rotated = await manager.refresh(laptop.refresh_token, LAPTOP)

        sessions = manager.list_sessions(user.id)

        assert [session.session_id for session in sessions] == [
            rotated.session_id,
            phone.session_id,
        ]
        assert sessions[0].session_name == "laptop"
        assert sessions[0].device_fingerprint == LAPTOP.fingerprint

    def test_projection_never_contains_tokens(self, manager, user):
        pair = manager.issue(user, LAPTOP)

        payload = manager.list_sessions(user.id)[0].to_dict()

        assert set(payload) == {
            "session_id",
            "session_name",
            "created_at",
            "expires_at",
            "device_fingerprint",
        }
        assert pair.refresh_token not in payload.values()

    def test_revoked_family_sessions_are_hidden(self, manager, user):
        pair = manager.issue(user, LAPTOP)
        manager.revoke_family(pair.family_id)

        assert manager.list_sessions(user.id) == []


class TestValid:
    def test_fresh_tokens_are_valid(self, manager, user):
        pair = manager.issue(user, LAPTOP)

        assert manager.valid(pair.access_token) is True
        assert manager.valid(pair.refresh_token) is True

    def test_undecodable_tokens_are_invalid(self, manager):
        assert manager.valid("garbage") is False
        assert manager.valid("a.b.c") is False

    def test_non_ascii_signature_is_invalid(self, manager, user):
        header, payload, _ = manager.issue(user, LAPTOP).access_token.split(".")

        assert manager.valid(f"{header}.{payload}.ééé") is False

    def test_store_outage_fails_closed(self, manager, store, user, monkeypatch):
        pair = manager.issue(user, LAPTOP)

        def broken(family_id):
            raise StoreUnavailable("token store lock timed out")

        monkeypatch.setattr(store, "is_family_revoked", broken)

        assert manager.valid(pair.access_token) is False
