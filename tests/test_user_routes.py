"""
tests/test_user_routes.py -- Integration tests for profile, avatar, feed and follow routes.

Coverage:
  - GET /users lists users without credential fields
  - GET /users/{id}: 401 without auth, is_self true/false, 404 missing, 400 malformed
  - PUT /users/{id}: merge-patch, avatar upload + resize, non-image rejected with
    avatar unchanged, 403 for another user's profile, 409 on taken email
  - PUT /users/{id}: a saved avatar is removed again when the row update fails
  - DELETE /users/{id}: 403 for another user (target remains), self delete works
  - Follow / unfollow: both sides updated, feed excludes followed user until unfollowed,
    self-follow 400
"""

from __future__ import annotations

import io

import pytest
from PIL import Image

from core.config import get_settings

MISSING_ID = "0" * 32


def _png(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(10, 120, 200)).save(buf, "PNG")
    return buf.getvalue()


class TestListAndProfile:
    def test_list_users_hides_credentials(self, api_client, register) -> None:
        client, _, _ = api_client
        member = register("lister")
        resp = client.get("/api/v1/users")
        assert resp.status_code == 200
        rows = {row["id"]: row for row in resp.json()}
        assert member.id in rows
        assert set(rows[member.id]) == {"id", "name", "email", "created_at", "updated_at"}

    def test_profile_requires_auth(self, api_client, register) -> None:
        client, _, _ = api_client
        member = register("private")
        assert client.get(f"/api/v1/users/{member.id}").status_code == 401

    def test_own_profile_is_self(self, api_client, register) -> None:
        client, _, _ = api_client
        member = register("selfie")
        resp = client.get(f"/api/v1/users/{member.id}", headers=member.headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == member.id
        assert data["is_self"] is True
        assert "hashed_password" not in data

    def test_other_profile_is_not_self(self, api_client, register) -> None:
        client, _, _ = api_client
        viewer = register("viewer")
        other = register("other")
        resp = client.get(f"/api/v1/users/{other.id}", headers=viewer.headers)
        assert resp.status_code == 200
        assert resp.json()["is_self"] is False

    def test_missing_profile_404(self, api_client, register) -> None:
        client, _, _ = api_client
        viewer = register("seeker")
        resp = client.get(f"/api/v1/users/{MISSING_ID}", headers=viewer.headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["message"] == "No user found"

    def test_malformed_id_400(self, api_client, register) -> None:
        client, _, _ = api_client
        viewer = register("typo")
        resp = client.get("/api/v1/users/not-an-id", headers=viewer.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_id"


class TestUpdateProfile:
    def test_merge_patch(self, api_client, register) -> None:
        client, store, _ = api_client
        member = register("patchy")
        before = store.get_by_id(member.id)
        resp = client.put(f"/api/v1/users/{member.id}", data={"about": "hi there"}, headers=member.headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["about"] == "hi there"
        assert data["name"] == "patchy"
        assert data["email"] == member.email
        assert data["updated_at"] >= before.updated_at

    def test_invalid_name_rejected(self, api_client, register) -> None:
        client, store, _ = api_client
        member = register("strict")
        resp = client.put(f"/api/v1/users/{member.id}", data={"name": "no"}, headers=member.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Name must be between 4 and 10 characters"
        assert store.get_by_id(member.id).name == "strict"

    def test_avatar_upload_resizes_and_records_path(self, api_client, register) -> None:
        client, store, avatars = api_client
        member = register("painter")
        resp = client.put(
            f"/api/v1/users/{member.id}",
            files={"avatar": ("face.png", _png(600, 400), "image/png")},
            headers=member.headers,
        )
        assert resp.status_code == 200
        path = resp.json()["avatar"]
        assert path.startswith("/static/uploads/avatars/painter-")
        assert store.get_by_id(member.id).avatar == path
        with Image.open(avatars.upload_dir / path.rsplit("/", 1)[-1]) as img:
            assert img.size == (get_settings().avatar_width, round(400 * get_settings().avatar_width / 600))

    def test_non_image_avatar_leaves_path_unchanged(self, api_client, register) -> None:
        client, store, _ = api_client
        member = register("careful")
        first = client.put(
            f"/api/v1/users/{member.id}",
            files={"avatar": ("face.png", _png(300, 300), "image/png")},
            headers=member.headers,
        )
        original = first.json()["avatar"]

        resp = client.put(
            f"/api/v1/users/{member.id}",
            data={"about": "changed"},
            files={"avatar": ("notes.txt", b"just text", "text/plain")},
            headers=member.headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_avatar"
        stored = store.get_by_id(member.id)
        assert stored.avatar == original
        assert stored.about is None

    def test_cannot_update_someone_else(self, api_client, register) -> None:
        client, store, _ = api_client
        owner = register("owner")
        intruder = register("intruder")
        resp = client.put(f"/api/v1/users/{owner.id}", data={"about": "pwned"}, headers=intruder.headers)
        assert resp.status_code == 403
        assert store.get_by_id(owner.id).about is None

    def test_taken_email_conflict(self, api_client, register) -> None:
        client, _, _ = api_client
        first = register("first")
        second = register("second")
        resp = client.put(f"/api/v1/users/{second.id}", data={"email": first.email}, headers=second.headers)
        assert resp.status_code == 409

    def test_vanished_row_is_404_without_orphan_avatar(self, api_client, register, monkeypatch) -> None:
        client, store, avatars = api_client
        member = register("vanish")
        before = set(avatars.upload_dir.iterdir())
        monkeypatch.setattr(store, "update_user", lambda *args, **kwargs: False)
        resp = client.put(
            f"/api/v1/users/{member.id}",
            files={"avatar": ("face.png", _png(300, 300), "image/png")},
            headers=member.headers,
        )
        assert resp.status_code == 404
        assert set(avatars.upload_dir.iterdir()) == before

    def test_store_failure_removes_saved_avatar(self, api_client, register, monkeypatch) -> None:
        client, store, avatars = api_client
        member = register("broken")
        before = set(avatars.upload_dir.iterdir())

        def fail(*args, **kwargs):
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(store, "update_user", fail)
        with pytest.raises(RuntimeError):
            client.put(
                f"/api/v1/users/{member.id}",
                files={"avatar": ("face.png", _png(300, 300), "image/png")},
                headers=member.headers,
            )
        assert set(avatars.upload_dir.iterdir()) == before


class TestDeleteProfile:
    def test_cannot_delete_someone_else(self, api_client, register) -> None:
        client, store, _ = api_client
        target = register("target")
        attacker = register("attacker")
        resp = client.delete(f"/api/v1/users/{target.id}", headers=attacker.headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert store.get_by_id(target.id) is not None

    def test_delete_self(self, api_client, register) -> None:
        client, store, _ = api_client
        member = register("goner")
        friend = register("friend")
        client.post(f"/api/v1/users/{friend.id}/follow", headers=member.headers)

        resp = client.delete(f"/api/v1/users/{member.id}", headers=member.headers)
        assert resp.status_code == 200
        assert resp.json()["id"] == member.id
        assert store.get_by_id(member.id) is None
        assert member.id not in store.get_by_id(friend.id).followers
        assert client.get("/api/v1/me", headers=member.headers).status_code == 401


class TestFollowAndFeed:
    def test_follow_updates_both_sides(self, api_client, register) -> None:
        client, store, _ = api_client
        a = register("fan")
        b = register("star")
        resp = client.post(f"/api/v1/users/{b.id}/follow", headers=a.headers)
        assert resp.status_code == 200
        assert a.id in resp.json()["followers"]
        assert b.id in store.get_by_id(a.id).following
        assert a.id in store.get_by_id(b.id).followers

    def test_feed_excludes_followed_until_unfollowed(self, api_client, register) -> None:
        client, _, _ = api_client
        a = register("reader")
        b = register("writer")

        def feed_ids() -> set[str]:
            resp = client.get(f"/api/v1/users/{a.id}/feed", headers=a.headers)
            assert resp.status_code == 200
            return {card["id"] for card in resp.json()}

        assert b.id in feed_ids()
        assert a.id not in feed_ids()

        client.post(f"/api/v1/users/{b.id}/follow", headers=a.headers)
        assert b.id not in feed_ids()

        resp = client.delete(f"/api/v1/users/{b.id}/follow", headers=a.headers)
        assert resp.status_code == 200
        assert a.id not in resp.json()["followers"]
        assert b.id in feed_ids()

    def test_feed_cards_are_projected(self, api_client, register) -> None:
        client, _, _ = api_client
        a = register("cards")
        register("shown")
        resp = client.get(f"/api/v1/users/{a.id}/feed", headers=a.headers)
        assert all(set(card) == {"id", "name", "avatar"} for card in resp.json())

    def test_self_follow_rejected(self, api_client, register) -> None:
        client, store, _ = api_client
        a = register("narcissus")
        resp = client.post(f"/api/v1/users/{a.id}/follow", headers=a.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_follow"
        assert store.get_by_id(a.id).following == []

    def test_follow_missing_user_404(self, api_client, register) -> None:
        client, _, _ = api_client
        a = register("lonely")
        resp = client.post(f"/api/v1/users/{MISSING_ID}/follow", headers=a.headers)
        assert resp.status_code == 404

    def test_follow_requires_auth(self, api_client, register) -> None:
        client, _, _ = api_client
        b = register("public")
        assert client.post(f"/api/v1/users/{b.id}/follow").status_code == 401
