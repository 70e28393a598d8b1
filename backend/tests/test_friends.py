"""
backend/tests/test_friends.py

Purpose:
    Mutual friendships through the /api/users/me/friends routes and the
    friend_service rules behind them.
"""

from __future__ import annotations

import pytest
from bson import ObjectId
from fastapi import HTTPException

from betmenow.routers import user as user_router
from betmenow.services import friend_service


def _as_user(fake_db, uid: str) -> dict:
    return next(u for u in fake_db.users.docs if str(u["_id"]) == uid)


def _pairs(fake_db) -> set[tuple[str, str]]:
    return {(row["user_id"], row["friend_id"]) for row in fake_db.friendships.docs}


@pytest.mark.asyncio
async def test_adding_a_friend_is_mutual(fake_db):
    alice_id = fake_db.add_user("alice")
    bob_id = fake_db.add_user("bob")
    alice = _as_user(fake_db, alice_id)

    added = await user_router.add_to_friends(bob_id, None, user=alice)
    assert (added.id, added.username, added.display_name) == (bob_id, "bob", "Bob")
    assert _pairs(fake_db) == {(alice_id, bob_id), (bob_id, alice_id)}
    assert [e["action"] for e in fake_db.audit_logs.docs] == ["FRIEND_ADDED"]

    bobs = await user_router.my_friends(user=_as_user(fake_db, bob_id))
    assert [f.username for f in bobs] == ["alice"]


@pytest.mark.asyncio
async def test_adding_twice_keeps_one_row_per_direction(fake_db):
    alice_id = fake_db.add_user("alice")
    bob_id = fake_db.add_user("bob")

    await user_router.add_to_friends(bob_id, None, user=_as_user(fake_db, alice_id))
    await user_router.add_to_friends(alice_id, None, user=_as_user(fake_db, bob_id))

    assert len(fake_db.friendships.docs) == 2
    assert [e["action"] for e in fake_db.audit_logs.docs] == ["FRIEND_ADDED"]


@pytest.mark.asyncio
async def test_cannot_befriend_self_or_unknown_users(fake_db):
    alice_id = fake_db.add_user("alice")
    gone_id = fake_db.add_user("gone", is_deleted=True)
    alice = _as_user(fake_db, alice_id)

    with pytest.raises(HTTPException) as exc:
        await user_router.add_to_friends(alice_id, None, user=alice)
    assert exc.value.status_code == 400

    for target in (gone_id, str(ObjectId()), "not-an-id"):
        with pytest.raises(HTTPException) as exc:
            await user_router.add_to_friends(target, None, user=alice)
        assert exc.value.status_code == 404
    assert fake_db.friendships.docs == []


@pytest.mark.asyncio
async def test_removing_a_friend_drops_both_directions(fake_db):
    alice_id = fake_db.add_user("alice")
    bob_id = fake_db.add_user("bob")
    carol_id = fake_db.add_user("carol")
    alice = _as_user(fake_db, alice_id)
    await user_router.add_to_friends(bob_id, None, user=alice)
    await user_router.add_to_friends(carol_id, None, user=alice)

    # Either side can end it
    response = await user_router.remove_from_friends(alice_id, None, user=_as_user(fake_db, bob_id))
    assert response.status_code == 204
    assert _pairs(fake_db) == {(alice_id, carol_id), (carol_id, alice_id)}
    assert fake_db.audit_logs.docs[-1]["action"] == "FRIEND_REMOVED"

    with pytest.raises(HTTPException) as exc:
        await user_router.remove_from_friends(bob_id, None, user=alice)
    assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_friend_list_is_sorted_and_skips_deleted_accounts(fake_db):
    alice_id = fake_db.add_user("alice")
    ids = {name: fake_db.add_user(name) for name in ("zed", "bob", "mia")}
    for friend_id in ids.values():
        await friend_service.add_friend(alice_id, friend_id)
    _as_user(fake_db, ids["mia"])["is_deleted"] = True

    friends = await user_router.my_friends(user=_as_user(fake_db, alice_id))
    assert [f.username for f in friends] == ["bob", "zed"]

    assert await friend_service.list_friends(str(ObjectId())) == []
