"""
Collaborator membership and invite links (service layer, mocked MongoDB).
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from services.collaborators import (
    CollaboratorError,
    add_collaborator,
    change_collaborator_role,
    remove_collaborator,
    list_invites,
    create_invite,
    revoke_invite,
    accept_invite,
    is_invite_expired,
    INVITE_TTL,
    MAX_PENDING_INVITES_PER_ESTATE,
)
from services.entitlements import EntitlementError
from conftest import make_estate, OWNER_ID, EDITOR_ID, VIEWER_ID, ESTATE_ID

PRO_OWNER = {"user_id": OWNER_ID, "email": "owner@example.com", "subscription_plan_id": "pro", "subscription_status": "active"}
FREE_OWNER = {"user_id": OWNER_ID, "email": "owner@example.com", "subscription_status": "free"}


def _db(estate, users=None, modified=1):
    users = users or {}
    db = MagicMock()
    db.estates.find_one = AsyncMock(return_value=estate)
    db.estates.update_one = AsyncMock(return_value=MagicMock(modified_count=modified))

    async def _find_user(query, projection=None):
        return users.get(query.get("user_id"))

    db.users.find_one = AsyncMock(side_effect=_find_user)
    return db


def _patches(db):
    return (
        patch("services.collaborators.database.get_db", return_value=db),
        patch("services.collaborators.log_estate_event", new_callable=AsyncMock),
    )


def _pending(email, token="tok-1", created_at=None, expires_at=None):
    now = datetime.now(timezone.utc)
    return {
        "token": token,
        "email": email,
        "role": "VIEWER",
        "status": "PENDING",
        "created_by": OWNER_ID,
        "created_at": created_at or now,
        "expires_at": expires_at or now + INVITE_TTL,
    }


class TestCollaborators:

    @pytest.mark.asyncio
    async def test_add_requires_pro_limit(self):
        db = _db(make_estate(collaborators=[]), users={OWNER_ID: FREE_OWNER, "u-new": {"user_id": "u-new"}})
        p_db, p_log = _patches(db)
        with p_db, p_log:
            with pytest.raises(EntitlementError):
                await add_collaborator(ESTATE_ID, "u-new", "VIEWER")
        db.estates.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_new_collaborator_logs_event(self):
        db = _db(make_estate(collaborators=[]), users={OWNER_ID: PRO_OWNER, "u-new": {"user_id": "u-new"}})
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            collaborators = await add_collaborator(ESTATE_ID, "u-new", "EDITOR")

        assert [c["user_id"] for c in collaborators] == ["u-new"]
        assert log.await_args.kwargs["type"].value == "COLLABORATOR_ADDED"

    @pytest.mark.asyncio
    async def test_add_unknown_user_is_404(self):
        db = _db(make_estate(collaborators=[]), users={OWNER_ID: PRO_OWNER})
        p_db, p_log = _patches(db)
        with p_db, p_log:
            with pytest.raises(CollaboratorError) as exc:
                await add_collaborator(ESTATE_ID, "ghost", "VIEWER")
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_owner_role_cannot_be_assigned(self):
        with pytest.raises(CollaboratorError):
            await add_collaborator(ESTATE_ID, EDITOR_ID, "OWNER")

    @pytest.mark.asyncio
    async def test_same_role_is_a_no_op(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            await change_collaborator_role(ESTATE_ID, VIEWER_ID, "VIEWER")
        db.estates.update_one.assert_not_called()
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_role_change_records_previous_role(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            collaborators = await change_collaborator_role(ESTATE_ID, VIEWER_ID, "EDITOR")
        assert {c["user_id"]: c["role"] for c in collaborators}[VIEWER_ID] == "EDITOR"
        assert log.await_args.kwargs["meta"]["previous_role"] == "VIEWER"

    @pytest.mark.asyncio
    async def test_remove_guards_owner_and_self(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log:
            with pytest.raises(CollaboratorError):
                await remove_collaborator(ESTATE_ID, OWNER_ID, EDITOR_ID)
            with pytest.raises(CollaboratorError):
                await remove_collaborator(ESTATE_ID, OWNER_ID, OWNER_ID)
            remaining = await remove_collaborator(ESTATE_ID, VIEWER_ID, OWNER_ID)
        assert [c["user_id"] for c in remaining] == [EDITOR_ID]
        query, update = db.estates.update_one.call_args[0]
        assert query == {"estate_id": ESTATE_ID, "collaborators.user_id": VIEWER_ID}
        assert update["$pull"] == {"collaborators": {"user_id": VIEWER_ID}}


class TestConcurrentMembershipChanges:

    @pytest.mark.asyncio
    async def test_add_pushes_with_membership_and_size_guard(self):
        db = _db(make_estate(collaborators=[]), users={OWNER_ID: PRO_OWNER, "u-new": {"user_id": "u-new"}})
        p_db, p_log = _patches(db)
        with p_db, p_log:
            await add_collaborator(ESTATE_ID, "u-new", "VIEWER")

        query, update = db.estates.update_one.call_args[0]
        assert query["collaborators.user_id"] == {"$ne": "u-new"}
        assert query["collaborators.9"] == {"$exists": False}
        assert update["$push"]["collaborators"]["user_id"] == "u-new"

    @pytest.mark.asyncio
    async def test_add_racing_another_add_is_409(self):
        db = _db(make_estate(collaborators=[]), users={OWNER_ID: PRO_OWNER, "u-new": {"user_id": "u-new"}}, modified=0)
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(CollaboratorError) as exc:
                await add_collaborator(ESTATE_ID, "u-new", "VIEWER")
        assert exc.value.status_code == 409
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_role_change_is_pinned_to_previous_role(self):
        db = _db(make_estate(), modified=0)
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(CollaboratorError) as exc:
                await change_collaborator_role(ESTATE_ID, VIEWER_ID, "EDITOR")

        assert exc.value.status_code == 409
        query, update = db.estates.update_one.call_args[0]
        assert query["collaborators"]["$elemMatch"] == {"user_id": VIEWER_ID, "role": "VIEWER"}
        assert update["$set"]["collaborators.$[member].role"] == "EDITOR"
        assert db.estates.update_one.call_args.kwargs["array_filters"] == [{"member.user_id": VIEWER_ID}]
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_remove_already_removed_is_404(self):
        db = _db(make_estate(), modified=0)
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(CollaboratorError) as exc:
                await remove_collaborator(ESTATE_ID, VIEWER_ID, OWNER_ID)
        assert exc.value.status_code == 404
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_new_invite_push_is_guarded_against_duplicates_and_cap(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log:
            await create_invite(ESTATE_ID, PRO_OWNER, "friend@example.com", "VIEWER", "https://app.example.com")

        query, update = db.estates.update_one.call_args[0]
        assert query["invites"]["$not"]["$elemMatch"]["email"] == "friend@example.com"
        assert query["$expr"]["$lt"][1] == MAX_PENDING_INVITES_PER_ESTATE
        assert update["$push"]["invites"]["email"] == "friend@example.com"

    @pytest.mark.asyncio
    async def test_revoke_racing_accept_is_409(self):
        db = _db(make_estate(invites=[_pending("friend@example.com")]), modified=0)
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(CollaboratorError) as exc:
                await revoke_invite(ESTATE_ID, OWNER_ID, token="tok-1")
        assert exc.value.status_code == 409
        log.assert_not_called()


class TestInvites:

    @pytest.mark.asyncio
    async def test_create_invite_requires_pro(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log:
            with pytest.raises(EntitlementError) as exc:
                await create_invite(ESTATE_ID, FREE_OWNER, "friend@example.com", "VIEWER", "https://app.example.com")
        assert exc.value.feature == "collaborator_invites"

    @pytest.mark.asyncio
    async def test_create_invite_builds_link(self):
        db = _db(make_estate())
        p_db, p_log = _patches(db)
        with p_db, p_log:
            payload, created = await create_invite(
                ESTATE_ID, PRO_OWNER, " Friend@Example.com ", "EDITOR", "https://app.example.com/"
            )

        assert created is True
        assert payload["email"] == "friend@example.com"
        assert payload["status"] == "PENDING"
        assert len(payload["token"]) == 48
        assert payload["invite_url"] == f"https://app.example.com/app/estates/{ESTATE_ID}/invites/{payload['token']}"

    @pytest.mark.asyncio
    async def test_reinvite_rotates_token(self):
        estate = make_estate(invites=[_pending("friend@example.com")])
        db = _db(estate)
        p_db, p_log = _patches(db)
        with p_db, p_log:
            payload, created = await create_invite(ESTATE_ID, PRO_OWNER, "friend@example.com", "EDITOR", "https://app.example.com")

        assert created is False
        assert payload["token"] != "tok-1"
        assert payload["previous_role"] == "VIEWER"
        query, update = db.estates.update_one.call_args[0]
        assert query["invites"]["$elemMatch"] == {"token": "tok-1", "status": "PENDING"}
        assert update["$set"]["invites.$[inv].token"] == payload["token"]
        assert "$push" not in update
        assert db.estates.update_one.call_args.kwargs["array_filters"] == [{"inv.token": "tok-1"}]

    @pytest.mark.asyncio
    async def test_cannot_invite_self(self):
        with pytest.raises(CollaboratorError):
            await create_invite(ESTATE_ID, PRO_OWNER, "OWNER@example.com", "VIEWER", "https://app.example.com")

    @pytest.mark.asyncio
    async def test_list_persists_expiry_and_sorts_newest_first(self):
        now = datetime.now(timezone.utc)
        old = _pending("a@example.com", token="old", created_at=now - timedelta(days=10), expires_at=now - timedelta(days=3))
        new = _pending("b@example.com", token="new", created_at=now)
        db = _db(make_estate(invites=[old, new]))
        with patch("services.collaborators.database.get_db", return_value=db):
            invites = await list_invites(ESTATE_ID)

        assert [i["token"] for i in invites] == ["new", "old"]
        assert invites[1]["status"] == "EXPIRED"
        db.estates.update_one.assert_awaited_once()
        update = db.estates.update_one.call_args[0][1]
        assert update["$set"]["invites.$[lapsed].status"] == "EXPIRED"
        lapsed = db.estates.update_one.call_args.kwargs["array_filters"][0]
        assert lapsed["lapsed.status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_revoke_unknown_token_is_quiet(self):
        db = _db(make_estate())
        with patch("services.collaborators.database.get_db", return_value=db):
            assert await revoke_invite(ESTATE_ID, OWNER_ID, token="nope") == {"status": "NOT_FOUND"}

    @pytest.mark.asyncio
    async def test_revoke_pending_invite(self):
        db = _db(make_estate(invites=[_pending("friend@example.com")]))
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            result = await revoke_invite(ESTATE_ID, OWNER_ID, token="tok-1")
        assert result["status"] == "REVOKED"
        assert log.await_args.kwargs["type"].value == "COLLABORATOR_INVITE_REVOKED"

    @pytest.mark.asyncio
    async def test_accept_adds_collaborator(self):
        db = _db(make_estate(collaborators=[], invites=[_pending("friend@example.com")]), users={OWNER_ID: PRO_OWNER})
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            result = await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-friend", "email": "Friend@example.com"})

        assert result == {"estate_id": ESTATE_ID, "role": "VIEWER"}
        query, update = db.estates.update_one.call_args[0]
        assert query["invites"]["$elemMatch"] == {"token": "tok-1", "status": "PENDING"}
        assert query["collaborators.user_id"] == {"$ne": "u-friend"}
        assert update["$push"]["collaborators"]["user_id"] == "u-friend"
        assert update["$set"]["invites.$[inv].status"] == "ACCEPTED"
        assert log.await_args.kwargs["type"].value == "COLLABORATOR_INVITE_ACCEPTED"

    @pytest.mark.asyncio
    async def test_accept_on_free_owner_estate_hits_collaborator_limit(self):
        db = _db(make_estate(collaborators=[], invites=[_pending("friend@example.com")]), users={OWNER_ID: FREE_OWNER})
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(EntitlementError):
                await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-friend", "email": "friend@example.com"})
        db.estates.update_one.assert_not_called()
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_accept_on_full_estate_hits_collaborator_limit(self):
        full = [{"user_id": f"u-{i}", "role": "VIEWER"} for i in range(10)]
        db = _db(make_estate(collaborators=full, invites=[_pending("friend@example.com")]), users={OWNER_ID: PRO_OWNER})
        p_db, p_log = _patches(db)
        with p_db, p_log:
            with pytest.raises(EntitlementError):
                await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-friend", "email": "friend@example.com"})
        db.estates.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_collaborator_accepts_without_limit_check(self):
        estate = make_estate(invites=[{**_pending("viewer@example.com"), "role": "EDITOR"}])
        db = _db(estate, users={OWNER_ID: FREE_OWNER})
        p_db, p_log = _patches(db)
        with p_db, p_log:
            result = await accept_invite(ESTATE_ID, "tok-1", {"user_id": VIEWER_ID, "email": "viewer@example.com"})

        assert result["role"] == "EDITOR"
        query, update = db.estates.update_one.call_args[0]
        assert query["collaborators"]["$elemMatch"] == {"user_id": VIEWER_ID, "role": "VIEWER"}
        assert update["$set"]["collaborators.$[member].role"] == "EDITOR"
        assert "$push" not in update

    @pytest.mark.asyncio
    async def test_invite_accepted_concurrently_is_409(self):
        db = _db(make_estate(collaborators=[], invites=[_pending("friend@example.com")]), users={OWNER_ID: PRO_OWNER}, modified=0)
        p_db, p_log = _patches(db)
        with p_db, p_log as log:
            with pytest.raises(CollaboratorError) as exc:
                await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-friend", "email": "friend@example.com"})
        assert exc.value.status_code == 409
        log.assert_not_called()

    @pytest.mark.asyncio
    async def test_accept_with_other_email_is_403(self):
        db = _db(make_estate(invites=[_pending("friend@example.com")]))
        with patch("services.collaborators.database.get_db", return_value=db):
            with pytest.raises(CollaboratorError) as exc:
                await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-other", "email": "other@example.com"})
        assert exc.value.status_code == 403
        db.estates.update_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_accept_expired_invite_fails(self):
        now = datetime.now(timezone.utc)
        invite = _pending("friend@example.com", expires_at=now - timedelta(minutes=1))
        db = _db(make_estate(invites=[invite]))
        with patch("services.collaborators.database.get_db", return_value=db):
            with pytest.raises(CollaboratorError, match="expired"):
                await accept_invite(ESTATE_ID, "tok-1", {"user_id": "u-friend", "email": "friend@example.com"})


def test_naive_expiry_is_treated_as_utc():
    past = (datetime.now(timezone.utc) - timedelta(hours=1)).replace(tzinfo=None)
    assert is_invite_expired({"status": "PENDING", "expires_at": past})
    assert not is_invite_expired({"status": "ACCEPTED", "expires_at": past})
