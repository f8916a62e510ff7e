import pytest

from a_core.results import Rejection
from a_e2ee.keys import enable_e2ee
from a_rtchat import service
from a_rtchat.documents import ENCRYPTED_PREVIEW, GROUP_RECEIVER, TOMBSTONE_TEXT, member_state


@pytest.fixture
def direct(db, alice, bob):
    return service.create_direct_chat(db, alice, "bob").value


@pytest.fixture
def group(db, alice, bob, carol):
    return service.create_group_chat(db, alice, "Team", "", ["bob", "carol"]).value


def _chat(db, chat_id):
    return db.data(f"chats/{chat_id}")


def _message(db, chat_id, message_id):
    return db.data(f"chats/{chat_id}/messages/{message_id}")


def _message_count(db, chat_id):
    return len(list(db.children(f"chats/{chat_id}/messages")))


# -------------------------- chat creation --------------------------

def test_direct_chat_is_one_per_pair(db, alice, bob, direct):
    again = service.create_direct_chat(db, bob, "alice")
    assert again.value == direct
    data = _chat(db, direct)
    assert data["type"] == "direct"
    assert data["unreadCounts"] == {"alice": 0, "bob": 0}
    assert data["archivedStatus"] == {"alice": False, "bob": False}


def test_direct_chat_found_without_pair_key(db, alice, bob):
    db.seed("chats/legacy", {"type": "direct", "participants": ["bob", "alice"]})
    assert service.create_direct_chat(db, alice, "bob").value == "legacy"


def test_cannot_chat_with_self(db, alice):
    assert service.create_direct_chat(db, alice, "alice").error == Rejection.NOT_FOUND.value


def test_group_creator_is_sole_admin(db, alice, group):
    data = _chat(db, group)
    assert data["admins"] == ["alice"]
    assert data["participants"] == ["alice", "bob", "carol"]
    assert data["lastMessage"] == "Team group created"
    assert set(data["mutedStatus"]) == {"alice", "bob", "carol"}


def test_group_needs_a_name(db, alice):
    assert service.create_group_chat(db, alice, "  ").error == Rejection.EMPTY_MESSAGE.value


# -------------------------- sending --------------------------

def test_unread_counts_track_sends_and_reads(db, alice, bob, direct):
    for text in ("one", "two", "three"):
        assert service.send_message(db, alice, direct, text, "bob").success

    assert member_state(_chat(db, direct), "bob").unread == 3
    assert member_state(_chat(db, direct), "alice").unread == 0

    service.mark_messages_as_read(db, bob, direct)
    assert member_state(_chat(db, direct), "bob").unread == 0


def test_send_updates_preview(db, alice, direct):
    mid = service.send_message(db, alice, direct, "hello", "bob").value
    data = _chat(db, direct)
    assert data["lastMessage"] == "hello"
    assert data["lastMessageSender"] == "alice"
    assert data["lastMessageId"] == mid
    assert _message(db, direct, mid)["status"] == "sent"


def test_group_send_counts_every_other_member(db, alice, group):
    mid = service.send_message(db, alice, group, "hi all", "ignored")
    assert _message(db, group, mid.value)["receiverId"] == GROUP_RECEIVER
    data = _chat(db, group)
    assert data["unreadCounts"] == {"alice": 0, "bob": 1, "carol": 1}


def test_send_rejections(db, alice, bob, carol, direct, anonymous):
    assert service.send_message(db, alice, direct, "   ", "bob").error == Rejection.EMPTY_MESSAGE.value
    assert service.send_message(db, carol, direct, "hi", "bob").error == Rejection.NOT_PARTICIPANT.value
    assert service.send_message(db, alice, "missing", "hi", "bob").error == Rejection.NOT_FOUND.value
    assert service.send_message(db, alice, direct, "hi", "carol").error == Rejection.NOT_PARTICIPANT.value
    assert service.send_message(db, anonymous, direct, "hi", "bob").error == Rejection.NOT_AUTHENTICATED.value
    assert _message_count(db, direct) == 0


def test_blocked_peers_cannot_message(db, alice, bob, make_user, direct):
    make_user("bob", blockedUsers=["alice"])
    result = service.send_message(db, alice, direct, "hi", "bob")
    assert result.error == Rejection.BLOCKED.value


def test_self_destruct_time_is_stored(db, clock, alice, direct):
    expires = clock.now.replace(hour=13)
    mid = service.send_message(db, alice, direct, "soon gone", "bob", expires_at=expires).value
    assert _message(db, direct, mid)["expiresAt"] == expires


# -------------------------- encryption on send --------------------------

def test_direct_message_is_encrypted_when_both_have_keys(db, alice, bob, direct):
    enable_e2ee(db, alice)
    enable_e2ee(db, bob)

    mid = service.send_message(db, alice, direct, "secret plans", "bob").value

    stored = _message(db, direct, mid)
    assert stored["isEncrypted"] is True
    assert stored["text"] != "secret plans"
    assert stored["iv"]
    assert stored["senderPublicKey"] == db.data("users/alice")["publicKey"]
    assert _chat(db, direct)["lastMessage"] == ENCRYPTED_PREVIEW


def test_plaintext_downgrade_when_peer_has_no_key(db, alice, direct):
    enable_e2ee(db, alice)
    mid = service.send_message(db, alice, direct, "plain", "bob").value
    stored = _message(db, direct, mid)
    assert stored["isEncrypted"] is False
    assert stored["text"] == "plain"


def test_required_encryption_rejects_plaintext(db, settings, alice, direct):
    settings.E2EE_REQUIRE_ENCRYPTION = True
    result = service.send_message(db, alice, direct, "plain", "bob")
    assert result.error == Rejection.ENCRYPTION_UNAVAILABLE.value
    assert _message_count(db, direct) == 0


def test_reply_snapshot_text_hidden_when_encrypted(db, alice, bob, direct):
    enable_e2ee(db, alice)
    enable_e2ee(db, bob)
    reply = {"messageId": "m0", "text": "the original words", "senderDisplayName": "Bob"}
    mid = service.send_message(db, alice, direct, "answer", "bob", reply_to=reply).value
    assert _message(db, direct, mid)["replyTo"]["text"] == ENCRYPTED_PREVIEW


# -------------------------- edit / delete windows --------------------------

def test_edit_allowed_just_inside_window(db, clock, alice, direct):
    mid = service.send_message(db, alice, direct, "typo", "bob").value
    clock.advance(minutes=14, seconds=59)
    assert service.edit_message(db, alice, direct, mid, "fixed").success
    stored = _message(db, direct, mid)
    assert stored["text"] == "fixed"
    assert stored["isEdited"] is True
    assert stored["editedAt"] == clock.now


def test_edit_rejected_after_window(db, clock, alice, direct):
    mid = service.send_message(db, alice, direct, "typo", "bob").value
    clock.advance(minutes=15, seconds=1)
    assert service.edit_message(db, alice, direct, mid, "fixed").error == Rejection.EXPIRED.value
    assert _message(db, direct, mid)["text"] == "typo"


def test_only_sender_edits(db, alice, bob, direct):
    mid = service.send_message(db, alice, direct, "mine", "bob").value
    assert service.edit_message(db, bob, direct, mid, "yours").error == Rejection.NOT_SENDER.value
    assert service.edit_message(db, alice, direct, "nope", "x").error == Rejection.NOT_FOUND.value


def test_edit_keeps_encryption(db, alice, bob, direct):
    enable_e2ee(db, alice)
    enable_e2ee(db, bob)
    mid = service.send_message(db, alice, direct, "first", "bob").value
    old_cipher = _message(db, direct, mid)["text"]

    assert service.edit_message(db, alice, direct, mid, "second").success
    stored = _message(db, direct, mid)
    assert stored["isEncrypted"] is True
    assert stored["text"] not in (old_cipher, "second")


def test_delete_window_boundaries(db, clock, alice, direct):
    early = service.send_message(db, alice, direct, "a", "bob").value
    late = service.send_message(db, alice, direct, "b", "bob").value
    clock.advance(minutes=59, seconds=59)
    assert service.delete_message(db, alice, direct, early).success
    clock.advance(seconds=2)
    assert service.delete_message(db, alice, direct, late).error == Rejection.EXPIRED.value


def test_delete_tombstones_and_refreshes_preview(db, alice, bob, direct):
    enable_e2ee(db, alice)
    enable_e2ee(db, bob)
    mid = service.send_message(db, alice, direct, "oops", "bob").value

    assert service.delete_message(db, alice, direct, mid).success
    stored = _message(db, direct, mid)
    assert stored["text"] == TOMBSTONE_TEXT
    assert stored["deletedAt"] is not None
    assert stored["isEncrypted"] is False
    assert stored["iv"] is None
    assert _chat(db, direct)["lastMessage"] == TOMBSTONE_TEXT


def test_deleted_message_stays_deleted(db, alice, direct):
    mid = service.send_message(db, alice, direct, "gone", "bob").value
    service.delete_message(db, alice, direct, mid)
    assert service.delete_message(db, alice, direct, mid).error == Rejection.DELETED.value
    assert service.edit_message(db, alice, direct, mid, "back").error == Rejection.DELETED.value
    assert _message(db, direct, mid)["deletedAt"] is not None


def test_only_sender_deletes(db, alice, bob, direct):
    mid = service.send_message(db, alice, direct, "mine", "bob").value
    assert service.delete_message(db, bob, direct, mid).error == Rejection.NOT_SENDER.value


# -------------------------- reactions --------------------------

def test_reactions_are_idempotent(db, alice, bob, direct):
    mid = service.send_message(db, alice, direct, "nice", "bob").value
    service.add_reaction(db, bob, direct, mid, "👍")
    service.add_reaction(db, bob, direct, mid, "👍")
    service.add_reaction(db, alice, direct, mid, "👍")
    assert _message(db, direct, mid)["reactions"]["👍"] == ["bob", "alice"]

    service.remove_reaction(db, bob, direct, mid, "👍")
    service.remove_reaction(db, bob, direct, mid, "👍")
    assert _message(db, direct, mid)["reactions"]["👍"] == ["alice"]


def test_reaction_on_missing_message(db, alice, direct):
    assert service.add_reaction(db, alice, direct, "nope", "👍").error == Rejection.NOT_FOUND.value


def test_reactions_need_membership(db, alice, carol, direct):
    mid = service.send_message(db, alice, direct, "members only", "bob").value
    assert service.add_reaction(db, carol, direct, mid, "👍").error == Rejection.NOT_PARTICIPANT.value
    assert _message(db, direct, mid)["reactions"] == {}


# -------------------------- forwarding --------------------------

def test_forward_copies_body_to_each_destination(db, alice, bob, carol, direct, group):
    mid = service.send_message(db, alice, direct, "look at this", "bob").value

    result = service.forward_message(db, alice, direct, mid, [group])

    assert result.success
    new_id = result.destinations[group].value
    copy = _message(db, group, new_id)
    assert copy["text"] == "look at this"
    assert copy["forwardedFrom"] == direct
    assert copy["receiverId"] == GROUP_RECEIVER
    assert _chat(db, group)["unreadCounts"]["carol"] == 1


def test_forward_of_deleted_message_writes_nothing(db, alice, direct, group):
    mid = service.send_message(db, alice, direct, "gone", "bob").value
    service.delete_message(db, alice, direct, mid)

    result = service.forward_message(db, alice, direct, mid, [group])

    assert not result.success
    assert result.error == Rejection.DELETED.value
    assert _message_count(db, group) == 0


def test_forward_reports_each_destination(db, alice, bob, carol, direct, group):
    other = service.create_direct_chat(db, alice, "carol").value
    mid = service.send_message(db, alice, direct, "fan out", "bob").value
    db.fail_writes_under(f"chats/{other}/messages")

    result = service.forward_message(db, alice, direct, mid, [group, other, "missing"])

    assert not result.success
    assert result.error == Rejection.PARTIAL_FAILURE.value
    assert result.destinations[group].success
    assert result.destinations[other].error == Rejection.UNAVAILABLE.value
    assert result.destinations["missing"].error == Rejection.NOT_FOUND.value


def test_forward_into_blocked_direct_chat_is_refused(db, alice, bob, carol, make_user, direct, group):
    other = service.create_direct_chat(db, alice, "carol").value
    mid = service.send_message(db, alice, group, "pass it on", GROUP_RECEIVER).value
    make_user("bob", blockedUsers=["alice"])

    result = service.forward_message(db, alice, group, mid, [direct, other])

    assert result.error == Rejection.PARTIAL_FAILURE.value
    assert result.destinations[direct].error == Rejection.BLOCKED.value
    assert result.destinations[other].success
    assert _message_count(db, direct) == 0


def test_forward_keeps_ciphertext_verbatim(db, alice, bob, direct, group):
    enable_e2ee(db, alice)
    enable_e2ee(db, bob)
    mid = service.send_message(db, alice, direct, "sealed", "bob").value
    original = _message(db, direct, mid)

    new_id = service.forward_message(db, alice, direct, mid, [group]).destinations[group].value
    copy = _message(db, group, new_id)
    assert (copy["text"], copy["iv"], copy["isEncrypted"]) == (original["text"], original["iv"], True)
    assert _chat(db, group)["lastMessage"] == ENCRYPTED_PREVIEW


# -------------------------- group membership --------------------------

def test_only_admins_add_members(db, alice, bob, make_user, group):
    make_user("dave")
    assert service.add_group_member(db, bob, group, "dave").error == Rejection.NOT_ADMIN.value
    assert service.add_group_member(db, alice, group, "dave").success
    assert service.add_group_member(db, alice, group, "dave").error == Rejection.ALREADY_EXISTS.value
    data = _chat(db, group)
    assert "dave" in data["participants"]
    assert data["unreadCounts"]["dave"] == 0


def test_membership_ops_need_a_group(db, alice, direct):
    assert service.add_group_member(db, alice, direct, "carol").error == Rejection.NOT_GROUP.value
    assert service.leave_group(db, alice, direct).error == Rejection.NOT_GROUP.value


def test_last_admin_cannot_leave(db, alice, bob, group):
    assert service.leave_group(db, alice, group).error == Rejection.LAST_ADMIN.value
    assert service.make_admin(db, alice, group, "bob").success
    assert service.make_admin(db, alice, group, "bob").error == Rejection.ALREADY_ADMIN.value
    assert service.leave_group(db, alice, group).success
    data = _chat(db, group)
    assert data["admins"] == ["bob"]
    assert "alice" not in data["participants"]


def test_removed_member_entries_are_retired(db, alice, bob, group):
    service.send_message(db, alice, group, "hi", GROUP_RECEIVER)
    assert service.remove_group_member(db, alice, group, "bob").success
    data = _chat(db, group)
    assert "bob" not in data["participants"]
    for name in ("unreadCounts", "archivedStatus", "mutedStatus", "pinnedStatus"):
        assert "bob" not in data[name]


def test_non_admin_can_only_remove_self(db, bob, group):
    assert service.remove_group_member(db, bob, group, "carol").error == Rejection.NOT_ADMIN.value
    assert service.remove_group_member(db, bob, group, "bob").success


def test_update_group_info(db, alice, bob, group):
    assert service.update_group_info(db, bob, group, name="Mine").error == Rejection.NOT_ADMIN.value
    assert service.update_group_info(db, alice, group, name="Renamed", description="about").success
    data = _chat(db, group)
    assert (data["name"], data["description"]) == ("Renamed", "about")


# -------------------------- per-user flags --------------------------

def test_toggles_touch_only_callers_entry(db, alice, bob, direct):
    assert service.set_archived(db, alice, direct, True).success
    assert service.set_muted(db, alice, direct, True).success
    assert service.set_pinned(db, alice, direct, True).success

    data = _chat(db, direct)
    assert member_state(data, "alice").archived and member_state(data, "alice").muted and member_state(data, "alice").pinned
    bob_state = member_state(data, "bob")
    assert not (bob_state.archived or bob_state.muted or bob_state.pinned)


def test_toggle_requires_membership(db, carol, direct):
    assert service.set_muted(db, carol, direct, True).error == Rejection.NOT_PARTICIPANT.value


def test_receipts_move_forward_only(db, alice, bob, direct):
    first = service.send_message(db, alice, direct, "1", "bob").value
    service.mark_messages_as_read(db, bob, direct)
    second = service.send_message(db, alice, direct, "2", "bob").value

    service.mark_messages_delivered(db, bob, direct)

    assert _message(db, direct, first)["status"] == "read"
    assert _message(db, direct, second)["status"] == "delivered"


def test_sender_receipts_untouched_by_own_read(db, alice, direct):
    mid = service.send_message(db, alice, direct, "1", "bob").value
    service.mark_messages_as_read(db, alice, direct)
    assert _message(db, direct, mid)["status"] == "sent"


def test_pin_and_unpin_message(db, alice, bob, direct):
    mid = service.send_message(db, alice, direct, "remember", "bob").value
    assert service.pin_message(db, bob, direct, mid).success
    assert _message(db, direct, mid)["isPinned"] is True
    assert service.unpin_message(db, bob, direct, mid).success
    assert _message(db, direct, mid)["isPinned"] is False
    assert service.pin_message(db, bob, direct, "nope").error == Rejection.NOT_FOUND.value


# -------------------------- clearing / deleting --------------------------

def test_clear_history_tombstones_in_batches(db, settings, alice, direct):
    settings.FIRESTORE_BATCH_SIZE = 2
    for i in range(5):
        service.send_message(db, alice, direct, f"m{i}", "bob")

    result = service.clear_chat_history(db, alice, direct)

    assert result.value == 5
    assert db.batch_sizes == [2, 2, 1]
    texts = {data["text"] for _, data in db.children(f"chats/{direct}/messages")}
    assert texts == {TOMBSTONE_TEXT}
    assert _chat(db, direct)["participants"] == ["alice", "bob"]


def test_delete_chat_removes_it_for_everyone(db, alice, bob, direct):
    service.send_message(db, alice, direct, "bye", "bob")
    assert service.delete_chat(db, bob, direct).success
    data = _chat(db, direct)
    assert data["participants"] == []
    assert data["deletedBy"] == {"bob": True}
    assert service.send_message(db, alice, direct, "hello?", "bob").error == Rejection.NOT_PARTICIPANT.value
    # A fresh chat is created on next contact
    assert service.create_direct_chat(db, alice, "bob").value != direct
