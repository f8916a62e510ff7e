from a_core.results import Rejection
from a_e2ee.crypto import has_local_key, private_key_key, public_key_for
from a_e2ee.keys import enable_e2ee, reset_e2ee_keys
from a_e2ee.policy import resolve_encryption
from a_users.profiles import get_profile


def test_enable_publishes_public_key_and_keeps_private_local(db, alice):
    result = enable_e2ee(db, alice)

    assert result.success
    published = db.data("users/alice")["publicKey"]
    assert published == result.value
    private = alice.device.get(private_key_key("alice"))
    assert public_key_for(private) == published
    assert "privateKey" not in db.data("users/alice")


def test_enable_is_a_noop_when_keys_match(db, alice):
    first = enable_e2ee(db, alice)
    second = enable_e2ee(db, alice)
    assert second.success
    assert second.value == first.value


def test_enable_refuses_to_silently_replace_keys(db, alice, make_user):
    enable_e2ee(db, alice)
    # Same account on a fresh device: no local private key
    other_device = make_user("alice", publicKey=db.data("users/alice")["publicKey"])
    result = enable_e2ee(db, other_device)
    assert not result.success
    assert result.error == Rejection.CONFIRMATION_REQUIRED.value


def test_reset_requires_confirmation(db, alice):
    enable_e2ee(db, alice)
    before = db.data("users/alice")["publicKey"]

    assert reset_e2ee_keys(db, alice).error == Rejection.CONFIRMATION_REQUIRED.value
    assert db.data("users/alice")["publicKey"] == before

    rotated = reset_e2ee_keys(db, alice, confirm=True)
    assert rotated.success
    assert rotated.value != before


def test_failed_publish_keeps_previous_private_key(db, alice):
    enable_e2ee(db, alice)
    private_before = alice.device.get(private_key_key("alice"))
    public_before = db.data("users/alice")["publicKey"]

    db.fail_writes_under("users/alice")
    result = reset_e2ee_keys(db, alice, confirm=True)

    assert result.error == Rejection.KEY_GENERATION_FAILED.value
    assert alice.device.get(private_key_key("alice")) == private_before
    assert db.data("users/alice")["publicKey"] == public_before


def test_failed_first_publish_leaves_no_key(db, alice):
    db.fail_writes_under("users/alice")
    result = enable_e2ee(db, alice)
    assert result.error == Rejection.KEY_GENERATION_FAILED.value
    assert not has_local_key(alice.device, "alice")


def test_policy_needs_both_keys_and_local_material(db, alice, bob):
    enable_e2ee(db, alice)
    me, peer = get_profile(db, "alice"), get_profile(db, "bob")
    assert not resolve_encryption("direct", me, peer, alice.device).encrypt

    enable_e2ee(db, bob)
    peer = get_profile(db, "bob")
    decision = resolve_encryption("direct", me, peer, alice.device)
    assert decision.encrypt
    assert decision.receiver_public_key == peer.public_key

    assert not resolve_encryption("group", me, peer, alice.device).encrypt
    assert not resolve_encryption("direct", me, peer, bob.device).encrypt


def test_unauthenticated(db, anonymous):
    assert enable_e2ee(db, anonymous).error == Rejection.NOT_AUTHENTICATED.value
