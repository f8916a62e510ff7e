# a_e2ee/keys.py
import logging

from google.api_core import exceptions as gexc

from a_core.results import OpResult, Rejection
from a_users.firebase_helpers import get_profile_dict, user_ref
from .crypto import generate_key_pair, private_key_key, public_key_for

logger = logging.getLogger(__name__)


def _install_key_pair(db, ctx) -> OpResult:
    try:
        pair = generate_key_pair()
    except (ValueError, TypeError):
        logger.exception("key generation failed for %s", ctx.uid)
        return OpResult.fail(Rejection.KEY_GENERATION_FAILED, "Could not generate encryption keys")

    slot = private_key_key(ctx.uid)
    previous = ctx.device.get(slot)
    ctx.device.set(slot, pair.private_key)
    try:
        user_ref(db, ctx.uid).set({"publicKey": pair.public_key}, merge=True)
    except gexc.GoogleAPICallError as e:
        # Put the old private key back so nothing half-rotated survives.
        if previous is None:
            ctx.device.remove(slot)
        else:
            ctx.device.set(slot, previous)
        logger.warning("publishing public key for %s failed: %s", ctx.uid, e)
        return OpResult.fail(Rejection.KEY_GENERATION_FAILED, "Could not generate encryption keys")

    logger.info("E2EE keys installed for %s", ctx.uid)
    return OpResult.ok(pair.public_key)


def enable_e2ee(db, ctx) -> OpResult:
    """
    Generate and publish a key pair for the caller.

    A no-op when this device already holds the private half of the published
    key. Replacing a published key is a rotation and goes through
    `reset_e2ee_keys`.
    """
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)

    published = get_profile_dict(db, ctx.uid).get("publicKey")
    local = ctx.device.get(private_key_key(ctx.uid))
    if published:
        if local:
            try:
                if public_key_for(local) == published:
                    return OpResult.ok(published)
            except ValueError:
                logger.warning("local private key for %s is unreadable", ctx.uid)
        return OpResult.fail(
            Rejection.CONFIRMATION_REQUIRED,
            "Existing encryption keys would be replaced; older messages will no longer decrypt.",
        )
    return _install_key_pair(db, ctx)


def reset_e2ee_keys(db, ctx, confirm: bool = False) -> OpResult:
    """Rotate keys. Messages encrypted under the old pair become unreadable."""
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    if not confirm:
        return OpResult.fail(
            Rejection.CONFIRMATION_REQUIRED,
            "Resetting keys makes older encrypted messages unreadable. Confirm to continue.",
        )
    return _install_key_pair(db, ctx)
