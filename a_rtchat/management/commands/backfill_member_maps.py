# a_rtchat/management/commands/backfill_member_maps.py

from django.conf import settings
from django.core.management.base import BaseCommand
from google.cloud import firestore as _fs

from a_core.firebase_admin_client import get_db
from a_rtchat.documents import MEMBER_MAPS

# Maps whose entries only make sense for current participants
RETIRED_WITH_MEMBER = tuple(MEMBER_MAPS) + ("typingUsers",)


def _build_missing_paths(data: dict) -> dict:
    """
    Field-path updates that give every participant an entry in each per-user
    map and drop entries of users who left. Existing values are never touched.
    """
    data = data or {}
    participants = set(data.get("participants") or [])
    updates = {}

    for name, default in MEMBER_MAPS.items():
        present = data.get(name) or {}
        updates.update({f"{name}.{uid}": default for uid in participants - set(present)})

    for name in RETIRED_WITH_MEMBER:
        stale = set(data.get(name) or {}) - participants
        updates.update({f"{name}.{uid}": _fs.DELETE_FIELD for uid in stale})

    return updates


def _plan(snapshots):
    """(reference, updates) for every chat that needs repair."""
    for snap in snapshots:
        updates = _build_missing_paths(snap.to_dict())
        if updates:
            yield snap, updates


class Command(BaseCommand):
    help = (
        "Give every chat participant an unreadCounts/archivedStatus/mutedStatus/"
        "pinnedStatus entry and drop entries left behind by former members. "
        "Safe to re-run."
    )

    def add_arguments(self, parser):
        parser.add_argument("--collection", default="chats", help="Chat collection (default: chats).")
        parser.add_argument(
            "--batch-size",
            type=int,
            default=getattr(settings, "FIRESTORE_BATCH_SIZE", 400),
            help="Updates per batched write; Firestore caps a batch at 500.",
        )
        parser.add_argument("--dry-run", action="store_true", help="Report only, write nothing.")
        parser.add_argument("--limit", type=int, default=0, help="Chats to scan (0 = all).")

    def _commit(self, batch, size):
        batch.commit()
        self.stdout.write(self.style.SUCCESS(f"Committed {size} updates"))

    def handle(self, *args, **opts):
        db = get_db()
        dry_run = opts["dry_run"]

        query = db.collection(opts["collection"])
        if opts["limit"] > 0:
            query = query.limit(opts["limit"])
        snapshots = list(query.stream())
        self.stdout.write(self.style.NOTICE(f"Scanning {len(snapshots)} chat(s)."))

        plan = list(_plan(snapshots))
        for snap, updates in plan:
            self.stdout.write(f"- {snap.id}: {', '.join(sorted(updates))}")

        if not dry_run:
            step = max(1, opts["batch_size"])
            for start in range(0, len(plan), step):
                chunk = plan[start:start + step]
                batch = db.batch()
                for snap, updates in chunk:
                    batch.update(snap.reference, updates)
                self._commit(batch, len(chunk))

        verb = "would be" if dry_run else "were"
        self.stdout.write(self.style.SUCCESS(f"Done. {len(plan)} chat(s) {verb} updated."))
