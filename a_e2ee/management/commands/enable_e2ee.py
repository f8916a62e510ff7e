from django.core.management.base import BaseCommand, CommandError

from a_core.context import ClientContext
from a_core.firebase_admin_client import get_db
from a_users.device_store import DeviceStore
from a_e2ee.keys import enable_e2ee, reset_e2ee_keys


class Command(BaseCommand):
    help = (
        "Generate an E2EE key pair for a user on this device: the public key is "
        "published to users/<uid>, the private key stays in the local device store."
    )

    def add_arguments(self, parser):
        parser.add_argument("uid", help="Firebase uid to generate keys for")
        parser.add_argument(
            "--reset",
            action="store_true",
            help="Rotate existing keys (older encrypted messages become unreadable).",
        )
        parser.add_argument(
            "--yes",
            action="store_true",
            help="Confirm a --reset without prompting.",
        )

    def handle(self, *args, **opts):
        ctx = ClientContext(uid=opts["uid"], device=DeviceStore())
        db = get_db()

        if opts["reset"]:
            result = reset_e2ee_keys(db, ctx, confirm=opts["yes"])
        else:
            result = enable_e2ee(db, ctx)

        if not result.success:
            raise CommandError(result.message)
        self.stdout.write(self.style.SUCCESS(f"E2EE ready for {ctx.uid}: publicKey={result.value[:16]}…"))
