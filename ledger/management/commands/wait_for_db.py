import time

from django.core.management.base import BaseCommand, CommandError
from django.db import connections
from django.db.utils import OperationalError


class Command(BaseCommand):
    help = "Waits for the ledger database to accept connections"

    def add_arguments(self, parser):
        parser.add_argument("--database", default="default", help="Database alias to check.")
        parser.add_argument(
            "--timeout",
            type=int,
            default=60,
            help="Give up after this many seconds (0 waits forever).",
        )
        parser.add_argument(
            "--interval", type=float, default=1.0, help="Seconds between attempts."
        )

    def handle(self, *args, **options):
        alias = options["database"]
        interval = options["interval"]
        deadline = time.monotonic() + options["timeout"] if options["timeout"] else None

        self.stdout.write(f"Waiting for database '{alias}'...")
        while True:
            try:
                connections[alias].ensure_connection()
                break
            except OperationalError:
                if deadline is not None and time.monotonic() >= deadline:
                    raise CommandError(f"Database '{alias}' unavailable after {options['timeout']}s.")
                self.stdout.write(
                    self.style.WARNING(f"Database unavailable, waiting {interval:g} second(s)...")
                )
                time.sleep(interval)
        self.stdout.write(self.style.SUCCESS("Database available!"))
