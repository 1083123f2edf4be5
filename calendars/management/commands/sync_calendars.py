from django.core.management.base import BaseCommand, CommandError

from accounts.models import ConnectedAccount
from calendars.services.pipeline import run_account_pipeline
from calendars.services.scheduler import run_batch_sync, select_due_accounts
from common.choices import SyncTrigger


class Command(BaseCommand):
    help = "Synchronise calendars now, for one account or for every account that is due."

    def add_arguments(self, parser):
        parser.add_argument("--account", type=int, help="Connected account id to synchronise")
        parser.add_argument("--dry-run", action="store_true", help="List due accounts without syncing")
        parser.add_argument("--batch-size", type=int, default=None)
        parser.add_argument("--delay", type=float, default=None, help="Seconds to wait between batches")

    def handle(self, *args, **options):
        account_id = options.get("account")
        if account_id is not None:
            if not ConnectedAccount.objects.filter(pk=account_id).exists():
                raise CommandError(f"Connected account {account_id} does not exist.")
            result = run_account_pipeline(account_id, SyncTrigger.MANUAL)
            style = self.style.SUCCESS if result.succeeded else self.style.WARNING
            self.stdout.write(
                style(
                    f"Account {account_id}: {result.status} "
                    f"({result.calendars_updated} calendars, {result.events_upserted} events)"
                )
            )
            for error in result.errors:
                self.stdout.write(self.style.ERROR(f"  {error.get('type')}: {error.get('error')}"))
            return

        accounts = select_due_accounts()
        if options.get("dry_run"):
            self.stdout.write(self.style.MIGRATE_HEADING(f"{len(accounts)} account(s) due"))
            for account in accounts:
                self.stdout.write(f"  {account.pk} user={account.user_id} last_synced_at={account.last_synced_at}")
            return

        summary = run_batch_sync(
            accounts=accounts,
            batch_size=options.get("batch_size"),
            delay=options.get("delay"),
            trigger=SyncTrigger.MANUAL,
        )
        self.stdout.write(
            self.style.SUCCESS(
                f"{summary['processed']} processed in {summary['batches']} batch(es): "
                f"{summary['succeeded']} succeeded, {summary['failed']} failed, "
                f"{summary['coalesced']} coalesced"
            )
        )
