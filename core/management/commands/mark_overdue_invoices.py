from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from sales.services import mark_overdue_invoices


class Command(BaseCommand):
    help = "Move pending invoices whose due date has passed to overdue."

    def add_arguments(self, parser):
        parser.add_argument("--as-of", dest="as_of", help="Reference date (YYYY-MM-DD). Defaults to today.")

    def handle(self, *args, **options):
        as_of = None
        if options.get("as_of"):
            try:
                as_of = parse_date(options["as_of"])
            except ValueError as exc:
                raise CommandError(f"--as-of is not a valid date: {exc}") from exc
            if as_of is None:
                raise CommandError("--as-of must be a YYYY-MM-DD date.")

        updated = mark_overdue_invoices(as_of)
        self.stdout.write(self.style.SUCCESS(f"Marked {updated} invoice(s) overdue."))
