from django.core.management.base import BaseCommand

from clinic.services import expire_overdue_cards


class Command(BaseCommand):
    help = "Mark active membership cards past their expiry date as expired"

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="List the cards without changing them")

    def handle(self, *args, **options):
        dry_run = options["dry_run"]
        cards = expire_overdue_cards(dry_run=dry_run)
        for card in cards:
            self.stdout.write(f"{card.card_number} {card.customer.child_name} {card.expiry_date:%Y-%m-%d}")

        verb = "Would expire" if dry_run else "Expired"
        self.stdout.write(self.style.SUCCESS(f"{verb} {len(cards)} card(s)"))
