from django.core.management.base import BaseCommand, CommandError

from sales.reconciliation import verify_invariants


class Command(BaseCommand):
    help = "Recompute stock and credit aggregates and report any mismatch with the stored values."

    def handle(self, *args, **options):
        report = verify_invariants()
        if report.ok:
            self.stdout.write(self.style.SUCCESS("Ledger is consistent."))
            return

        for mismatch in report.mismatches:
            self.stdout.write(
                self.style.ERROR(
                    f"{mismatch.kind} {mismatch.entity}={mismatch.entity_id} expected={mismatch.expected} actual={mismatch.actual}"
                )
            )
        raise CommandError(f"{len(report.mismatches)} ledger invariant violation(s) found.")
