import time
from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from payments import services
from payments.integrations.eps import get_client
from payments.models import EpsTransaction

class Command(BaseCommand):
    help = "Verify EPS transactions the buyer never returned from and update local orders"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=15)

    def handle(self, *args, **opts):
        cutoff = timezone.now() - timezone.timedelta(minutes=opts["older_than_minutes"])
        qs = (
            EpsTransaction.objects.select_related("combined_order")
            .filter(status=EpsTransaction.REDIRECTED, updated_at__lt=cutoff)
            .order_by("updated_at")[:opts["max"]]
        )
        txns = list(qs)
        if not txns:
            self.stdout.write(self.style.SUCCESS("No pending EPS transactions to reconcile."))
            return

        try:
            client = get_client()
        except ImproperlyConfigured as e:
            raise CommandError(str(e))

        for txn in txns:
            verification = client.verify_transaction(txn.merchant_transaction_id)
            if not services.verification_available(verification):
                self.stdout.write(self.style.WARNING(
                    f"{txn.merchant_transaction_id}: {verification.get('error')} {verification.get('message', '')}".rstrip()
                ))
            elif services.verification_succeeded(verification):
                services.mark_paid(txn.combined_order, verification)
                txn.status = EpsTransaction.PAID
                txn.verification = verification
                txn.save(update_fields=["status", "verification", "updated_at"])
                self.stdout.write(self.style.SUCCESS(f"{txn.merchant_transaction_id} -> paid"))
            elif verification.get("Status"):
                services.mark_failed(txn.combined_order, verification)
                txn.status = EpsTransaction.FAILED
                txn.verification = verification
                txn.save(update_fields=["status", "verification", "updated_at"])
                self.stdout.write(self.style.SUCCESS(f"{txn.merchant_transaction_id} -> failed ({verification['Status']})"))
            else:
                self.stdout.write(self.style.WARNING(f"{txn.merchant_transaction_id}: no Status in response"))
            time.sleep(opts["sleep"])
