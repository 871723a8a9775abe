"""
Reconciliation Service

Database-driven sweep that repairs what the request paths left behind.
Features:
- Apply recorded successful payments to bills still not marked paid
- Mark unpaid bills past their due date as overdue
- Detect bills settled by more than one payment (refund candidates)
- Verify bill totals against their charge breakdown

The sweep never creates payments and only ever moves a bill to paid
through the same conditional update the request paths use, so running it
concurrently with live traffic is safe. It reads everything from the store
and therefore survives restarts.
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Dict, Optional

from energy_backend.src.billing.shared.config import AMOUNT_TOLERANCE
from energy_backend.src.billing.shared.exceptions import (
    BillingError,
    PaymentNotFoundError,
    ReconciliationError,
    StoreError,
)
from energy_backend.utils.timezone import timezone
from .interfaces import ReconciliationManagerInterface
from .store import SqlBillStore

logger = logging.getLogger(__name__)


class ReconciliationService(ReconciliationManagerInterface):
    """
    Handles bill/payment reconciliation.

    Should be run periodically (the CLI `reconcile` command from cron, or the
    in-process loop when BILLING_RECONCILIATION_INTERVAL_SECONDS is set).

    Usage:
        service = ReconciliationService(store)
        results = await service.run_full_reconciliation()
    """

    def __init__(self, store: SqlBillStore, duplicate_lookback_days: int = 30):
        self.store = store
        self.duplicate_lookback_days = duplicate_lookback_days

    async def reconcile_unreflected_payments(self) -> Dict:
        """
        Settle bills whose successful payment was recorded but never applied.

        Every recorded payment is considered regardless of age, so a bill
        update lost before a restart is still applied on the next run.

        Returns:
            Dict with checked, fixed, already_paid, failed counts
        """
        results = {
            'checked': 0,
            'fixed': 0,
            'already_paid': 0,
            'failed': 0,
            'errors': []
        }
        try:
            payments = await self.store.list_unreflected_payments()
        except StoreError as e:
            logger.error(f"[RECONCILIATION] Could not list unreflected payments: {e.message}")
            results['errors'].append(f"Fatal error: {e.message}")
            return results

        if not payments:
            logger.info("[RECONCILIATION] No unreflected payments found")
            return results

        results['checked'] = len(payments)
        logger.info(f"[RECONCILIATION] Checking {len(payments)} payments whose bill is not paid")

        for payment in payments:
            try:
                changed = await self.store.mark_bill_paid(payment.bill_id, payment.id)
            except BillingError as e:
                results['failed'] += 1
                results['errors'].append(f"Payment {payment.razorpay_payment_id}: {e.message}")
                logger.error(
                    f"[RECONCILIATION] Could not settle bill {payment.bill_id} "
                    f"for payment {payment.razorpay_payment_id}: {e.message}"
                )
                continue

            if changed:
                results['fixed'] += 1
                logger.warning(
                    f"[RECONCILIATION] Bill {payment.bill_id} marked paid from payment "
                    f"{payment.razorpay_payment_id}"
                )
            else:
                results['already_paid'] += 1

        logger.info(
            f"[RECONCILIATION] Complete: checked={results['checked']}, "
            f"fixed={results['fixed']}, failed={results['failed']}"
        )
        return results

    async def retry_bill_update(self, payment_id: str) -> Dict:
        """
        Retry the bill update for one recorded payment.

        Args:
            payment_id: Internal payment id or Razorpay payment id
        """
        try:
            payment = await self.store.get_payment(payment_id)
            if payment is None:
                payment = await self.store.get_payment_by_gateway_id(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            if not payment.is_success():
                raise ReconciliationError(
                    f"Payment status is {payment.status}, only successful payments settle bills",
                    payment_id=payment_id
                )
            if not payment.bill_id:
                raise ReconciliationError("Payment is not linked to a bill", payment_id=payment_id)
            bill = await self.store.get_bill(payment.bill_id)
            if bill is None:
                raise ReconciliationError("Payment is linked to a missing bill", payment_id=payment_id)
            covered = await self.store.successful_payment_total(bill.id)
            if covered < bill.total_amount - AMOUNT_TOLERANCE:
                raise ReconciliationError(
                    f"Successful payments total {covered}, bill total is {bill.total_amount}",
                    payment_id=payment_id
                )

            changed = await self.store.mark_bill_paid(payment.bill_id, payment.id)
        except BillingError as e:
            logger.error(f"[RETRY] Error retrying bill update for payment {payment_id}: {e.message}")
            return {'success': False, 'error': e.message, 'code': e.code}

        action = 'bill_updated' if changed else 'already_paid'
        logger.info(f"[RETRY] Payment {payment_id}: {action}")
        return {'success': True, 'action': action, 'bill_id': payment.bill_id}

    async def mark_overdue_bills(self, today: Optional[date] = None) -> Dict:
        """Move unpaid bills past their due date to overdue."""
        today = today or timezone.today()
        try:
            count = await self.store.mark_overdue_bills(today)
        except StoreError as e:
            logger.error(f"[RECONCILIATION] Overdue marking failed: {e.message}")
            return {'marked_overdue': 0, 'errors': [e.message]}

        if count:
            logger.info(f"[RECONCILIATION] Marked {count} bills overdue as of {today.isoformat()}")
        return {'marked_overdue': count, 'errors': []}

    async def detect_duplicate_settlements(self, days: Optional[int] = None) -> Dict:
        """
        Detect bills that were charged more than once.

        Each duplicate needs a manual refund at the gateway.
        """
        days = days if days is not None else self.duplicate_lookback_days
        since = timezone.now() - timedelta(days=days) if days else None
        results = {
            'duplicates_found': [],
            'errors': []
        }
        try:
            duplicates = await self.store.find_duplicate_settlements(since=since)
        except StoreError as e:
            logger.error(f"[RECONCILIATION] Duplicate detection failed: {e.message}")
            results['errors'].append(e.message)
            return results

        for dup in duplicates:
            logger.error(
                f"[RECONCILIATION] Bill {dup['bill_id']} settled {dup['payment_count']} times: "
                f"{', '.join(p for p in dup['razorpay_payment_ids'] if p)}"
            )
            results['duplicates_found'].append({
                **dup,
                'total_charged': str(dup['total_charged']),
            })
        return results

    async def verify_bill_totals(self) -> Dict:
        """Report bills whose stored total differs from the sum of charges."""
        results = {
            'discrepancies_found': [],
            'errors': []
        }
        try:
            bills = await self.store.list_bills_with_mismatched_totals()
        except StoreError as e:
            results['errors'].append(e.message)
            return results

        for bill in bills:
            logger.warning(
                f"[RECONCILIATION] Bill {bill.bill_number} total {bill.total_amount} "
                f"!= components {bill.components_total}"
            )
            results['discrepancies_found'].append({
                'bill_id': bill.id,
                'bill_number': bill.bill_number,
                'total_amount': str(bill.total_amount),
                'components_total': str(bill.components_total),
            })
        return results

    async def run_full_reconciliation(self) -> Dict:
        """
        Run all reconciliation tasks.

        Returns:
            Dict with all reconciliation results
        """
        logger.info("[RECONCILIATION] Starting full reconciliation run")

        results = {
            'timestamp': timezone.now().isoformat(),
            'unreflected_payments': await self.reconcile_unreflected_payments(),
            'overdue_bills': await self.mark_overdue_bills(),
            'duplicate_check': await self.detect_duplicate_settlements(),
            'total_check': await self.verify_bill_totals()
        }

        logger.info("[RECONCILIATION] Full reconciliation complete")
        return results

    async def run_periodically(self, interval_seconds: int, stop: asyncio.Event) -> None:
        """Run the sweep every `interval_seconds` until `stop` is set."""
        logger.info(f"[RECONCILIATION] Background sweep every {interval_seconds}s")
        while not stop.is_set():
            try:
                await self.run_full_reconciliation()
            except Exception:
                logger.exception("[RECONCILIATION] Sweep run failed, retrying next interval")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
