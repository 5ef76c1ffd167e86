import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from quoteflow.models import Invoice, Quotation, QuotationRequestView, TransitionResult
from quoteflow.services.directory_store import DirectoryStore, directory_store
from quoteflow.services.errors import UnauthorizedError
from quoteflow.services.notification_store import notification_store
from quoteflow.services.notifier import QuotationNotifier
from quoteflow.services.payment_client import PaymentClient, PaymentError, payment_client
from quoteflow.services.quotation_store import QuotationStore, quotation_store
from quoteflow.services.state_machine import (
    PROVIDER_DECLINE,
    REQUESTER_ACCEPT,
    REQUESTER_DECLINE,
    SIBLING_ACCEPTED,
    SUBMIT_QUOTE,
    Caller,
    authorize,
)

logger = logging.getLogger(__name__)


def _parse_reminder_tiers(raw: str) -> List[int]:
    tiers = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            value = int(item)
        except ValueError:
            continue
        if value > 0:
            tiers.add(value)
    return sorted(tiers) or [15, 60]


REMINDER_TIERS = _parse_reminder_tiers(os.getenv("QUOTE_REMINDER_MINUTES", "15,60"))


class QuotationLifecycle:
    def __init__(
        self,
        store: QuotationStore,
        directory: DirectoryStore,
        notifier: QuotationNotifier,
        payments: PaymentClient,
        reminder_tiers: Optional[Sequence[int]] = None,
    ):
        self.store = store
        self.directory = directory
        self.notifier = notifier
        self.payments = payments
        self.reminder_tiers = sorted(reminder_tiers) if reminder_tiers else list(REMINDER_TIERS)

    def _authorize(self, caller: Caller, quotation: Quotation, event: str) -> None:
        request = self.store.get_request(quotation.request_id)
        provider = self.directory.resolve_provider(quotation.provider_id)
        authorize(caller, event, requester_id=request.requester_id, provider_owner_id=provider.owner_user_id)

    def _result(
        self,
        request_id: str,
        quotation: Optional[Quotation] = None,
        warnings: Optional[List[str]] = None,
        invoice: Optional[Invoice] = None,
    ) -> TransitionResult:
        return TransitionResult(
            request=self.store.get_request(request_id),
            status=self.store.get_request_status(request_id),
            quotation=quotation,
            quotations=self.store.list_quotations(request_id),
            warnings=[w for w in warnings or [] if w],
            invoice=invoice,
        )

    def create_request(self, caller: Caller, *, details: str, provider_ids: Sequence[str]) -> TransitionResult:
        request, _ = self.store.create_request(
            requester_id=caller.user_id,
            details=details,
            provider_ids=provider_ids,
        )
        warnings = self.notifier.on_request_created(request.id)
        return self._result(request.id, warnings=warnings)

    def submit_quote(
        self,
        caller: Caller,
        quotation_id: str,
        *,
        price: float,
        timeline: str,
        description: str = "",
        currency: Optional[str] = None,
    ) -> TransitionResult:
        current = self.store.get_quotation(quotation_id)
        self._authorize(caller, current, SUBMIT_QUOTE)
        quotation = self.store.submit_quote(
            quotation_id,
            price=price,
            timeline=timeline,
            description=description,
            currency=currency,
            actor_user_id=caller.user_id,
        )
        warning = self.notifier.on_quote_submitted(quotation_id)
        return self._result(quotation.request_id, quotation=quotation, warnings=[warning] if warning else [])

    def accept_quotation(self, caller: Caller, quotation_id: str) -> TransitionResult:
        current = self.store.get_quotation(quotation_id)
        self._authorize(caller, current, REQUESTER_ACCEPT)
        accepted, rejected_siblings = self.store.accept_quotation(quotation_id, actor_user_id=caller.user_id)

        warnings: List[str] = []
        warning = self.notifier.on_quotation_accepted(accepted.id)
        if warning:
            warnings.append(warning)
        for sibling in rejected_siblings:
            warning = self.notifier.on_quotation_rejected(sibling.id, SIBLING_ACCEPTED)
            if warning:
                warnings.append(warning)

        invoice: Optional[Invoice] = None
        if accepted.quote is not None:
            request = self.store.get_request(accepted.request_id)
            try:
                invoice = self.payments.create_invoice(
                    quotation_id=accepted.id,
                    request_id=accepted.request_id,
                    requester_id=request.requester_id,
                    provider_id=accepted.provider_id,
                    amount=accepted.quote.price,
                    currency=accepted.quote.currency,
                )
            except PaymentError as exc:
                logger.warning("Invoice creation failed for %s: %s", accepted.id, exc)
                warnings.append(f"Invoice creation failed: {exc}")

        return self._result(accepted.request_id, quotation=accepted, warnings=warnings, invoice=invoice)

    def reject_quotation(self, caller: Caller, quotation_id: str) -> TransitionResult:
        """Decline a quotation on behalf of whichever party the caller is."""
        current = self.store.get_quotation(quotation_id)
        request = self.store.get_request(current.request_id)
        provider = self.directory.resolve_provider(current.provider_id)
        if caller.user_id == provider.owner_user_id:
            event, party = PROVIDER_DECLINE, "provider"
        elif caller.user_id == request.requester_id:
            event, party = REQUESTER_DECLINE, "requester"
        else:
            raise UnauthorizedError("Only the targeted provider or the requester can decline this quotation")
        authorize(caller, event, requester_id=request.requester_id, provider_owner_id=provider.owner_user_id)

        quotation = self.store.reject_quotation(quotation_id, by=party, actor_user_id=caller.user_id)
        warning = self.notifier.on_quotation_rejected(quotation.id, event)
        return self._result(quotation.request_id, quotation=quotation, warnings=[warning] if warning else [])

    def get_request_view(self, request_id: str) -> QuotationRequestView:
        return QuotationRequestView(
            request=self.store.get_request(request_id),
            status=self.store.get_request_status(request_id),
            quotations=self.store.list_quotations(request_id),
        )

    def dispatch_quote_reminders(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        sent: List[Dict[str, Any]] = []
        for item in self.store.find_stale_pending(self.reminder_tiers[0], now=now):
            elapsed = int(item["elapsed_minutes"])
            reached = [tier for tier in self.reminder_tiers if elapsed >= tier]
            top_tier = reached[-1]
            if top_tier in item["tiers_sent"]:
                continue
            quotation_id = str(item["quotation_id"])
            warning = self.notifier.on_quote_reminder(quotation_id, str(item["provider_id"]), elapsed)
            self.store.mark_reminded(quotation_id, reached)
            sent.append(
                {
                    "quotation_id": quotation_id,
                    "request_id": item["request_id"],
                    "provider_id": item["provider_id"],
                    "elapsed_minutes": elapsed,
                    "tier": f"{top_tier}m",
                    "warning": warning,
                }
            )
        return sent


lifecycle = QuotationLifecycle(
    store=quotation_store,
    directory=directory_store,
    notifier=QuotationNotifier(quotation_store, directory_store, notification_store),
    payments=payment_client,
)
