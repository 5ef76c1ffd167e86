import logging
from typing import Callable, List, Optional

from quoteflow.services.directory_store import DirectoryStore
from quoteflow.services.notification_store import NotificationStore
from quoteflow.services.quotation_store import QuotationStore
from quoteflow.services.state_machine import PROVIDER_DECLINE

logger = logging.getLogger(__name__)


class QuotationNotifier:
    """Fire-and-forget notifications for quotation transitions.

    Every hook returns ``None`` on success or a warning string when delivery
    failed. Failures are logged and never raised, so a committed transition
    is never undone by a notification problem.
    """

    def __init__(self, store: QuotationStore, directory: DirectoryStore, notifications: NotificationStore):
        self.store = store
        self.directory = directory
        self.notifications = notifications

    def _deliver(self, hook: str, subject_id: str, send: Callable[[], None]) -> Optional[str]:
        try:
            send()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Notification hook %s failed for %s", hook, subject_id)
            return f"Notification {hook} failed: {exc}"
        return None

    def _provider_owner(self, provider_id: str) -> str:
        return self.directory.resolve_provider(provider_id).owner_user_id

    def on_request_created(self, request_id: str) -> List[str]:
        request = self.store.get_request(request_id)
        warnings: List[str] = []
        for quotation in self.store.list_quotations(request_id):

            def send(quotation_id: str = quotation.id, provider_id: str = quotation.provider_id) -> None:
                self.notifications.publish(
                    self._provider_owner(provider_id),
                    title="New quotation request",
                    body=request.details[:140],
                    category="quotation",
                    deep_link=f"quotation:{quotation_id}",
                )

            warning = self._deliver("on_request_created", quotation.id, send)
            if warning:
                warnings.append(warning)
        return warnings

    def on_quote_submitted(self, quotation_id: str) -> Optional[str]:
        def send() -> None:
            quotation = self.store.get_quotation(quotation_id)
            request = self.store.get_request(quotation.request_id)
            provider = self.directory.resolve_provider(quotation.provider_id)
            quote = quotation.quote
            summary = f"{quote.price:.2f} {quote.currency} ({quote.timeline})" if quote else "a quote"
            self.notifications.publish(
                request.requester_id,
                title="Quote received",
                body=f"{provider.name} quoted {summary}",
                category="quotation",
                deep_link=f"request:{request.id}",
            )

        return self._deliver("on_quote_submitted", quotation_id, send)

    def on_quotation_accepted(self, quotation_id: str) -> Optional[str]:
        def send() -> None:
            quotation = self.store.get_quotation(quotation_id)
            self.notifications.publish(
                self._provider_owner(quotation.provider_id),
                title="Quote accepted",
                body="Your quote was accepted by the requester.",
                category="quotation",
                deep_link=f"quotation:{quotation_id}",
            )

        return self._deliver("on_quotation_accepted", quotation_id, send)

    def on_quotation_rejected(self, quotation_id: str, event: str) -> Optional[str]:
        def send() -> None:
            quotation = self.store.get_quotation(quotation_id)
            if event == PROVIDER_DECLINE:
                request = self.store.get_request(quotation.request_id)
                provider = self.directory.resolve_provider(quotation.provider_id)
                self.notifications.publish(
                    request.requester_id,
                    title="Provider declined",
                    body=f"{provider.name} declined your quotation request.",
                    category="quotation",
                    deep_link=f"request:{request.id}",
                )
                return
            self.notifications.publish(
                self._provider_owner(quotation.provider_id),
                title="Quotation closed",
                body="The requester went with another option.",
                category="quotation",
                deep_link=f"quotation:{quotation_id}",
            )

        return self._deliver("on_quotation_rejected", quotation_id, send)

    def on_quote_reminder(self, quotation_id: str, provider_id: str, elapsed_minutes: int) -> Optional[str]:
        def send() -> None:
            self.notifications.publish(
                self._provider_owner(provider_id),
                title="Quotation request reminder",
                body=f"A quotation request has been waiting for your response ({elapsed_minutes}m).",
                category="quotation",
                deep_link=f"quotation:{quotation_id}",
            )

        return self._deliver("on_quote_reminder", quotation_id, send)
