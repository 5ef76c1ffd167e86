import logging
import os
from typing import Any, Dict, Optional

import requests

from quoteflow.models import Invoice

logger = logging.getLogger(__name__)


def _read_timeout(default: float = 10.0) -> float:
    raw = os.getenv("PAYMENT_TIMEOUT_SECONDS", str(default))
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


class PaymentError(RuntimeError):
    pass


class PaymentClient:
    """Creates invoices on the hosted payment API after a quotation is accepted.

    Disabled (every call returns ``None``) unless ``PAYMENT_API_URL`` is set.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url if base_url is not None else os.getenv("PAYMENT_API_URL", "")).rstrip("/")
        self.api_token = api_token if api_token is not None else os.getenv("PAYMENT_API_TOKEN", "")
        self.timeout = timeout or _read_timeout()
        self.session = session or requests.Session()
        self.enabled = bool(self.base_url)
        if not self.enabled:
            logger.info("Payment client disabled: PAYMENT_API_URL not set")

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def create_invoice(
        self,
        *,
        quotation_id: str,
        request_id: str,
        requester_id: str,
        provider_id: str,
        amount: float,
        currency: str,
    ) -> Optional[Invoice]:
        if not self.enabled:
            logger.debug("Payment client disabled, skipping invoice for %s", quotation_id)
            return None

        payload: Dict[str, Any] = {
            "reference": quotation_id,
            "request_id": request_id,
            "customer_id": requester_id,
            "payee_id": provider_id,
            "amount": amount,
            "currency": currency,
        }
        try:
            response = self.session.post(
                f"{self.base_url}/invoices",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentError(f"Payment API unreachable: {exc}") from exc

        if response.status_code not in (200, 201):
            raise PaymentError(f"Payment API error: {response.status_code} - {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise PaymentError("Payment API returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise PaymentError("Payment API returned an unexpected payload")

        try:
            invoice = Invoice(
                id=str(body.get("id") or body.get("invoice_id") or ""),
                quotation_id=quotation_id,
                amount=float(body.get("amount", amount)),
                currency=str(body.get("currency", currency)),
                status=str(body.get("status", "open")),
            )
        except (TypeError, ValueError) as exc:
            raise PaymentError("Payment API returned an invalid invoice") from exc
        if not invoice.id:
            raise PaymentError("Payment API response missing invoice id")
        logger.info("invoice_created invoice_id=%s quotation_id=%s amount=%.2f", invoice.id, quotation_id, amount)
        return invoice


payment_client = PaymentClient()
