import logging
from typing import Optional

from fastapi import APIRouter, Header, Query

from quoteflow.auth import assert_actor_authorized, current_caller
from quoteflow.models import (
    Quotation,
    QuotationActionRequest,
    QuotationRequest,
    QuotationRequestCreate,
    QuotationRequestView,
    QuotationTransition,
    QuoteSubmitRequest,
    RequestStatusView,
    TransitionResult,
)
from quoteflow.routers.http_errors import raise_quotation_http_error
from quoteflow.services.errors import QuotationError, UnauthorizedError
from quoteflow.services.lifecycle import lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotations", tags=["quotations"])


def _dispatch_quote_reminders() -> None:
    reminders = lifecycle.dispatch_quote_reminders()
    if reminders:
        logger.info("quote_reminders_sent count=%d", len(reminders))


@router.post("/requests", response_model=TransitionResult)
def create_request(
    request: QuotationRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    caller = current_caller(request.user_id, authorization)
    try:
        return lifecycle.create_request(caller, details=request.details, provider_ids=request.provider_ids)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/requests", response_model=list[QuotationRequest])
def list_requests(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return lifecycle.store.list_requests_for_requester(user_id)


@router.get("/requests/{request_id}", response_model=QuotationRequestView)
def get_request(request_id: str):
    try:
        return lifecycle.get_request_view(request_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/requests/{request_id}/status", response_model=RequestStatusView)
def get_request_status(request_id: str):
    try:
        return RequestStatusView(request_id=request_id, status=lifecycle.store.get_request_status(request_id))
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/inbox", response_model=list[Quotation])
def provider_inbox(
    provider_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    _dispatch_quote_reminders()
    try:
        provider = lifecycle.directory.resolve_provider(provider_id)
        if provider.owner_user_id != user_id:
            raise UnauthorizedError("Only the provider owner can read this inbox")
        return lifecycle.store.list_quotations_for_provider(provider_id, status=status)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/{quotation_id}", response_model=Quotation)
def get_quotation(quotation_id: str):
    try:
        return lifecycle.store.get_quotation(quotation_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/{quotation_id}/history", response_model=list[QuotationTransition])
def get_quotation_history(quotation_id: str):
    try:
        return lifecycle.store.list_transitions(quotation_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.post("/{quotation_id}/quote", response_model=TransitionResult)
def submit_quote(
    quotation_id: str,
    request: QuoteSubmitRequest,
    authorization: Optional[str] = Header(default=None),
):
    caller = current_caller(request.actor_user_id, authorization)
    try:
        return lifecycle.submit_quote(
            caller,
            quotation_id,
            price=request.price,
            timeline=request.timeline,
            description=request.description,
            currency=request.currency,
        )
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.post("/{quotation_id}/accept", response_model=TransitionResult)
def accept_quotation(
    quotation_id: str,
    request: QuotationActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    caller = current_caller(request.actor_user_id, authorization)
    try:
        return lifecycle.accept_quotation(caller, quotation_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.post("/{quotation_id}/reject", response_model=TransitionResult)
def reject_quotation(
    quotation_id: str,
    request: QuotationActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    caller = current_caller(request.actor_user_id, authorization)
    try:
        return lifecycle.reject_quotation(caller, quotation_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)
