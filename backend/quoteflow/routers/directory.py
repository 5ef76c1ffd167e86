from typing import Optional

from fastapi import APIRouter, Header, Query

from quoteflow.auth import assert_actor_authorized
from quoteflow.models import (
    ServiceProvider,
    ServiceProviderCreateRequest,
    ServiceProviderDeactivateRequest,
    User,
    UserCreateRequest,
)
from quoteflow.routers.http_errors import raise_quotation_http_error
from quoteflow.services.directory_store import directory_store
from quoteflow.services.errors import QuotationError

router = APIRouter(prefix="/directory", tags=["directory"])


@router.post("/users", response_model=User)
def create_user(request: UserCreateRequest):
    try:
        return directory_store.create_user(
            display_name=request.display_name,
            email=request.email,
            role=request.role,
            profile=request.profile,
        )
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/users/{user_id}", response_model=User)
def get_user(user_id: str):
    try:
        return directory_store.resolve_user(user_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.post("/providers", response_model=ServiceProvider)
def create_provider(request: ServiceProviderCreateRequest, authorization: Optional[str] = Header(default=None)):
    assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return directory_store.create_provider(
            owner_user_id=request.user_id,
            name=request.name,
            services=request.services,
            rating=request.rating,
        )
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.get("/providers", response_model=list[ServiceProvider])
def list_providers(include_inactive: bool = Query(default=False)):
    return directory_store.list_providers(include_inactive=include_inactive)


@router.get("/providers/{provider_id}", response_model=ServiceProvider)
def get_provider(provider_id: str):
    try:
        return directory_store.resolve_provider(provider_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)


@router.post("/providers/{provider_id}/deactivate", response_model=ServiceProvider)
def deactivate_provider(
    provider_id: str,
    request: ServiceProviderDeactivateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return directory_store.deactivate_provider(provider_id=provider_id, actor_user_id=request.user_id)
    except QuotationError as exc:
        raise_quotation_http_error(exc)
