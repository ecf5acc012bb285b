from fastapi import APIRouter, Depends

from servmatch.deps import Services, get_services, raise_engine_http_error
from servmatch.errors import EngineError
from servmatch.models import (
    ActorRequest,
    ProposalCreate,
    ProposalSubmission,
    ReconciliationView,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestUpdate,
    ServiceRequestView,
)

router = APIRouter(prefix="/requests", tags=["requests"])


@router.post("", response_model=ServiceRequestView)
async def create_request(payload: ServiceRequestCreate, services: Services = Depends(get_services)):
    try:
        created = await services.marketplace.create_request(payload)
    except EngineError as exc:
        raise_engine_http_error(exc)
    return ServiceRequestView(request=created.request, notified_providers=len(created.fan_out.notified))


@router.get("/{request_id}", response_model=ServiceRequestView)
async def get_request(request_id: str, services: Services = Depends(get_services)):
    try:
        request, proposals = await services.marketplace.get_request(request_id)
    except EngineError as exc:
        raise_engine_http_error(exc)
    return ServiceRequestView(request=request, proposals=proposals)


@router.patch("/{request_id}", response_model=ServiceRequest)
async def update_request(
    request_id: str,
    payload: ServiceRequestUpdate,
    services: Services = Depends(get_services),
):
    try:
        return await services.marketplace.update_request(request_id, payload)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{request_id}/cancel", response_model=ServiceRequest)
async def cancel_request(request_id: str, payload: ActorRequest, services: Services = Depends(get_services)):
    try:
        return await services.marketplace.cancel_request(request_id, payload.actor_user_id)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{request_id}/complete", response_model=ServiceRequest)
async def complete_request(request_id: str, payload: ActorRequest, services: Services = Depends(get_services)):
    try:
        return await services.marketplace.complete_request(request_id, payload.actor_user_id)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{request_id}/proposals", response_model=ProposalSubmission)
async def submit_proposal(request_id: str, payload: ProposalCreate, services: Services = Depends(get_services)):
    try:
        return await services.marketplace.submit_proposal(
            request_id,
            payload.provider_id,
            payload.price,
            timeline_estimate=payload.timeline_estimate,
            cover_letter=payload.cover_letter,
        )
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{request_id}/reconcile", response_model=ReconciliationView)
async def reconcile_request(request_id: str, services: Services = Depends(get_services)):
    try:
        result = await services.acceptance.reconcile_request(request_id)
    except EngineError as exc:
        raise_engine_http_error(exc)
    return ReconciliationView(
        request=result.request,
        rejected_proposal_ids=[item.id for item in result.rejected],
        conversation_id=result.conversation.id if result.conversation else None,
        changed=result.changed,
    )
