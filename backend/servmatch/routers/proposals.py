from fastapi import APIRouter, Depends

from servmatch.deps import Services, get_services, raise_engine_http_error
from servmatch.errors import EngineError
from servmatch.models import AcceptanceView, ActorRequest, Proposal

router = APIRouter(prefix="/proposals", tags=["proposals"])


@router.post("/{proposal_id}/accept", response_model=AcceptanceView)
async def accept_proposal(proposal_id: str, payload: ActorRequest, services: Services = Depends(get_services)):
    try:
        result = await services.acceptance.accept_proposal(None, proposal_id, actor_id=payload.actor_user_id)
    except EngineError as exc:
        raise_engine_http_error(exc)
    return AcceptanceView(
        request=result.request,
        proposal=result.proposal,
        rejected_proposal_ids=[item.id for item in result.rejected],
        conversation_id=result.conversation.id if result.conversation else None,
        partial_failures=[str(failure) for failure in result.failures],
    )


@router.post("/{proposal_id}/reject", response_model=Proposal)
async def reject_proposal(proposal_id: str, payload: ActorRequest, services: Services = Depends(get_services)):
    try:
        return await services.acceptance.reject_proposal(proposal_id, actor_id=payload.actor_user_id)
    except EngineError as exc:
        raise_engine_http_error(exc)


@router.post("/{proposal_id}/withdraw", response_model=Proposal)
async def withdraw_proposal(proposal_id: str, payload: ActorRequest, services: Services = Depends(get_services)):
    try:
        return await services.marketplace.withdraw_proposal(proposal_id, payload.actor_user_id)
    except EngineError as exc:
        raise_engine_http_error(exc)
