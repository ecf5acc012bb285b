import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from servmatch.errors import EngineValidationError, NotFoundError, PermissionDenied, PreconditionFailed
from servmatch.models import (
    Location,
    Proposal,
    ProposalSubmission,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestUpdate,
)
from servmatch.services import lifecycle
from servmatch.services.acceptance import RequestClaims
from servmatch.services.match_engine import FanOutResult, MatchEngine
from servmatch.services.notification_dispatcher import NotificationDispatcher
from servmatch.services.record_store import RecordStore

logger = logging.getLogger(__name__)

PROPOSAL_RECEIVED = "proposal"
REQUEST_CANCELLED = "request_cancelled"
PROPOSAL_WITHDRAWN = "proposal_withdrawn"


@dataclass
class CreatedRequest:
    request: ServiceRequest
    fan_out: FanOutResult


class MarketplaceService:
    """Buyer and provider actions around requests, minus acceptance.

    Every write claims its request through the shared RequestClaims, so none
    of them can land in the middle of an acceptance.
    """

    def __init__(
        self,
        store: RecordStore,
        engine: MatchEngine,
        dispatcher: NotificationDispatcher,
        claims: Optional[RequestClaims] = None,
    ):
        self._store = store
        self._engine = engine
        self._dispatcher = dispatcher
        self._claims = claims or RequestClaims()

    async def _require_request(self, request_id: str) -> ServiceRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def _require_buyer(self, request: ServiceRequest, actor_id: str) -> None:
        if actor_id != request.buyer_id:
            raise PermissionDenied("Only the buyer who posted the request can do this")

    async def create_request(self, payload: ServiceRequestCreate) -> CreatedRequest:
        category = await self._engine.catalog.get(payload.category_id)
        if category is None:
            raise NotFoundError(f"Unknown category {payload.category_id!r}")
        request = await self._store.insert_request(**payload.model_dump())
        logger.info("Request %s created by %s in %s", request.id, request.buyer_id, category.id)
        fan_out = await self._engine.notify_new_request(request)
        return CreatedRequest(request=request, fan_out=fan_out)

    async def get_request(self, request_id: str) -> tuple[ServiceRequest, List[Proposal]]:
        request = await self._require_request(request_id)
        return request, await self._store.list_proposals(request_id)

    async def update_request(self, request_id: str, patch: ServiceRequestUpdate) -> ServiceRequest:
        with self._claims.hold(request_id):
            request = await self._require_request(request_id)
            self._require_buyer(request, patch.actor_user_id)
            if request.status != "open":
                raise PreconditionFailed(f"Request is {request.status}; only open requests can be edited")

            fields: Dict[str, Any] = patch.model_dump(exclude_unset=True, exclude={"actor_user_id"})
            if not fields:
                return request
            budget_min = fields.get("budget_min", request.budget_min)
            budget_max = fields.get("budget_max", request.budget_max)
            if budget_min > budget_max:
                raise EngineValidationError("budget_min must not exceed budget_max")
            if fields.get("location") is not None:
                fields["location"] = Location.model_validate(fields["location"])
            return await self._store.update_request_fields(request_id, fields)

    async def submit_proposal(
        self,
        request_id: str,
        provider_id: str,
        price: float,
        timeline_estimate: str = "",
        cover_letter: str = "",
    ) -> ProposalSubmission:
        with self._claims.hold(request_id):
            request = await self._require_request(request_id)
            existing = await self._store.list_proposals(request_id)
            lifecycle.ensure_can_submit(request, existing, provider_id)

            proposal = await self._store.insert_proposal(
                request_id=request_id,
                provider_id=provider_id,
                price=price,
                timeline_estimate=timeline_estimate,
                cover_letter=cover_letter,
            )
        outside_budget = not (request.budget_min <= price <= request.budget_max)
        logger.info("Proposal %s submitted on %s (outside_budget=%s)", proposal.id, request_id, outside_budget)

        provider = await self._store.get_provider(provider_id)
        provider_name = provider.full_name if provider else "A provider"
        await self._dispatcher.send(
            request.buyer_id,
            PROPOSAL_RECEIVED,
            "New Proposal Received",
            f'{provider_name} sent a proposal for "{request.title}" - {price:g}',
            {"request_id": request_id, "proposal_id": proposal.id},
        )
        return ProposalSubmission(proposal=proposal, outside_budget=outside_budget)

    async def withdraw_proposal(self, proposal_id: str, provider_id: str) -> Proposal:
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal not found")
        if proposal.provider_id != provider_id:
            raise PermissionDenied("Only the provider who sent the proposal can withdraw it")
        with self._claims.hold(proposal.request_id):
            proposal = await self._store.get_proposal(proposal_id) or proposal
            lifecycle.transition_proposal(proposal, "withdrawn")
            withdrawn = await self._store.update_proposal_status(proposal_id, "withdrawn")

        request = await self._store.get_request(proposal.request_id)
        if request is not None:
            await self._dispatcher.send(
                request.buyer_id,
                PROPOSAL_WITHDRAWN,
                "Proposal Withdrawn",
                f'A proposal for "{request.title}" was withdrawn.',
                {"request_id": request.id, "proposal_id": proposal_id},
            )
        return withdrawn

    async def cancel_request(self, request_id: str, actor_id: str) -> ServiceRequest:
        with self._claims.hold(request_id):
            request = await self._require_request(request_id)
            self._require_buyer(request, actor_id)
            lifecycle.transition_request(request, "cancelled")
            cancelled = await self._store.update_request_status(request_id, "cancelled")
        logger.info("Request %s cancelled", request_id)

        for proposal in await self._store.list_proposals(request_id):
            if proposal.status != "pending":
                continue
            await self._dispatcher.send(
                proposal.provider_id,
                REQUEST_CANCELLED,
                "Request Cancelled",
                f'The request "{request.title}" was cancelled by the buyer.',
                {"request_id": request_id},
            )
        return cancelled

    async def complete_request(self, request_id: str, actor_id: str) -> ServiceRequest:
        with self._claims.hold(request_id):
            request = await self._require_request(request_id)
            self._require_buyer(request, actor_id)
            lifecycle.transition_request(request, "completed")
            completed = await self._store.update_request_status(request_id, "completed")
        logger.info("Request %s completed", request_id)
        return completed

    async def list_opportunities(
        self,
        provider_id: str,
        *,
        query: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        viewer_location: Optional[Location] = None,
    ) -> List[ServiceRequest]:
        provider = await self._store.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider profile not found")
        requests = await self._store.list_requests(statuses)
        categories = await self._engine.catalog.all()
        return self._engine.find_opportunities_for_provider(
            provider,
            requests,
            categories,
            statuses=statuses,
            query=query,
            viewer_location=viewer_location,
        )

    async def list_providers(self, *, category_id: Optional[str] = None, query: Optional[str] = None):
        providers = await self._store.list_providers()
        return self._engine.find_providers_for_buyer(providers, category_id=category_id, query=query)
