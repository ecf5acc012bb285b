"""Accept-proposal workflow over a store without multi-record transactions.

Steps run strictly in order, each awaited before the next:

1. validate (no writes)
2. proposal -> accepted
3. other pending proposals -> rejected (best effort)
4. request -> in_progress
5. conversation, lookup before insert
6. notifications

The call succeeds once step 4 lands. Steps 5 and 6 run as a follow-up task
whose failures are logged and collected, never raised. A failure in step 2
leaves nothing written; a failure in step 4 raises WorkflowInterrupted, and
reconcile_request() is the repair path.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Set

from servmatch.errors import (
    ConflictError,
    EngineError,
    NotFoundError,
    PartialWorkflowFailure,
    PermissionDenied,
    PreconditionFailed,
    WorkflowInterrupted,
)
from servmatch.models import Conversation, Proposal, ServiceRequest
from servmatch.services import lifecycle
from servmatch.services.notification_dispatcher import NotificationDispatcher
from servmatch.services.record_store import RecordStore

logger = logging.getLogger(__name__)

PROPOSAL_ACCEPTED = "proposal_accepted"
PROPOSAL_REJECTED = "proposal_rejected"


@dataclass
class FollowUpOutcome:
    conversation: Optional[Conversation] = None
    failures: List[PartialWorkflowFailure] = field(default_factory=list)


@dataclass
class AcceptanceResult:
    request: ServiceRequest
    proposal: Proposal
    rejected: List[Proposal] = field(default_factory=list)
    failures: List[PartialWorkflowFailure] = field(default_factory=list)
    conversation: Optional[Conversation] = None
    follow_up: Optional["asyncio.Task[FollowUpOutcome]"] = None

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)

    async def wait(self) -> "AcceptanceResult":
        """Block until the conversation and notification steps have finished."""
        if self.follow_up is None:
            return self
        outcome = await self.follow_up
        self.follow_up = None
        self.conversation = outcome.conversation
        self.failures.extend(outcome.failures)
        return self


@dataclass
class ReconciliationResult:
    request: ServiceRequest
    accepted: Optional[Proposal] = None
    rejected: List[Proposal] = field(default_factory=list)
    conversation: Optional[Conversation] = None
    failures: List[PartialWorkflowFailure] = field(default_factory=list)
    changed: bool = False


class RequestClaims:
    """Requests with a state-changing action running in this process.

    Accept, reject, reconcile and the marketplace edits all claim the request
    for the duration of their writes; a second claim fails fast instead of
    interleaving with the first.
    """

    def __init__(self) -> None:
        self._held: Set[str] = set()

    def is_held(self, request_id: str) -> bool:
        return request_id in self._held

    @contextmanager
    def hold(self, request_id: str) -> Iterator[None]:
        if request_id in self._held:
            raise PreconditionFailed(f"Another change to request {request_id} is in progress")
        self._held.add(request_id)
        try:
            yield
        finally:
            self._held.discard(request_id)


class AcceptanceOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        await_follow_up: bool = False,
        claims: Optional[RequestClaims] = None,
    ):
        self._store = store
        self._dispatcher = dispatcher or NotificationDispatcher(store)
        self._await_follow_up = await_follow_up
        self.claims = claims or RequestClaims()
        self._background: Set[asyncio.Task] = set()

    async def _load_proposal(self, request_id: Optional[str], proposal_id: str) -> Proposal:
        proposal = await self._store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal not found")
        if request_id is not None and proposal.request_id != request_id:
            raise PreconditionFailed("Proposal does not belong to this request")
        return proposal

    async def _load_request(self, request_id: str) -> ServiceRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    def _assert_buyer(self, request: ServiceRequest, actor_id: Optional[str]) -> None:
        if actor_id is not None and actor_id != request.buyer_id:
            raise PermissionDenied("Only the buyer who posted the request can do this")

    async def accept_proposal(
        self,
        request_id: Optional[str],
        proposal_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> AcceptanceResult:
        """Pass request_id=None to accept by proposal id alone."""
        proposal = await self._load_proposal(request_id, proposal_id)
        with self.claims.hold(proposal.request_id):
            request = await self._load_request(proposal.request_id)
            self._assert_buyer(request, actor_id)
            # Read the proposals again under the claim.
            siblings = await self._store.list_proposals(request.id)
            current = next((item for item in siblings if item.id == proposal.id), proposal)
            plan = lifecycle.accept_proposal(request, current, siblings)
            return await self._run_acceptance(plan)

    async def _run_acceptance(self, plan: lifecycle.AcceptancePlan) -> AcceptanceResult:
        request_id = plan.request.id
        completed: List[str] = []

        accepted = await self._store.update_proposal_status(plan.proposal.id, "accepted")
        completed.append("accept_proposal")
        logger.info("Request %s: proposal %s accepted", request_id, accepted.id)

        rejected, failures = await self._reject_competing(request_id, accepted.id)
        if rejected or failures:
            completed.append("reject_competing")

        try:
            started = await self._store.update_request_status(request_id, "in_progress")
        except EngineError as exc:
            logger.exception("Request %s: proposal accepted but request not started", request_id)
            raise WorkflowInterrupted(
                "Proposal was accepted but the request could not be started; reconcile the request",
                completed,
                cause=exc,
            ) from exc
        logger.info("Request %s: in progress with provider %s", request_id, accepted.provider_id)

        result = AcceptanceResult(request=started, proposal=accepted, rejected=rejected, failures=failures)
        task = asyncio.create_task(self._follow_up(started, accepted, rejected))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        result.follow_up = task
        if self._await_follow_up:
            await result.wait()
        return result

    async def _reject_competing(self, request_id: str, accepted_id: str) -> tuple[List[Proposal], List[PartialWorkflowFailure]]:
        rejected: List[Proposal] = []
        failures: List[PartialWorkflowFailure] = []
        try:
            current = await self._store.list_proposals(request_id)
        except EngineError as exc:
            logger.exception("Request %s: could not load competing proposals", request_id)
            failures.append(PartialWorkflowFailure("reject_competing", str(exc), request_id))
            return rejected, failures

        for item in current:
            if item.id == accepted_id or item.status != "pending":
                continue
            try:
                rejected.append(await self._store.update_proposal_status(item.id, "rejected"))
            except EngineError as exc:
                logger.exception("Request %s: proposal %s left pending", request_id, item.id)
                failures.append(PartialWorkflowFailure("reject_competing", str(exc), item.id))
        return rejected, failures

    async def _ensure_conversation(self, request: ServiceRequest, provider_id: str) -> Conversation:
        existing = await self._store.find_conversation(request.id, provider_id)
        if existing is not None:
            return existing
        try:
            return await self._store.insert_conversation(
                request_id=request.id,
                buyer_id=request.buyer_id,
                provider_id=provider_id,
                request_title=request.title,
            )
        except ConflictError:
            # Inserted concurrently; the unique (request, provider) row wins.
            existing = await self._store.find_conversation(request.id, provider_id)
            if existing is None:
                raise
            return existing

    async def _follow_up(self, request: ServiceRequest, accepted: Proposal, rejected: List[Proposal]) -> FollowUpOutcome:
        outcome = FollowUpOutcome()
        try:
            outcome.conversation = await self._ensure_conversation(request, accepted.provider_id)
        except EngineError as exc:
            logger.exception("Request %s: conversation not created", request.id)
            outcome.failures.append(PartialWorkflowFailure("create_conversation", str(exc), request.id))

        payload = {"request_id": request.id}
        if outcome.conversation is not None:
            payload["conversation_id"] = outcome.conversation.id
        sent = await self._dispatcher.send(
            accepted.provider_id,
            PROPOSAL_ACCEPTED,
            "Proposal Accepted!",
            f'Your proposal for "{request.title}" has been accepted! Check the request details for buyer contact info.',
            payload,
        )
        if sent is None:
            outcome.failures.append(PartialWorkflowFailure("notify", "accepted provider not notified", accepted.provider_id))

        for item in rejected:
            sent = await self._dispatcher.send(
                item.provider_id,
                PROPOSAL_REJECTED,
                "Proposal Update",
                f'The request "{request.title}" has been awarded to another provider.',
                {"request_id": request.id},
            )
            if sent is None:
                outcome.failures.append(PartialWorkflowFailure("notify", "rejected provider not notified", item.provider_id))

        if outcome.failures:
            logger.warning("Request %s: acceptance finished with %d partial failures", request.id, len(outcome.failures))
        return outcome

    async def reject_proposal(self, proposal_id: str, *, actor_id: Optional[str] = None) -> Proposal:
        proposal = await self._load_proposal(None, proposal_id)
        with self.claims.hold(proposal.request_id):
            request = await self._load_request(proposal.request_id)
            self._assert_buyer(request, actor_id)
            proposal = await self._load_proposal(None, proposal_id)

            lifecycle.transition_proposal(proposal, "rejected")
            rejected = await self._store.update_proposal_status(proposal.id, "rejected")
            logger.info("Request %s: proposal %s rejected", request.id, proposal.id)
        await self._dispatcher.send(
            proposal.provider_id,
            PROPOSAL_REJECTED,
            "Proposal Rejected",
            f'Your proposal for "{request.title}" was not selected.',
            {"request_id": request.id},
        )
        return rejected

    async def reconcile_request(self, request_id: str) -> ReconciliationResult:
        """Finish a partially applied acceptance. Safe to run repeatedly."""
        with self.claims.hold(request_id):
            return await self._reconcile(request_id)

    async def _reconcile(self, request_id: str) -> ReconciliationResult:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request not found")
        proposals = await self._store.list_proposals(request_id)
        accepted = [item for item in proposals if item.status == "accepted"]
        result = ReconciliationResult(request=request)
        if not accepted:
            if request.status == "in_progress":
                logger.error("Request %s is in progress without an accepted proposal", request_id)
            return result
        if len(accepted) > 1:
            raise PreconditionFailed(f"Request {request_id} has {len(accepted)} accepted proposals")

        winner = accepted[0]
        result.accepted = winner
        if request.status == "open":
            result.request = await self._store.update_request_status(request_id, "in_progress")
            result.changed = True
            logger.info("Reconciled request %s to in_progress", request_id)

        if result.request.status == "in_progress":
            result.rejected, result.failures = await self._reject_competing(request_id, winner.id)
            result.changed = result.changed or bool(result.rejected)
            for item in result.rejected:
                await self._dispatcher.send(
                    item.provider_id,
                    PROPOSAL_REJECTED,
                    "Proposal Update",
                    f'The request "{request.title}" has been awarded to another provider.',
                    {"request_id": request_id},
                )

        existing = await self._store.find_conversation(request_id, winner.provider_id)
        if existing is None:
            try:
                result.conversation = await self._ensure_conversation(result.request, winner.provider_id)
                result.changed = True
            except EngineError as exc:
                logger.exception("Request %s: conversation still missing", request_id)
                result.failures.append(PartialWorkflowFailure("create_conversation", str(exc), request_id))
        else:
            result.conversation = existing
        return result
