"""Request and proposal state machines.

Transitions return updated copies; the models passed in are never mutated, so
a rejected transition leaves the caller's state exactly as it was. Persisting
the result is the caller's job.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Literal

from servmatch.errors import ConflictError, InvalidTransition, PermissionDenied, PreconditionFailed
from servmatch.models import Proposal, ServiceRequest, utc_now_iso

EntityKind = Literal["request", "proposal"]

PROPOSAL_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"accepted", "rejected", "withdrawn"}),
    "accepted": frozenset(),
    "rejected": frozenset(),
    "withdrawn": frozenset(),
}

REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "open": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

_TABLES = {"request": REQUEST_TRANSITIONS, "proposal": PROPOSAL_TRANSITIONS}


def allowed_next(kind: EntityKind, status: str) -> FrozenSet[str]:
    return _TABLES[kind].get(status, frozenset())


def is_terminal(kind: EntityKind, status: str) -> bool:
    return not allowed_next(kind, status)


def _check(kind: EntityKind, current: str, target: str) -> None:
    if target not in allowed_next(kind, current):
        raise InvalidTransition(kind, current, target)


def transition_proposal(proposal: Proposal, target: str) -> Proposal:
    _check("proposal", proposal.status, target)
    # Accepting goes through accept_proposal so the parent moves with it.
    if target == "accepted":
        raise PreconditionFailed("Proposals are accepted together with their request; use accept_proposal")
    return proposal.model_copy(update={"status": target, "updated_at": utc_now_iso()})


def transition_request(request: ServiceRequest, target: str) -> ServiceRequest:
    _check("request", request.status, target)
    if target == "in_progress":
        raise PreconditionFailed("A request starts only by accepting one of its proposals")
    return request.model_copy(update={"status": target, "updated_at": utc_now_iso()})


@dataclass
class AcceptancePlan:
    request: ServiceRequest
    proposal: Proposal
    to_reject: List[Proposal] = field(default_factory=list)


def accept_proposal(
    request: ServiceRequest,
    proposal: Proposal,
    siblings: Iterable[Proposal] = (),
) -> AcceptancePlan:
    """Accept one proposal and start its request, as a single model-level step."""
    if proposal.request_id != request.id:
        raise PreconditionFailed("Proposal does not belong to this request")
    if proposal.status != "pending":
        raise InvalidTransition("proposal", proposal.status, "accepted")
    if request.status != "open":
        raise InvalidTransition("request", request.status, "in_progress")

    others = [item for item in siblings if item.id != proposal.id]
    if any(item.status == "accepted" for item in others):
        raise PreconditionFailed("Another proposal on this request is already accepted")

    now_iso = utc_now_iso()
    accepted = proposal.model_copy(update={"status": "accepted", "updated_at": now_iso})
    started = request.model_copy(update={"status": "in_progress", "updated_at": now_iso})
    to_reject = [item for item in others if item.status == "pending"]
    return AcceptancePlan(request=started, proposal=accepted, to_reject=to_reject)


def ensure_can_submit(
    request: ServiceRequest,
    existing_proposals: Iterable[Proposal],
    provider_id: str,
) -> None:
    if request.status != "open":
        raise PreconditionFailed(f"Request is {request.status}; proposals are closed")
    if provider_id == request.buyer_id:
        raise PermissionDenied("Buyers cannot bid on their own request")
    if any(item.provider_id == provider_id for item in existing_proposals):
        raise ConflictError("Provider already submitted a proposal for this request")
