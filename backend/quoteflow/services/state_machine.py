"""Quotation state machine.

Every quotation starts in ``pending`` and ends in ``accepted`` or ``rejected``.
The table below is the only place that knows which event may move a
quotation from one status to another and which party may fire it. Identity
is resolved elsewhere; callers hand a :class:`Caller` capability in and get
:class:`UnauthorizedError` back when it does not match the entitled party.
"""

from dataclasses import dataclass
from typing import Dict, Literal, Tuple

from quoteflow.services.errors import InvalidStateError, UnauthorizedError

Party = Literal["provider", "requester"]

PENDING = "pending"
QUOTED = "quoted"
ACCEPTED = "accepted"
REJECTED = "rejected"

ACTIVE_STATUSES = {PENDING, QUOTED}
TERMINAL_STATUSES = {ACCEPTED, REJECTED}

SUBMIT_QUOTE = "submit_quote"
PROVIDER_DECLINE = "provider_decline"
REQUESTER_ACCEPT = "requester_accept"
REQUESTER_DECLINE = "requester_decline"
# Recorded on siblings that lose to an acceptance; never fired by a caller.
SIBLING_ACCEPTED = "sibling_accepted"


@dataclass(frozen=True)
class Transition:
    from_status: str
    event: str
    to_status: str
    party: Party


TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (PENDING, SUBMIT_QUOTE): Transition(PENDING, SUBMIT_QUOTE, QUOTED, "provider"),
    (PENDING, PROVIDER_DECLINE): Transition(PENDING, PROVIDER_DECLINE, REJECTED, "provider"),
    (QUOTED, PROVIDER_DECLINE): Transition(QUOTED, PROVIDER_DECLINE, REJECTED, "provider"),
    (QUOTED, REQUESTER_ACCEPT): Transition(QUOTED, REQUESTER_ACCEPT, ACCEPTED, "requester"),
    (QUOTED, REQUESTER_DECLINE): Transition(QUOTED, REQUESTER_DECLINE, REJECTED, "requester"),
}

EVENT_PARTIES: Dict[str, Party] = {t.event: t.party for t in TRANSITIONS.values()}


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str


def resolve_transition(current_status: str, event: str) -> Transition:
    if current_status in TERMINAL_STATUSES:
        raise InvalidStateError(f"Quotation is already {current_status}")
    transition = TRANSITIONS.get((current_status, event))
    if transition is None:
        raise InvalidStateError(f"Invalid transition: {event} from {current_status}")
    return transition


def authorize(caller: Caller, event: str, *, requester_id: str, provider_owner_id: str) -> None:
    party = EVENT_PARTIES.get(event)
    if party is None:
        raise InvalidStateError(f"Unknown event: {event}")
    entitled = provider_owner_id if party == "provider" else requester_id
    if caller.user_id != entitled:
        if party == "provider":
            raise UnauthorizedError("Only the targeted provider can perform this action")
        raise UnauthorizedError("Only the requester can perform this action")
