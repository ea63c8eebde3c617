"""
Job aggregation.

Decides, from the current tickets of a record, whether the record can be
finalized. Pure function; the orchestrator owns every side effect.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

from .models import JobTicket, TICKET_PENDING, TICKET_SUCCEEDED, OUTCOME_STILL_PENDING, OUTCOME_READY, OUTCOME_ALL_FAILED


@dataclass
class Evaluation:
    """Aggregated view over a record's tickets"""
    outcome: str
    payloads: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed_kinds: List[str] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return self.outcome == OUTCOME_READY


def evaluate(tickets: Mapping[str, JobTicket], expected_kinds: Iterable[str] = ()) -> Evaluation:
    """
    Evaluate readiness of a record.

    Finalize as soon as no ticket is pending and at least one succeeded;
    failed siblings are left out of the merge. A kind that was expected but
    never got a ticket counts as failed. A succeeded ticket whose payload has
    not been fetched yet still counts as pending.

    Args:
        tickets: Tickets keyed by job kind
        expected_kinds: Kinds the record was submitted with

    Returns:
        Evaluation with the outcome, the succeeded payloads keyed by kind and
        the kinds that failed
    """
    kinds = list(tickets.keys())
    for kind in expected_kinds:
        if kind not in tickets:
            kinds.append(kind)

    payloads: Dict[str, Dict[str, Any]] = {}
    failed_kinds: List[str] = []
    pending = False

    for kind in kinds:
        ticket = tickets.get(kind)
        if ticket is None:
            failed_kinds.append(kind)
        elif ticket.status == TICKET_PENDING or ticket.awaiting_payload:
            pending = True
        elif ticket.status == TICKET_SUCCEEDED:
            payloads[kind] = ticket.payload
        else:
            failed_kinds.append(kind)

    if pending:
        outcome = OUTCOME_STILL_PENDING
    elif payloads:
        outcome = OUTCOME_READY
    else:
        outcome = OUTCOME_ALL_FAILED

    return Evaluation(outcome=outcome, payloads=payloads, failed_kinds=failed_kinds)
