from __future__ import annotations

from datetime import datetime
from enum import Enum


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    CONVERTED = "converted"
    LOST = "lost"


TERMINAL_LEAD_STATUSES = {LeadStatus.CONVERTED, LeadStatus.LOST}


class OpportunityStage(str, Enum):
    DISCOVERY = "discovery"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


OPEN_STAGES = {OpportunityStage.DISCOVERY, OpportunityStage.PROPOSAL, OpportunityStage.NEGOTIATION}
CLOSED_STAGES = {OpportunityStage.CLOSED_WON, OpportunityStage.CLOSED_LOST}

# Open stages move freely (forward or back). Closed stages only reopen.
TRANSITIONS: dict[OpportunityStage, set[OpportunityStage]] = {
    OpportunityStage.DISCOVERY: {
        OpportunityStage.PROPOSAL,
        OpportunityStage.NEGOTIATION,
        OpportunityStage.CLOSED_WON,
        OpportunityStage.CLOSED_LOST,
    },
    OpportunityStage.PROPOSAL: {
        OpportunityStage.DISCOVERY,
        OpportunityStage.NEGOTIATION,
        OpportunityStage.CLOSED_WON,
        OpportunityStage.CLOSED_LOST,
    },
    OpportunityStage.NEGOTIATION: {
        OpportunityStage.DISCOVERY,
        OpportunityStage.PROPOSAL,
        OpportunityStage.CLOSED_WON,
        OpportunityStage.CLOSED_LOST,
    },
    OpportunityStage.CLOSED_WON: set(OPEN_STAGES),
    OpportunityStage.CLOSED_LOST: set(OPEN_STAGES),
}

STAGE_NOTICES = {
    OpportunityStage.CLOSED_WON: "Opportunity won: client acquired",
    OpportunityStage.CLOSED_LOST: "Opportunity archived",
}
DEFAULT_STAGE_NOTICE = "Opportunity status updated"


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class InboundContactStatus(str, Enum):
    NEW = "new"
    CONVERTED = "converted"


def is_closed(stage: OpportunityStage) -> bool:
    return stage in CLOSED_STAGES


def can_transition(current: OpportunityStage, target: OpportunityStage) -> bool:
    return target in TRANSITIONS.get(current, set())


def resolve_closed_at(target: OpportunityStage, now: datetime) -> datetime | None:
    """closed_at is set exactly while the opportunity sits in a closed stage."""
    return now if is_closed(target) else None


def stage_notice(target: OpportunityStage) -> str:
    return STAGE_NOTICES.get(target, DEFAULT_STAGE_NOTICE)
