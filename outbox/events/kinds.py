"""Known outbox event kinds. Names outside this set are still accepted by append."""

from enum import Enum


class EventKind(str, Enum):
    """Event kinds that ship with a built-in handler."""

    # Candidate promoted to a pursuit; ensure proposal v1 exists
    CANDIDATE_PROMOTED = "candidate.promoted"

    # Pursuit submitted; email the proposal to the client
    PURSUIT_SUBMIT = "pursuit.submit"

    # Proposal sent; notify the team
    PROPOSAL_SENT = "proposal.sent"

    # Pursuit closed
    PURSUIT_WON = "pursuit.won"
    PURSUIT_LOST = "pursuit.lost"


# Payload contracts. Required keys are checked by the built-in handlers.
CANDIDATE_PROMOTED_PAYLOAD = {"pursuit_id": "int"}
PURSUIT_SUBMIT_PAYLOAD = {"proposal_id": "int"}
PROPOSAL_SENT_PAYLOAD = {"proposal_id": "int"}
PURSUIT_WON_PAYLOAD = {"proposal_id": "int | None"}
PURSUIT_LOST_PAYLOAD = {"reason": "str | None"}
