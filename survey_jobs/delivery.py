"""Delivery status state machine."""

from survey_jobs.models import DeliveryStatus

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.QUEUED, DeliveryStatus.UNDELIVERABLE}),
    DeliveryStatus.QUEUED: frozenset(
        {DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.UNDELIVERABLE}
    ),
    DeliveryStatus.SENT: frozenset(
        {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.RESPONDED,
            DeliveryStatus.FAILED,
            DeliveryStatus.UNDELIVERABLE,
        }
    ),
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.RESPONDED}),
    # A transient failure may fail again before the retry budget runs out.
    DeliveryStatus.FAILED: frozenset(
        {DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.UNDELIVERABLE}
    ),
    DeliveryStatus.UNDELIVERABLE: frozenset(),
    DeliveryStatus.RESPONDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    """True if ``current -> target`` is an edge of the state machine."""
    return DeliveryStatus(target) in ALLOWED_TRANSITIONS[DeliveryStatus(current)]


def sources_for(target: DeliveryStatus) -> list[DeliveryStatus]:
    """Every status from which ``target`` can be reached."""
    target = DeliveryStatus(target)
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def is_terminal(status: DeliveryStatus) -> bool:
    return DeliveryStatus(status) in TERMINAL_STATUSES
