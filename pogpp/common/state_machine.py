"""Visit and badge-claim state machines enforced by the services."""

VISIT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"verified", "rejected", "flagged"},
    "verified": set(),
    "rejected": set(),
    "flagged": set(),
}

CLAIM_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"minted"},
    "minted": set(),
}


def validate_transition(current: str, new: str, table: dict[str, set[str]] = VISIT_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in table.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
