class JuryError(Exception):
    """Base class for domain errors raised by juryapp."""


class AlreadyIssued(JuryError):
    """A PIN already exists for this identity; it is never re-sent."""


class NotIssued(JuryError):
    """No credential exists for this identity."""


class InvalidSession(JuryError):
    """Session token missing, expired, or scoped to another identity."""


class IncompleteEvaluation(JuryError):
    """Finalize was attempted while some group still has empty criteria."""

    def __init__(self, missing):
        self.missing = missing  # {group_id: [criterion_id, ...]}
        groups = ", ".join(str(g) for g in sorted(missing))
        super().__init__(f"Cannot finalize: groups with empty criteria: {groups}")


class ReadFailed(JuryError):
    """A read call to the server failed (network or HTTP error)."""
