"""
Reconciliation errors.

Remote and storage errors keep their own hierarchies; these cover the
multi-step flows built on top of them.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base error for reconciliation flows."""
    pass


class ConfigurationError(ReconciliationError):
    """The household configuration is missing something a flow needs."""
    pass


class InsufficientBudgetError(ReconciliationError):
    """The payer cannot cover a balancing amount even after moving budget."""

    def __init__(self, participant: str, required: int, available: int):
        self.participant = participant
        self.required = required
        self.available = available
        super().__init__(
            f"{participant} needs {required} milliunits in shared expenses, "
            f"only {available} available"
        )


class PartialFailure(ReconciliationError):
    """
    A multi-step remote protocol stopped part way.

    The already-committed steps stay in place. ``tag`` identifies the
    incomplete group so it can be resumed or deleted.
    """

    def __init__(
        self,
        tag: str,
        completed_steps: list[str],
        cause: Optional[BaseException] = None,
    ):
        self.tag = tag
        self.completed_steps = list(completed_steps)
        self.cause = cause
        done = ", ".join(self.completed_steps) or "none"
        super().__init__(f"Balancing set {tag} incomplete (completed: {done}): {cause}")


class NoteTooLongError(ReconciliationError):
    """Adding a tag would push a transaction note past the remote limit."""

    user_message = "The note is too long to add a tag. Shorten it and try again."

    def __init__(self, transaction_id: str, length: int, limit: int):
        self.transaction_id = transaction_id
        self.length = length
        self.limit = limit
        super().__init__(
            f"Tagged note for {transaction_id} is {length} characters, limit is {limit}"
        )
