"""
Invoice status state machine.

    draft    -> sent, cancelled
    sent     -> viewed, paid, overdue, cancelled
    viewed   -> paid, overdue, cancelled
    overdue  -> paid
    paid, cancelled: terminal

``overdue`` is a stored status written only by the scheduled sweep
(``TransitionTrigger.SCHEDULE``). Only ``draft`` invoices may be edited or
deleted; past draft only status and payment fields change.
"""
import logging
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from billflow.core.exceptions import InvalidStateTransition


logger = logging.getLogger(__name__)


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class TransitionTrigger(str, Enum):
    """What caused a transition."""
    USER = "user"                 # Send / cancel from the UI or API
    CLIENT_VIEW = "client_view"   # Client opened the invoice
    PAYMENT = "payment"           # Manual mark-paid
    SCHEDULE = "schedule"         # Overdue sweep


S = InvoiceStatus
T = TransitionTrigger

# (from, to) -> triggers allowed to perform it
TRANSITIONS: Dict[Tuple[InvoiceStatus, InvoiceStatus], FrozenSet[TransitionTrigger]] = {
    (S.DRAFT, S.SENT): frozenset({T.USER}),
    (S.DRAFT, S.CANCELLED): frozenset({T.USER}),
    (S.SENT, S.VIEWED): frozenset({T.CLIENT_VIEW}),
    (S.SENT, S.PAID): frozenset({T.PAYMENT}),
    (S.SENT, S.OVERDUE): frozenset({T.SCHEDULE}),
    (S.SENT, S.CANCELLED): frozenset({T.USER}),
    (S.VIEWED, S.PAID): frozenset({T.PAYMENT}),
    (S.VIEWED, S.OVERDUE): frozenset({T.SCHEDULE}),
    (S.VIEWED, S.CANCELLED): frozenset({T.USER}),
    (S.OVERDUE, S.PAID): frozenset({T.PAYMENT}),
}

TERMINAL_STATUSES = frozenset({S.PAID, S.CANCELLED})
MUTABLE_STATUSES = frozenset({S.DRAFT})


def _status(value) -> InvoiceStatus:
    return value if isinstance(value, InvoiceStatus) else InvoiceStatus(value)


class InvoiceStatusMachine:
    """Single authority for which transitions and mutations are legal."""

    @staticmethod
    def allowed_targets(current) -> FrozenSet[InvoiceStatus]:
        current = _status(current)
        return frozenset(to for (frm, to) in TRANSITIONS if frm == current)

    @staticmethod
    def can_transition(current, target, trigger: TransitionTrigger = T.USER) -> bool:
        triggers = TRANSITIONS.get((_status(current), _status(target)))
        return bool(triggers) and trigger in triggers

    @classmethod
    def assert_transition(cls, current, target, trigger: TransitionTrigger = T.USER) -> InvoiceStatus:
        """
        Validate a transition.

        Raises:
            InvalidStateTransition: If the move is not in the table, or the
                trigger is not allowed to perform it.
        """
        current = _status(current)
        target = _status(target)

        triggers = TRANSITIONS.get((current, target))
        if not triggers:
            if current in TERMINAL_STATUSES:
                message = f"Invoice is {current.value} and can no longer change status"
            else:
                message = f"Cannot change invoice status from {current.value} to {target.value}"
            raise InvalidStateTransition(message, current.value, target.value)

        if trigger not in triggers:
            raise InvalidStateTransition(
                f"Transition from {current.value} to {target.value} cannot be triggered by {trigger.value}",
                current.value,
                target.value,
            )

        logger.debug(f"Transition allowed: {current.value} -> {target.value} ({trigger.value})")
        return target

    @staticmethod
    def is_editable(current) -> bool:
        return _status(current) in MUTABLE_STATUSES

    @classmethod
    def assert_editable(cls, current) -> None:
        if not cls.is_editable(current):
            raise InvalidStateTransition("Only draft invoices can be edited", _status(current).value)

    @classmethod
    def assert_deletable(cls, current) -> None:
        if not cls.is_editable(current):
            raise InvalidStateTransition("Only draft invoices can be deleted", _status(current).value)


status_machine = InvoiceStatusMachine()
