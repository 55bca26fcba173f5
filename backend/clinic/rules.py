"""Membership card rules: display status, card type table, payment checks.

Nothing in this module reads or writes the database. Cards are any object
with ``id``, ``card_type``, ``status``, ``balance``, ``count`` and
``expiry_date`` attributes, so ``MembershipCard`` rows and the API client's
``CardSnapshot`` values go through the same code.
"""
from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from django.utils import timezone

from .choices import CapacityKind, CardStatus, CardType, MembershipStatus, PeriodType
from .exceptions import InsufficientBalance, InvalidCard, RequiresCard

EXPIRING_WINDOW_DAYS = 15

MONEY = Decimal("0.01")
ZERO = Decimal("0.00")

# Most favourable standing first.
AGGREGATE_PRIORITY = (
    MembershipStatus.ACTIVE,
    MembershipStatus.EXPIRING,
    MembershipStatus.EXPIRED,
)


def money(value) -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        return Decimal(str(value)).quantize(MONEY)
    except (InvalidOperation, ValueError):
        return ZERO


def whole(value) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def format_currency(value) -> str:
    return f"¥{money(value):,.2f}"


def local_day(now=None) -> date:
    if now is None:
        return timezone.localdate()
    if isinstance(now, datetime):
        if timezone.is_aware(now):
            return timezone.localtime(now).date()
        return now.date()
    return now


def _as_date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return local_day(value)
    return value


# ---------------------------------------------------------------- status


def effective_status(card, now=None) -> str | None:
    """Display status of one card, or ``None`` when it does not count.

    Cancelled, frozen and lost cards do not contribute to a customer's
    membership standing.
    """
    if card.status == CardStatus.EXPIRED:
        return MembershipStatus.EXPIRED
    if card.status != CardStatus.ACTIVE:
        return None

    expiry = _as_date(getattr(card, "expiry_date", None))
    if expiry is None:
        return MembershipStatus.ACTIVE

    days_left = (expiry - local_day(now)).days
    if days_left < 0:
        return MembershipStatus.EXPIRED
    if days_left <= EXPIRING_WINDOW_DAYS:
        return MembershipStatus.EXPIRING
    return MembershipStatus.ACTIVE


@dataclass(frozen=True)
class StatusEvaluation:
    per_card: dict
    aggregate: str


def evaluate_status(cards, now=None) -> StatusEvaluation:
    today = local_day(now)
    per_card = {}
    found = set()
    for card in cards:
        status = effective_status(card, today)
        if status is None:
            continue
        per_card[card.id] = status
        found.add(status)

    aggregate = next(
        (status for status in AGGREGATE_PRIORITY if status in found),
        MembershipStatus.NONE,
    )
    return StatusEvaluation(per_card=per_card, aggregate=aggregate)


# ------------------------------------------------------------- card types


@dataclass(frozen=True)
class CardTypeRule:
    required_fields: frozenset
    capacity_kind: str
    charges_balance: bool
    consumes_visit: bool


CARD_TYPE_RULES = {
    CardType.COUNT: CardTypeRule(
        required_fields=frozenset({"service_count", "unit_price"}),
        capacity_kind=CapacityKind.COUNT,
        charges_balance=False,
        consumes_visit=True,
    ),
    CardType.PERIOD: CardTypeRule(
        required_fields=frozenset({"period_value", "period_type"}),
        capacity_kind=CapacityKind.UNLIMITED,
        charges_balance=False,
        consumes_visit=False,
    ),
    # count wins over the stored value for display
    CardType.MIXED: CardTypeRule(
        required_fields=frozenset({"service_count", "unit_price", "period_value", "period_type"}),
        capacity_kind=CapacityKind.COUNT,
        charges_balance=True,
        consumes_visit=True,
    ),
    CardType.VALUE: CardTypeRule(
        required_fields=frozenset({"initial_amount"}),
        capacity_kind=CapacityKind.CURRENCY,
        charges_balance=True,
        consumes_visit=False,
    ),
}


def rule_for(card_type) -> CardTypeRule:
    try:
        return CARD_TYPE_RULES[card_type]
    except KeyError:
        raise ValueError(f"Unknown card type: {card_type!r}") from None


def required_fields(card_type) -> frozenset:
    return rule_for(card_type).required_fields


@dataclass(frozen=True)
class Capacity:
    kind: str
    value: int | Decimal | None


CAPACITY_READERS = {
    CapacityKind.COUNT: lambda card: whole(getattr(card, "count", None)),
    CapacityKind.CURRENCY: lambda card: money(getattr(card, "balance", None)),
    CapacityKind.UNLIMITED: lambda card: None,
}

CAPACITY_FORMATS = {
    CapacityKind.COUNT: lambda value: f"{value}次",
    CapacityKind.CURRENCY: format_currency,
    CapacityKind.UNLIMITED: lambda value: "不限",
}


def remaining_capacity(card) -> Capacity:
    kind = rule_for(card.card_type).capacity_kind
    return Capacity(kind=kind, value=CAPACITY_READERS[kind](card))


def capacity_display(card) -> str:
    capacity = remaining_capacity(card)
    return CAPACITY_FORMATS[capacity.kind](capacity.value)


def add_months(day: date, months: int) -> date:
    idx = (day.month - 1) + months
    year = day.year + (idx // 12)
    month = (idx % 12) + 1
    return day.replace(year=year, month=month, day=min(day.day, monthrange(year, month)[1]))


def add_period(start: date, period_type, period_value: int) -> date:
    period_value = int(period_value)
    if period_value < 0:
        raise ValueError("period_value must not be negative")

    if period_type == PeriodType.DAY:
        return start + timedelta(days=period_value)
    if period_type == PeriodType.WEEK:
        return start + timedelta(days=7 * period_value)
    if period_type == PeriodType.MONTH:
        return add_months(start, period_value)
    if period_type == PeriodType.YEAR:
        return add_months(start, 12 * period_value)
    raise ValueError(f"Unknown period type: {period_type!r}")


def card_defaults_from_type(membership_type, today: date) -> dict:
    """Initial card values taken from a catalog entry."""
    return {
        "card_type": membership_type.category,
        "service_count": whole(membership_type.service_count),
        "value_amount": money(membership_type.value_amount),
        "price": money(membership_type.price),
        "expiry_date": today + timedelta(days=whole(membership_type.validity_days)),
    }


# --------------------------------------------------------------- payments


def validate_charge(card, proposed_fee, original_fee=0, is_same_card=True, now=None) -> None:
    """Check that ``card`` can pay ``proposed_fee``.

    ``original_fee`` is the amount this card already paid for the record being
    edited; it is counted as available again only when the edit keeps the
    same card. Count cards are only status-checked here, the visit itself is
    taken off when the service record is stored.
    """
    if card is None:
        raise RequiresCard()

    if card.status != CardStatus.ACTIVE or effective_status(card, now) == MembershipStatus.EXPIRED:
        raise InvalidCard()

    if not rule_for(card.card_type).charges_balance:
        return

    fee = money(proposed_fee)
    available = money(card.balance)
    if is_same_card:
        available += money(original_fee)
    if available < fee:
        raise InsufficientBalance(balance=available, required=fee)
