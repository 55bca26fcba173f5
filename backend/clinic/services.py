import logging

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .choices import CardStatus, CardType, MembershipStatus, PaymentMethod, RechargeType
from .exceptions import InsufficientCount, InvalidCard, RequiresCard
from .models import AuditAction, AuditLog, MembershipCard, ServiceRecord
from .rules import (
    ZERO,
    add_months,
    add_period,
    card_defaults_from_type,
    evaluate_status,
    local_day,
    money,
    rule_for,
    validate_charge,
    whole,
)

logger = logging.getLogger(__name__)

LOW_COUNT_THRESHOLD = 5


def _log_audit(action, user=None, card=None, metadata=None):
    AuditLog.objects.create(
        action=action,
        user=user if user is not None and user.is_authenticated else None,
        card=card,
        metadata=metadata or {},
    )


def refresh_membership_status(customer, cards=None, now=None):
    """Recompute the customer's membership status from their cards."""
    if cards is None:
        cards = customer.cards.all()
    evaluation = evaluate_status(cards, now)
    if customer.membership_status != evaluation.aggregate:
        customer.membership_status = evaluation.aggregate
        customer.save(update_fields=["membership_status"])
    return evaluation


@transaction.atomic
def issue_card(
    customer,
    card_type=None,
    membership_type=None,
    service_count=None,
    unit_price=None,
    initial_amount=None,
    bonus_amount=None,
    period_type=None,
    period_value=None,
    expiry_date=None,
    payment_method=PaymentMethod.CASH,
    notes="",
    user=None,
    today=None,
) -> MembershipCard:
    today = today or timezone.localdate()
    defaults = card_defaults_from_type(membership_type, today) if membership_type else {}
    card_type = card_type or defaults.get("card_type")
    rule = rule_for(card_type)

    count = whole(service_count if service_count is not None else defaults.get("service_count"))

    if expiry_date is None and period_type and period_value is not None:
        expiry_date = add_period(today, period_type, period_value)
    if expiry_date is None:
        expiry_date = defaults.get("expiry_date")

    if initial_amount is not None:
        paid = money(initial_amount)
    elif unit_price is not None:
        paid = money(unit_price) * count
    elif defaults and rule.charges_balance:
        paid = defaults["value_amount"] or defaults["price"]
    else:
        paid = defaults.get("price", ZERO)

    balance = paid + money(bonus_amount) if rule.charges_balance else ZERO

    card = MembershipCard.objects.create(
        customer=customer,
        card_type=card_type,
        membership_type=membership_type,
        balance=balance,
        count=count if rule.consumes_visit else 0,
        issue_date=today,
        expiry_date=expiry_date,
        last_recharge_date=timezone.now() if balance > ZERO else None,
        notes=notes,
    )
    _log_audit(
        AuditAction.ISSUE_CARD,
        user=user,
        card=card,
        metadata={
            "paid_amount": str(paid),
            "bonus_amount": str(money(bonus_amount)),
            "payment_method": payment_method,
        },
    )
    logger.info("Issued %s card %s to customer %s", card_type, card.card_number, customer.pk)
    refresh_membership_status(customer)
    return card


@transaction.atomic
def change_card_status(card, status, reason="", user=None, now=None) -> MembershipCard:
    if status not in CardStatus.values:
        raise ValidationError("无效的状态值")

    card = _lock(card)
    previous = card.status
    card.status = status
    if reason:
        stamp = timezone.localtime(now or timezone.now()).strftime("%Y-%m-%d %H:%M:%S")
        line = f'[{stamp}] 状态变更为"{status}"，原因：{reason}'
        card.notes = f"{card.notes}\n{line}" if card.notes else line
    card.save(update_fields=["status", "notes", "updated_at"])

    _log_audit(
        AuditAction.STATUS_CHANGE,
        user=user,
        card=card,
        metadata={"from": previous, "to": status, "reason": reason},
    )
    logger.info("Card %s status %s -> %s", card.card_number, previous, status)
    refresh_membership_status(card.customer)
    return card


@transaction.atomic
def recharge_card(
    card,
    recharge_type,
    total_amount,
    count=0,
    amount=ZERO,
    extend_months=0,
    payment_method=PaymentMethod.CASH,
    notes="",
    user=None,
    today=None,
) -> MembershipCard:
    total_amount = money(total_amount)
    if total_amount <= ZERO:
        raise ValidationError("充值总金额必须大于0")
    card = _lock(card)
    if card.status not in (CardStatus.ACTIVE, CardStatus.EXPIRED):
        raise ValidationError(f"无法为{card.get_status_display()}的会员卡充值")

    today = today or timezone.localdate()
    count = whole(count)
    amount = money(amount)
    extend_months = whole(extend_months)

    if recharge_type in (RechargeType.COUNT, RechargeType.MIXED) and count > 0:
        card.count += count
    if recharge_type in (RechargeType.AMOUNT, RechargeType.MIXED):
        if amount > ZERO:
            card.balance = money(card.balance) + amount
        elif card.card_type == CardType.VALUE:
            card.balance = money(card.balance) + total_amount
    if recharge_type in (RechargeType.EXTEND, RechargeType.MIXED) and extend_months > 0:
        base = card.expiry_date if card.expiry_date and card.expiry_date > today else today
        card.expiry_date = add_months(base, extend_months)

    card.last_recharge_date = timezone.now()
    if card.status == CardStatus.EXPIRED and card.expiry_date and card.expiry_date > today:
        card.status = CardStatus.ACTIVE
    card.save(
        update_fields=["count", "balance", "expiry_date", "last_recharge_date", "status", "updated_at"]
    )

    _log_audit(
        AuditAction.RECHARGE,
        user=user,
        card=card,
        metadata={
            "recharge_type": recharge_type,
            "total_amount": str(total_amount),
            "count": count,
            "amount": str(amount),
            "extend_months": extend_months,
            "payment_method": payment_method,
            "notes": notes,
        },
    )
    refresh_membership_status(card.customer)
    return card


def _lock(card):
    return MembershipCard.objects.select_for_update().get(pk=card.pk)


def _lock_in_order(*cards):
    """Lock the given cards in primary key order, keyed by pk."""
    pks = sorted({card.pk for card in cards if card is not None})
    rows = MembershipCard.objects.select_for_update().filter(pk__in=pks).order_by("pk")
    return {card.pk: card for card in rows}


def _charge(card, fee, service=None, user=None):
    rule = rule_for(card.card_type)
    update_fields = ["last_consume_date", "updated_at"]
    if rule.consumes_visit:
        if card.count < 1:
            raise InsufficientCount()
        card.count -= 1
        update_fields.append("count")
    if rule.charges_balance:
        card.balance = money(card.balance) - money(fee)
        update_fields.append("balance")
    card.last_consume_date = timezone.now()
    card.save(update_fields=update_fields)

    _log_audit(
        AuditAction.CHARGE,
        user=user,
        card=card,
        metadata={"service_id": service.pk if service else None, "fee": str(money(fee))},
    )
    logger.info("Charged card %s fee %s", card.card_number, money(fee))


def _refund(card, fee, service=None, user=None):
    rule = rule_for(card.card_type)
    update_fields = ["updated_at"]
    if rule.consumes_visit:
        card.count += 1
        update_fields.append("count")
    if rule.charges_balance:
        card.balance = money(card.balance) + money(fee)
        update_fields.append("balance")
    card.save(update_fields=update_fields)

    _log_audit(
        AuditAction.REFUND,
        user=user,
        card=card,
        metadata={"service_id": service.pk if service else None, "fee": str(money(fee))},
    )
    logger.info("Refunded card %s fee %s", card.card_number, money(fee))


def _check_owner(card, customer):
    if card is not None and card.customer_id != customer.pk:
        raise InvalidCard("会员卡不属于该客户")


@transaction.atomic
def record_service(customer, service_fee, payment_method, membership=None, user=None, **fields) -> ServiceRecord:
    card = None
    if payment_method == PaymentMethod.MEMBERSHIP:
        if membership is None:
            raise RequiresCard()
        _check_owner(membership, customer)
        card = _lock(membership)
        validate_charge(card, service_fee)

    service = ServiceRecord.objects.create(
        customer=customer,
        membership=card,
        service_fee=service_fee,
        payment_method=payment_method,
        **fields,
    )
    if card is not None:
        _charge(card, service_fee, service=service, user=user)
    return service


@transaction.atomic
def update_service(service, user=None, **changes) -> ServiceRecord:
    """Apply ``changes`` to ``service``, moving any membership charge.

    When payment method, card or fee change, the new charge is validated as
    if the old one had been returned first, then the old charge is refunded
    and the new one taken.
    """
    customer = changes.get("customer", service.customer)
    payment_method = changes.get("payment_method", service.payment_method)
    fee = changes.get("service_fee", service.service_fee)
    new_card = changes.get("membership", service.membership)
    if payment_method != PaymentMethod.MEMBERSHIP:
        new_card = None

    old_card = service.charged_card
    old_fee = service.service_fee
    payment_changed = (
        payment_method != service.payment_method
        or money(fee) != money(old_fee)
        or (new_card.pk if new_card else None) != (old_card.pk if old_card else None)
    )

    if payment_changed:
        if payment_method == PaymentMethod.MEMBERSHIP and new_card is None:
            raise RequiresCard()
        _check_owner(new_card, customer)

        same_card = old_card is not None and new_card is not None and old_card.pk == new_card.pk
        locked = _lock_in_order(old_card, new_card)
        old_locked = locked.get(old_card.pk) if old_card is not None else None
        new_locked = locked.get(new_card.pk) if new_card is not None else None

        if new_locked is not None:
            validate_charge(
                new_locked,
                fee,
                original_fee=old_fee if same_card else ZERO,
                is_same_card=same_card,
            )
        if old_locked is not None:
            _refund(old_locked, old_fee, service=service, user=user)
        if new_locked is not None:
            _charge(new_locked, fee, service=service, user=user)
        new_card = new_locked

    for field, value in changes.items():
        setattr(service, field, value)
    service.payment_method = payment_method
    service.membership = new_card
    service.save()
    return service


@transaction.atomic
def delete_service(service, user=None) -> None:
    card = service.charged_card
    if card is not None:
        _refund(_lock(card), service.service_fee, service=service, user=user)
    service.delete()


@transaction.atomic
def expire_overdue_cards(now=None, dry_run=False, user=None) -> list:
    today = local_day(now)
    overdue = list(
        MembershipCard.objects.select_related("customer").filter(
            status=CardStatus.ACTIVE,
            expiry_date__lt=today,
        )
    )
    if not dry_run:
        for card in overdue:
            change_card_status(card, CardStatus.EXPIRED, reason="有效期已过", user=user, now=now)
    return overdue


def membership_stats(now=None) -> dict:
    today = local_day(now)
    cards = list(MembershipCard.objects.select_related("customer"))
    evaluation = evaluate_status(cards, today)

    counts = {status: 0 for status in (MembershipStatus.ACTIVE, MembershipStatus.EXPIRING, MembershipStatus.EXPIRED)}
    for status in evaluation.per_card.values():
        counts[status] += 1

    distribution = {card_type: 0 for card_type in CardType.values}
    for card in cards:
        if card.status == CardStatus.ACTIVE:
            distribution[card.card_type] += 1

    expiring = sorted(
        (card for card in cards if evaluation.per_card.get(card.id) == MembershipStatus.EXPIRING),
        key=lambda card: card.expiry_date,
    )
    low_count = sorted(
        (
            card
            for card in cards
            if card.status == CardStatus.ACTIVE
            and rule_for(card.card_type).consumes_visit
            and 0 < card.count <= LOW_COUNT_THRESHOLD
        ),
        key=lambda card: card.count,
    )

    return {
        "total_count": len(cards),
        "active_count": counts[MembershipStatus.ACTIVE],
        "expiring_count": counts[MembershipStatus.EXPIRING],
        "expired_count": counts[MembershipStatus.EXPIRED],
        "card_type_distribution": distribution,
        "new_card_this_month": sum(
            1 for card in cards if (card.issue_date.year, card.issue_date.month) == (today.year, today.month)
        ),
        "expiring_cards": expiring[:5],
        "low_count_cards": low_count[:5],
    }

