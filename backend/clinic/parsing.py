"""Turn raw form values into typed ones before any payment rule sees them."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .choices import PaymentMethod
from .rules import MONEY, ZERO, validate_charge


class InvalidInput(ValueError):
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def _blank(raw) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def parse_amount(raw, field: str = "amount") -> Decimal:
    if _blank(raw):
        raise InvalidInput(field, "请输入金额")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(field, "金额格式不正确") from None
    if not value.is_finite() or value < ZERO:
        raise InvalidInput(field, "金额不能为负数")
    return value.quantize(MONEY)


def parse_count(raw, field: str = "count") -> int:
    if _blank(raw):
        raise InvalidInput(field, "请输入次数")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise InvalidInput(field, "次数必须是整数") from None
    if value < 0:
        raise InvalidInput(field, "次数不能为负数")
    return value


@dataclass(frozen=True)
class ServicePayment:
    payment_method: str
    card_id: str | None
    service_fee: Decimal


def parse_service_payment(form) -> ServicePayment:
    method = str(form.get("payment_method") or PaymentMethod.CASH).strip()
    if method not in PaymentMethod.values:
        raise InvalidInput("payment_method", "无效的支付方式")

    card_id = form.get("membership")
    card_id = None if _blank(card_id) else str(card_id).strip()

    return ServicePayment(
        payment_method=method,
        card_id=card_id,
        service_fee=parse_amount(form.get("service_fee"), "service_fee"),
    )


def precheck_service_payment(form, cards, original: ServicePayment | None = None, now=None) -> ServicePayment:
    """Validate a service form against the customer's loaded cards.

    ``original`` is the stored payment of the record being edited, if any.
    Raises ``InvalidInput`` or a ``ChargeRejected`` subclass.
    """
    payment = parse_service_payment(form)
    if payment.payment_method != PaymentMethod.MEMBERSHIP:
        return payment

    card = None
    if payment.card_id is not None:
        card = next((c for c in cards if str(c.id) == payment.card_id), None)

    original_fee = ZERO
    same_card = False
    if original is not None and original.payment_method == PaymentMethod.MEMBERSHIP:
        same_card = original.card_id is not None and original.card_id == payment.card_id
        original_fee = original.service_fee

    validate_charge(
        card,
        payment.service_fee,
        original_fee=original_fee if same_card else ZERO,
        is_same_card=same_card,
        now=now,
    )
    return payment
