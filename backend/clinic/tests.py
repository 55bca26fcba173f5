from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from users.models import UserRole

from . import services
from .choices import CapacityKind, CardStatus, CardType, MembershipStatus, PaymentMethod, PeriodType, RechargeType
from .client import CardSnapshot, ClinicApiClient, normalize_card_list
from .exceptions import ClinicApiError, InsufficientBalance, InsufficientCount, InvalidCard, RequiresCard
from .models import AuditAction, AuditLog, Customer, MembershipCard, MembershipType, ServiceRecord
from .parsing import InvalidInput, ServicePayment, parse_amount, parse_count, precheck_service_payment
from .rules import (
    add_months,
    add_period,
    capacity_display,
    effective_status,
    evaluate_status,
    format_currency,
    remaining_capacity,
    required_fields,
    validate_charge,
)
from .services import (
    change_card_status,
    delete_service,
    issue_card,
    membership_stats,
    recharge_card,
    record_service,
    update_service,
)
from .throttles import LookupRateThrottle, QrRateThrottle, StatsRateThrottle

TODAY = date(2026, 3, 10)


def make_card(pk=1, card_type=CardType.VALUE, status=CardStatus.ACTIVE, balance="0", count=0, expiry=None):
    return SimpleNamespace(
        id=pk,
        card_type=card_type,
        status=status,
        balance=Decimal(balance),
        count=count,
        expiry_date=expiry,
    )


class EffectiveStatusTests(SimpleTestCase):
    def test_active_card_far_from_expiry(self):
        card = make_card(expiry=TODAY + timedelta(days=30))
        self.assertEqual(effective_status(card, TODAY), MembershipStatus.ACTIVE)

    def test_window_boundary_is_expiring(self):
        self.assertEqual(
            effective_status(make_card(expiry=TODAY + timedelta(days=15)), TODAY),
            MembershipStatus.EXPIRING,
        )
        self.assertEqual(
            effective_status(make_card(expiry=TODAY + timedelta(days=16)), TODAY),
            MembershipStatus.ACTIVE,
        )

    def test_expiry_today_is_expiring_and_yesterday_expired(self):
        self.assertEqual(effective_status(make_card(expiry=TODAY), TODAY), MembershipStatus.EXPIRING)
        self.assertEqual(
            effective_status(make_card(expiry=TODAY - timedelta(days=1)), TODAY),
            MembershipStatus.EXPIRED,
        )

    def test_missing_expiry_is_active(self):
        self.assertEqual(effective_status(make_card(expiry=None), TODAY), MembershipStatus.ACTIVE)

    def test_stored_expired_wins_over_future_date(self):
        card = make_card(status=CardStatus.EXPIRED, expiry=TODAY + timedelta(days=100))
        self.assertEqual(effective_status(card, TODAY), MembershipStatus.EXPIRED)

    def test_inactive_statuses_do_not_count(self):
        for card_status in (CardStatus.CANCELLED, CardStatus.FROZEN, CardStatus.LOST):
            card = make_card(status=card_status, expiry=TODAY + timedelta(days=100))
            self.assertIsNone(effective_status(card, TODAY))


class EvaluateStatusTests(SimpleTestCase):
    def test_no_cards_is_none(self):
        evaluation = evaluate_status([], TODAY)
        self.assertEqual(evaluation.per_card, {})
        self.assertEqual(evaluation.aggregate, MembershipStatus.NONE)

    def test_active_beats_expiring_and_expired(self):
        cards = [
            make_card(pk=1, expiry=TODAY - timedelta(days=3)),
            make_card(pk=2, expiry=TODAY + timedelta(days=5)),
            make_card(pk=3, expiry=TODAY + timedelta(days=60)),
        ]
        evaluation = evaluate_status(cards, TODAY)
        self.assertEqual(evaluation.aggregate, MembershipStatus.ACTIVE)
        self.assertEqual(
            evaluation.per_card,
            {1: MembershipStatus.EXPIRED, 2: MembershipStatus.EXPIRING, 3: MembershipStatus.ACTIVE},
        )

    def test_expiring_beats_expired(self):
        cards = [
            make_card(pk=1, status=CardStatus.EXPIRED),
            make_card(pk=2, expiry=TODAY + timedelta(days=1)),
        ]
        self.assertEqual(evaluate_status(cards, TODAY).aggregate, MembershipStatus.EXPIRING)

    def test_only_frozen_cards_is_none(self):
        cards = [make_card(pk=1, status=CardStatus.FROZEN), make_card(pk=2, status=CardStatus.LOST)]
        evaluation = evaluate_status(cards, TODAY)
        self.assertEqual(evaluation.per_card, {})
        self.assertEqual(evaluation.aggregate, MembershipStatus.NONE)


class CardTypeRuleTests(SimpleTestCase):
    def test_required_fields(self):
        self.assertEqual(required_fields(CardType.COUNT), {"service_count", "unit_price"})
        self.assertEqual(required_fields(CardType.PERIOD), {"period_value", "period_type"})
        self.assertEqual(
            required_fields(CardType.MIXED),
            {"service_count", "unit_price", "period_value", "period_type"},
        )
        self.assertEqual(required_fields(CardType.VALUE), {"initial_amount"})

    def test_unknown_card_type(self):
        with self.assertRaises(ValueError):
            required_fields("gold")

    def test_capacity_per_card_type(self):
        self.assertEqual(remaining_capacity(make_card(card_type=CardType.COUNT, count=7)).value, 7)
        self.assertEqual(capacity_display(make_card(card_type=CardType.COUNT, count=7)), "7次")

        mixed = make_card(card_type=CardType.MIXED, count=3, balance="800")
        self.assertEqual(remaining_capacity(mixed).kind, CapacityKind.COUNT)
        self.assertEqual(capacity_display(mixed), "3次")

        value = make_card(card_type=CardType.VALUE, balance="1234")
        self.assertEqual(remaining_capacity(value).value, Decimal("1234.00"))
        self.assertEqual(capacity_display(value), "¥1,234.00")

        period = make_card(card_type=CardType.PERIOD)
        self.assertIsNone(remaining_capacity(period).value)
        self.assertEqual(capacity_display(period), "不限")

    def test_format_currency(self):
        self.assertEqual(format_currency(Decimal("50")), "¥50.00")
        self.assertEqual(format_currency(None), "¥0.00")


class PeriodTests(SimpleTestCase):
    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(date(2026, 1, 31), 1), date(2026, 2, 28))
        self.assertEqual(add_months(date(2026, 11, 15), 3), date(2027, 2, 15))

    def test_add_months_leap_year(self):
        self.assertEqual(add_period(date(2024, 1, 31), PeriodType.MONTH, 1), date(2024, 2, 29))

    def test_add_period(self):
        start = date(2026, 1, 31)
        self.assertEqual(add_period(start, PeriodType.DAY, 10), date(2026, 2, 10))
        self.assertEqual(add_period(start, PeriodType.WEEK, 2), date(2026, 2, 14))
        self.assertEqual(add_period(start, PeriodType.MONTH, 3), date(2026, 4, 30))
        self.assertEqual(add_period(start, PeriodType.YEAR, 1), date(2027, 1, 31))

    def test_add_period_rejects_bad_input(self):
        with self.assertRaises(ValueError):
            add_period(TODAY, PeriodType.MONTH, -1)
        with self.assertRaises(ValueError):
            add_period(TODAY, "decade", 1)


class ValidateChargeTests(SimpleTestCase):
    def test_requires_card(self):
        with self.assertRaises(RequiresCard):
            validate_charge(None, Decimal("100"))

    def test_inactive_card_is_invalid(self):
        for card_status in (CardStatus.FROZEN, CardStatus.CANCELLED, CardStatus.LOST, CardStatus.EXPIRED):
            with self.assertRaises(InvalidCard):
                validate_charge(make_card(status=card_status, balance="500"), Decimal("10"), now=TODAY)

    def test_past_expiry_is_invalid(self):
        card = make_card(balance="500", expiry=TODAY - timedelta(days=1))
        with self.assertRaises(InvalidCard):
            validate_charge(card, Decimal("10"), now=TODAY)

    def test_insufficient_balance_message(self):
        card = make_card(balance="50")
        with self.assertRaises(InsufficientBalance) as ctx:
            validate_charge(card, Decimal("120"), now=TODAY)
        self.assertEqual(ctx.exception.message, "会员卡余额不足，当前余额 ¥50.00，需要 ¥120.00")
        self.assertEqual(ctx.exception.code, "insufficient_balance")

    def test_exact_balance_passes(self):
        validate_charge(make_card(balance="120"), Decimal("120"), now=TODAY)

    def test_edit_on_same_card_counts_original_fee(self):
        card = make_card(balance="50")
        validate_charge(card, Decimal("120"), original_fee=Decimal("100"), is_same_card=True, now=TODAY)

    def test_same_card_edit_within_original(self):
        card = make_card(balance="100")
        validate_charge(card, Decimal("150"), original_fee=Decimal("80"), is_same_card=True, now=TODAY)

    def test_edit_to_other_card_ignores_original_fee(self):
        card = make_card(balance="50")
        with self.assertRaises(InsufficientBalance):
            validate_charge(card, Decimal("120"), original_fee=Decimal("100"), is_same_card=False, now=TODAY)

    def test_count_and_period_cards_skip_balance(self):
        validate_charge(make_card(card_type=CardType.COUNT, count=0), Decimal("999"), now=TODAY)
        validate_charge(make_card(card_type=CardType.PERIOD), Decimal("999"), now=TODAY)

    def test_mixed_card_checks_balance(self):
        with self.assertRaises(InsufficientBalance):
            validate_charge(make_card(card_type=CardType.MIXED, balance="10", count=5), Decimal("20"), now=TODAY)


class ParsingTests(SimpleTestCase):
    def test_parse_amount(self):
        self.assertEqual(parse_amount("120.5"), Decimal("120.50"))
        self.assertEqual(parse_amount(" 0 "), Decimal("0.00"))
        for raw in ("", None, "abc", "-1", "NaN"):
            with self.assertRaises(InvalidInput):
                parse_amount(raw, "service_fee")

    def test_parse_count(self):
        self.assertEqual(parse_count("12"), 12)
        for raw in ("", "1.5", "-3", "ten"):
            with self.assertRaises(InvalidInput):
                parse_count(raw)

    def test_invalid_input_keeps_field(self):
        with self.assertRaises(InvalidInput) as ctx:
            parse_amount("x", "service_fee")
        self.assertEqual(ctx.exception.field, "service_fee")


class PrecheckServicePaymentTests(SimpleTestCase):
    def setUp(self):
        self.cards = [
            make_card(pk=1, balance="50"),
            make_card(pk=2, balance="500"),
            make_card(pk=3, status=CardStatus.FROZEN, balance="500"),
        ]

    def test_cash_payment_skips_card_checks(self):
        payment = precheck_service_payment({"payment_method": "cash", "service_fee": "120"}, self.cards)
        self.assertEqual(payment.payment_method, PaymentMethod.CASH)
        self.assertIsNone(payment.card_id)

    def test_membership_without_card(self):
        with self.assertRaises(RequiresCard):
            precheck_service_payment({"payment_method": "membership", "service_fee": "120"}, self.cards)

    def test_unknown_card_id_requires_card(self):
        form = {"payment_method": "membership", "membership": "99", "service_fee": "120"}
        with self.assertRaises(RequiresCard):
            precheck_service_payment(form, self.cards)

    def test_frozen_card(self):
        form = {"payment_method": "membership", "membership": "3", "service_fee": "120"}
        with self.assertRaises(InvalidCard):
            precheck_service_payment(form, self.cards)

    def test_balance_check(self):
        form = {"payment_method": "membership", "membership": "1", "service_fee": "120"}
        with self.assertRaises(InsufficientBalance):
            precheck_service_payment(form, self.cards)

        form["membership"] = "2"
        payment = precheck_service_payment(form, self.cards)
        self.assertEqual(payment.card_id, "2")
        self.assertEqual(payment.service_fee, Decimal("120.00"))

    def test_edit_keeps_original_fee_on_same_card(self):
        original = ServicePayment(PaymentMethod.MEMBERSHIP, "1", Decimal("100"))
        form = {"payment_method": "membership", "membership": "1", "service_fee": "120"}
        precheck_service_payment(form, self.cards, original=original)

    def test_bad_fee_is_invalid_input(self):
        with self.assertRaises(InvalidInput):
            precheck_service_payment({"payment_method": "cash", "service_fee": "abc"}, self.cards)

    def test_bad_payment_method(self):
        with self.assertRaises(InvalidInput):
            precheck_service_payment({"payment_method": "bitcoin", "service_fee": "1"}, self.cards)


class ClientTests(SimpleTestCase):
    def _response(self, body, status_code=200):
        response = mock.Mock(status_code=status_code, ok=status_code < 400, content=b"{}")
        response.json.return_value = body
        return response

    def _client(self, response=None, error=None):
        session = mock.Mock()
        if error is not None:
            session.request.side_effect = error
        else:
            session.request.return_value = response
        return ClinicApiClient(base_url="http://clinic.test/api/", timeout=5, session=session), session

    def test_normalize_card_list_envelopes(self):
        row = {"_id": "a1", "cardNumber": "MK202603001", "cardType": "value", "status": "active", "balance": "30"}
        self.assertEqual(normalize_card_list(None), [])
        self.assertEqual(normalize_card_list({"success": True}), [])
        self.assertEqual(normalize_card_list([row])[0].card_number, "MK202603001")
        self.assertEqual(normalize_card_list({"data": [row]})[0].id, "a1")
        self.assertEqual(normalize_card_list({"memberships": [row]})[0].balance, Decimal("30.00"))

    def test_normalize_card_list_rejects_other_shapes(self):
        with self.assertRaises(ClinicApiError):
            normalize_card_list("cards")
        with self.assertRaises(ClinicApiError):
            normalize_card_list({"data": "cards"})

    def test_snapshot_accepts_snake_case(self):
        snapshot = CardSnapshot.from_payload(
            {
                "id": 4,
                "card_number": "MK202603004",
                "card_type": "count",
                "status": "active",
                "count": 6,
                "expiry_date": "2026-11-01",
            }
        )
        self.assertEqual(snapshot.id, "4")
        self.assertEqual(snapshot.count, 6)
        self.assertEqual(snapshot.expiry_date, date(2026, 11, 1))

    def test_load_customer_membership(self):
        body = {
            "success": True,
            "data": [
                {"id": 1, "card_type": "value", "status": "active", "balance": "100", "expiry_date": "2026-03-20"},
                {"id": 2, "card_type": "value", "status": "frozen", "balance": "100", "expiry_date": None},
            ],
        }
        client, session = self._client(self._response(body))
        cards, evaluation = client.load_customer_membership(7, now=TODAY)

        session.request.assert_called_once_with("GET", "http://clinic.test/api/memberships/customer/7/", timeout=5)
        self.assertEqual(len(cards), 2)
        self.assertEqual(evaluation.aggregate, MembershipStatus.EXPIRING)
        self.assertEqual(evaluation.per_card, {"1": MembershipStatus.EXPIRING})

    def test_network_error(self):
        client, _ = self._client(error=requests.ConnectionError("down"))
        with self.assertRaises(ClinicApiError) as ctx:
            client.get_customer_cards(7)
        self.assertEqual(ctx.exception.message, "网络请求失败，请稍后重试")

    def test_server_error_uses_detail(self):
        client, _ = self._client(self._response({"detail": "找不到该客户"}, status_code=404))
        with self.assertRaises(ClinicApiError) as ctx:
            client.get_customer_cards(7)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.message, "找不到该客户")

    def test_server_error_with_html_body(self):
        response = mock.Mock(status_code=502, ok=False, content=b"<html>Bad Gateway</html>")
        response.json.side_effect = ValueError("not json")
        client, _ = self._client(response)
        with self.assertRaises(ClinicApiError) as ctx:
            client.get_customer_cards(7)
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(ctx.exception.message, "服务器错误，请稍后重试")

    def test_unparsable_success_body(self):
        response = mock.Mock(status_code=200, ok=True, content=b"<html>")
        response.json.side_effect = ValueError("not json")
        client, _ = self._client(response)
        with self.assertRaises(ClinicApiError) as ctx:
            client.get_customer_cards(7)
        self.assertEqual(ctx.exception.message, "服务器返回了无法解析的数据")

    def test_update_card_status(self):
        client, session = self._client(self._response({"id": 3, "status": "frozen"}))
        client.update_card_status(3, CardStatus.FROZEN, reason="家长申请")
        session.request.assert_called_once_with(
            "PATCH",
            "http://clinic.test/api/memberships/3/status/",
            timeout=5,
            json={"status": CardStatus.FROZEN, "reason": "家长申请"},
        )

    def test_update_card_status_rejects_unknown(self):
        client, session = self._client(self._response({}))
        with self.assertRaises(ValueError):
            client.update_card_status(3, "paused")
        session.request.assert_not_called()


class ServiceLayerTests(TestCase):
    def setUp(self):
        self.today = timezone.localdate()
        self.customer = Customer.objects.create(child_name="小明", parent_name="王女士", phone="13800000000")
        self.value_card = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("500"),
            expiry_date=self.today + timedelta(days=180),
        )

    def _count_card(self, count=10):
        return MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.COUNT,
            count=count,
            expiry_date=self.today + timedelta(days=180),
        )

    def test_card_number_sequence(self):
        prefix = f"MK{self.today:%Y%m}"
        self.assertEqual(self.value_card.card_number, f"{prefix}001")
        self.assertEqual(self._count_card().card_number, f"{prefix}002")

    def test_issue_card_from_membership_type(self):
        membership_type = MembershipType.objects.create(
            name="储值1000送200",
            category=CardType.VALUE,
            price=Decimal("1000"),
            value_amount=Decimal("1200"),
            validity_days=365,
        )
        card = issue_card(self.customer, membership_type=membership_type, bonus_amount=Decimal("50"))
        self.assertEqual(card.card_type, CardType.VALUE)
        self.assertEqual(card.balance, Decimal("1250.00"))
        self.assertEqual(card.expiry_date, self.today + timedelta(days=365))
        self.assertTrue(AuditLog.objects.filter(action=AuditAction.ISSUE_CARD, card=card).exists())

    def test_issue_count_card_with_period(self):
        card = issue_card(
            self.customer,
            card_type=CardType.COUNT,
            service_count=10,
            unit_price=Decimal("120"),
            period_type=PeriodType.MONTH,
            period_value=3,
            today=date(2026, 1, 31),
        )
        self.assertEqual(card.count, 10)
        self.assertEqual(card.balance, Decimal("0"))
        self.assertEqual(card.expiry_date, date(2026, 4, 30))
        log = AuditLog.objects.get(action=AuditAction.ISSUE_CARD, card=card)
        self.assertEqual(log.metadata["paid_amount"], "1200.00")

    def test_issue_mixed_card_keeps_count_and_balance(self):
        card = issue_card(
            self.customer,
            card_type=CardType.MIXED,
            service_count=5,
            unit_price=Decimal("100"),
            period_type=PeriodType.YEAR,
            period_value=1,
        )
        self.assertEqual(card.count, 5)
        self.assertEqual(card.balance, Decimal("500.00"))

    def test_change_status_appends_note_and_refreshes_customer(self):
        change_card_status(self.value_card, CardStatus.FROZEN, reason="家长申请")
        self.value_card.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual(self.value_card.status, CardStatus.FROZEN)
        self.assertIn('状态变更为"frozen"，原因：家长申请', self.value_card.notes)
        self.assertEqual(self.customer.membership_status, MembershipStatus.NONE)

    def test_recharge_value_card_defaults_to_total(self):
        recharge_card(self.value_card, RechargeType.AMOUNT, Decimal("300"), payment_method=PaymentMethod.WECHAT)
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("800.00"))
        self.assertIsNotNone(self.value_card.last_recharge_date)

    def test_recharge_reactivates_expired_card(self):
        self.value_card.status = CardStatus.EXPIRED
        self.value_card.expiry_date = self.today - timedelta(days=10)
        self.value_card.save()
        recharge_card(self.value_card, RechargeType.EXTEND, Decimal("100"), extend_months=2)
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.status, CardStatus.ACTIVE)
        self.assertEqual(self.value_card.expiry_date, add_months(self.today, 2))

    def test_recharge_rejects_frozen_card_and_zero_total(self):
        with self.assertRaises(ValidationError):
            recharge_card(self.value_card, RechargeType.AMOUNT, Decimal("0"))
        self.value_card.status = CardStatus.FROZEN
        self.value_card.save()
        with self.assertRaises(ValidationError):
            recharge_card(self.value_card, RechargeType.AMOUNT, Decimal("100"))

    def test_recharge_keeps_charge_made_after_load(self):
        stale = MembershipCard.objects.get(pk=self.value_card.pk)
        record_service(
            self.customer,
            Decimal("200"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="推拿",
        )
        card = recharge_card(stale, RechargeType.AMOUNT, Decimal("100"), amount=Decimal("100"))
        self.assertEqual(card.balance, Decimal("400.00"))
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("400.00"))

    def test_status_change_rolls_back_on_failure(self):
        with mock.patch("clinic.services._log_audit", side_effect=RuntimeError("audit down")):
            with self.assertRaises(RuntimeError):
                change_card_status(self.value_card, CardStatus.FROZEN, reason="家长申请")
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.status, CardStatus.ACTIVE)
        self.assertEqual(self.value_card.notes, "")

    def test_cards_are_locked_in_pk_order(self):
        other = self._count_card()
        locked = services._lock_in_order(other, self.value_card, None)
        self.assertEqual(list(locked), sorted([other.pk, self.value_card.pk]))

    def test_record_service_charges_value_card(self):
        service = record_service(
            self.customer,
            Decimal("120"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="小儿推拿",
        )
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("380.00"))
        self.assertIsNotNone(self.value_card.last_consume_date)
        self.assertEqual(service.membership_id, self.value_card.id)
        self.assertTrue(AuditLog.objects.filter(action=AuditAction.CHARGE, card=self.value_card).exists())

    def test_record_service_rejects_insufficient_balance(self):
        with self.assertRaises(InsufficientBalance):
            record_service(
                self.customer,
                Decimal("600"),
                PaymentMethod.MEMBERSHIP,
                membership=self.value_card,
                service_type="小儿推拿",
            )
        self.assertFalse(ServiceRecord.objects.exists())
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("500.00"))

    def test_record_service_requires_card(self):
        with self.assertRaises(RequiresCard):
            record_service(self.customer, Decimal("120"), PaymentMethod.MEMBERSHIP, service_type="小儿推拿")

    def test_record_service_rejects_other_customers_card(self):
        other = Customer.objects.create(child_name="小红", parent_name="李先生", phone="13900000000")
        with self.assertRaises(InvalidCard):
            record_service(
                other,
                Decimal("120"),
                PaymentMethod.MEMBERSHIP,
                membership=self.value_card,
                service_type="小儿推拿",
            )

    def test_count_card_uses_one_visit(self):
        card = self._count_card(count=2)
        record_service(self.customer, Decimal("120"), PaymentMethod.MEMBERSHIP, membership=card, service_type="推拿")
        card.refresh_from_db()
        self.assertEqual(card.count, 1)
        self.assertEqual(card.balance, Decimal("0.00"))

    def test_count_card_without_visits_left(self):
        card = self._count_card(count=0)
        with self.assertRaises(InsufficientCount):
            record_service(self.customer, Decimal("120"), PaymentMethod.MEMBERSHIP, membership=card, service_type="推拿")
        self.assertFalse(ServiceRecord.objects.exists())

    def test_period_card_is_not_decremented(self):
        card = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.PERIOD,
            expiry_date=self.today + timedelta(days=30),
        )
        record_service(self.customer, Decimal("120"), PaymentMethod.MEMBERSHIP, membership=card, service_type="推拿")
        card.refresh_from_db()
        self.assertEqual(card.count, 0)
        self.assertEqual(card.balance, Decimal("0.00"))

    def test_cash_service_leaves_cards_alone(self):
        service = record_service(
            self.customer,
            Decimal("120"),
            PaymentMethod.CASH,
            membership=self.value_card,
            service_type="推拿",
        )
        self.assertIsNone(service.membership)
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("500.00"))

    def test_update_fee_on_same_card(self):
        self.value_card.balance = Decimal("150")
        self.value_card.save()
        service = record_service(
            self.customer,
            Decimal("100"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="推拿",
        )
        # 50 left plus the 100 already paid covers the new fee
        update_service(service, service_fee=Decimal("140"))
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("10.00"))

    def test_update_moves_charge_to_other_card(self):
        other = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("300"),
            expiry_date=self.today + timedelta(days=90),
        )
        service = record_service(
            self.customer,
            Decimal("100"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="推拿",
        )
        update_service(service, membership=other)
        self.value_card.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("500.00"))
        self.assertEqual(other.balance, Decimal("200.00"))
        service.refresh_from_db()
        self.assertEqual(service.membership_id, other.id)

    def test_update_to_other_card_checks_full_fee(self):
        other = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("50"),
            expiry_date=self.today + timedelta(days=90),
        )
        service = record_service(
            self.customer,
            Decimal("100"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="推拿",
        )
        with self.assertRaises(InsufficientBalance):
            update_service(service, membership=other)
        self.value_card.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("400.00"))

    def test_update_to_cash_refunds(self):
        service = record_service(
            self.customer,
            Decimal("100"),
            PaymentMethod.MEMBERSHIP,
            membership=self.value_card,
            service_type="推拿",
        )
        update_service(service, payment_method=PaymentMethod.CASH)
        self.value_card.refresh_from_db()
        service.refresh_from_db()
        self.assertEqual(self.value_card.balance, Decimal("500.00"))
        self.assertIsNone(service.membership)

    def test_delete_service_refunds_count_card(self):
        card = self._count_card(count=3)
        service = record_service(self.customer, Decimal("0"), PaymentMethod.MEMBERSHIP, membership=card, service_type="推拿")
        delete_service(service)
        card.refresh_from_db()
        self.assertEqual(card.count, 3)
        self.assertTrue(AuditLog.objects.filter(action=AuditAction.REFUND, card=card).exists())

    def test_membership_stats(self):
        MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.COUNT,
            count=3,
            expiry_date=self.today + timedelta(days=5),
        )
        MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD, status=CardStatus.EXPIRED)
        stats = membership_stats()
        self.assertEqual(stats["total_count"], 3)
        self.assertEqual(stats["active_count"], 1)
        self.assertEqual(stats["expiring_count"], 1)
        self.assertEqual(stats["expired_count"], 1)
        self.assertEqual(stats["card_type_distribution"][CardType.VALUE], 1)
        self.assertEqual(stats["card_type_distribution"][CardType.PERIOD], 0)
        self.assertEqual(stats["new_card_this_month"], 3)
        self.assertEqual(len(stats["expiring_cards"]), 1)
        self.assertEqual(stats["low_count_cards"][0].count, 3)


class ExpireMembershipsCommandTests(TestCase):
    def setUp(self):
        today = timezone.localdate()
        self.customer = Customer.objects.create(child_name="小明", parent_name="王女士", phone="13800000000")
        self.overdue = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.PERIOD,
            expiry_date=today - timedelta(days=1),
        )
        self.current = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.PERIOD,
            expiry_date=today,
        )

    def test_dry_run_changes_nothing(self):
        out = StringIO()
        call_command("expire_memberships", "--dry-run", stdout=out)
        self.overdue.refresh_from_db()
        self.assertEqual(self.overdue.status, CardStatus.ACTIVE)
        self.assertIn("Would expire 1 card(s)", out.getvalue())

    def test_expires_overdue_cards(self):
        out = StringIO()
        call_command("expire_memberships", stdout=out)
        self.overdue.refresh_from_db()
        self.current.refresh_from_db()
        self.assertEqual(self.overdue.status, CardStatus.EXPIRED)
        self.assertEqual(self.current.status, CardStatus.ACTIVE)
        self.assertIn(self.overdue.card_number, out.getvalue())
        self.assertIn("Expired 1 card(s)", out.getvalue())


    def test_failure_leaves_every_card_untouched(self):
        second = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.PERIOD,
            expiry_date=timezone.localdate() - timedelta(days=5),
        )
        real_change = services.change_card_status
        changed = []

        def fail_on_second(card, *args, **kwargs):
            if changed:
                raise RuntimeError("database went away")
            changed.append(card.pk)
            return real_change(card, *args, **kwargs)

        with mock.patch("clinic.services.change_card_status", side_effect=fail_on_second):
            with self.assertRaises(RuntimeError):
                services.expire_overdue_cards()

        self.overdue.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(self.overdue.status, CardStatus.ACTIVE)
        self.assertEqual(second.status, CardStatus.ACTIVE)
        self.assertFalse(AuditLog.objects.filter(action=AuditAction.STATUS_CHANGE).exists())

class ApiTestCase(TestCase):
    role = UserRole.RECEPTIONIST

    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user(
            username=f"{self.role}-user",
            password="pass1234",
            role=self.role,
        )
        self.client = APIClient()
        self.client.force_authenticate(self.user)
        self.today = timezone.localdate()
        self.customer = Customer.objects.create(child_name="小明", parent_name="王女士", phone="13800000000")


class MembershipCardApiTests(ApiTestCase):
    def test_requires_authentication(self):
        response = APIClient().get(reverse("memberships-list"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_create_count_card(self):
        response = self.client.post(
            reverse("memberships-list"),
            data={"customer": self.customer.id, "card_type": "count", "service_count": 10, "unit_price": "120"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertTrue(response.data["card_number"].startswith("MK"))
        self.assertEqual(response.data["count"], 10)
        self.assertEqual(response.data["capacity"]["display"], "10次")

    def test_create_card_missing_required_fields(self):
        response = self.client.post(
            reverse("memberships-list"),
            data={"customer": self.customer.id, "card_type": "mixed", "service_count": 10},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("unit_price", response.data)
        self.assertIn("period_type", response.data)

    def test_create_card_rejects_past_expiry(self):
        response = self.client.post(
            reverse("memberships-list"),
            data={
                "customer": self.customer.id,
                "card_type": "value",
                "initial_amount": "1000",
                "expiry_date": str(self.today - timedelta(days=1)),
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("expiry_date", response.data)

    def test_customer_cards_envelope(self):
        MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("300"),
            expiry_date=self.today + timedelta(days=10),
        )
        MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD, status=CardStatus.LOST)
        response = self.client.get(
            reverse("memberships-customer-cards", kwargs={"customer_id": self.customer.id})
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["success"])
        self.assertEqual(response.data["count"], 2)
        self.assertEqual(response.data["membership_status"], MembershipStatus.EXPIRING)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.membership_status, MembershipStatus.EXPIRING)

    def test_customer_cards_unknown_customer(self):
        response = self.client.get(reverse("memberships-customer-cards", kwargs={"customer_id": 9999}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_set_status_needs_manager(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.patch(
            reverse("memberships-set-status", kwargs={"pk": card.id}),
            data={"status": "frozen"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_recharge(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.COUNT, count=1)
        response = self.client.post(
            reverse("memberships-recharge", kwargs={"pk": card.id}),
            data={"recharge_type": "count", "total_amount": "600", "count": 5, "payment_method": "alipay"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["count"], 6)

    def test_recharge_rejected_for_cancelled_card(self):
        card = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            status=CardStatus.CANCELLED,
        )
        response = self.client.post(
            reverse("memberships-recharge", kwargs={"pk": card.id}),
            data={"recharge_type": "amount", "total_amount": "100", "payment_method": "cash"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_stats(self):
        MembershipCard.objects.create(customer=self.customer, card_type=CardType.COUNT, count=2)
        response = self.client.get(reverse("memberships-stats"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total_count"], 1)
        self.assertEqual(len(response.data["low_count_cards"]), 1)

    def test_lookup_by_card_number_and_phone(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.get(reverse("memberships-lookup"), data={"q": card.card_number})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["id"], card.id)

        response = self.client.get(reverse("memberships-lookup"), data={"q": self.customer.phone})
        self.assertEqual(response.data["id"], card.id)

        response = self.client.get(reverse("memberships-lookup"), data={"q": "MK000000999"})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_card_qr_returns_png(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.get(reverse("memberships-qr", kwargs={"pk": card.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "image/png")

    def test_filter_expired_cards(self):
        MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.PERIOD,
            expiry_date=self.today - timedelta(days=2),
        )
        MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.get(reverse("memberships-list"), data={"expired": "true"})
        self.assertEqual(len(response.data), 1)

    def test_bad_customer_filter(self):
        response = self.client.get(reverse("memberships-list"), data={"customer": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["detail"], "Invalid customer")

        response = self.client.get(reverse("memberships-list"), data={"customer": self.customer.id})
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_recharge_and_consumption_history(self):
        card = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("500"),
            expiry_date=self.today + timedelta(days=90),
        )
        recharge_card(card, RechargeType.AMOUNT, Decimal("200"), user=self.user)
        service = record_service(
            self.customer,
            Decimal("120"),
            PaymentMethod.MEMBERSHIP,
            membership=card,
            service_type="小儿推拿",
        )
        delete_service(service)

        response = self.client.get(reverse("memberships-recharges", kwargs={"pk": card.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["metadata"]["total_amount"], "200.00")
        self.assertEqual(response.data[0]["username"], self.user.username)

        response = self.client.get(reverse("memberships-consumption", kwargs={"pk": card.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            sorted(entry["action"] for entry in response.data),
            [AuditAction.CHARGE, AuditAction.REFUND],
        )


class ManagerApiTests(ApiTestCase):
    role = UserRole.MANAGER

    def test_set_status_with_reason(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.patch(
            reverse("memberships-set-status", kwargs={"pk": card.id}),
            data={"status": "frozen", "reason": "出国"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["status"], CardStatus.FROZEN)
        self.assertEqual(response.data["effective_status"], None)
        self.assertIn("出国", response.data["notes"])

    def test_set_status_rejects_unknown_status(self):
        card = MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.patch(
            reverse("memberships-set-status", kwargs={"pk": card.id}),
            data={"status": "paused"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_manage_membership_types(self):
        response = self.client.post(
            reverse("membership-types-list"),
            data={"name": "10次卡", "category": "count", "price": "1000", "service_count": 10, "validity_days": 180},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)


class CustomerApiTests(ApiTestCase):
    def test_membership_status_filter(self):
        other = Customer.objects.create(child_name="小红", parent_name="李先生", phone="13900000000")
        MembershipCard.objects.create(customer=self.customer, card_type=CardType.PERIOD)
        response = self.client.get(reverse("customers-list"), data={"membership_status": "active"})
        self.assertEqual([row["id"] for row in response.data], [self.customer.id])

        response = self.client.get(reverse("customers-list"), data={"membership_status": "none"})
        self.assertEqual([row["id"] for row in response.data], [other.id])

    def test_search(self):
        response = self.client.get(reverse("customers-list"), data={"q": "1380000"})
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["membership_status"], MembershipStatus.NONE)

    def test_receptionist_cannot_edit_membership_types(self):
        response = self.client.post(
            reverse("membership-types-list"),
            data={"name": "月卡", "category": "period", "price": "800", "validity_days": 30},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class ServiceRecordApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.card = MembershipCard.objects.create(
            customer=self.customer,
            card_type=CardType.VALUE,
            balance=Decimal("50"),
            expiry_date=self.today + timedelta(days=60),
        )

    def _payload(self, **overrides):
        payload = {
            "customer": self.customer.id,
            "service_type": "小儿推拿",
            "service_fee": "120",
            "payment_method": "membership",
            "membership": self.card.id,
        }
        payload.update(overrides)
        return payload

    def test_insufficient_balance(self):
        response = self.client.post(reverse("services-list"), data=self._payload(), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "insufficient_balance")
        self.assertEqual(response.data["detail"], "会员卡余额不足，当前余额 ¥50.00，需要 ¥120.00")
        self.assertFalse(ServiceRecord.objects.exists())

    def test_requires_card(self):
        response = self.client.post(reverse("services-list"), data=self._payload(membership=None), format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "requires_card")

    def test_charge_edit_and_delete(self):
        response = self.client.post(reverse("services-list"), data=self._payload(service_fee="40"), format="json")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        service_id = response.data["id"]
        self.card.refresh_from_db()
        self.assertEqual(self.card.balance, Decimal("10.00"))

        response = self.client.patch(
            reverse("services-detail", kwargs={"pk": service_id}),
            data={"service_fee": "50"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.card.refresh_from_db()
        self.assertEqual(self.card.balance, Decimal("0.00"))

        response = self.client.patch(
            reverse("services-detail", kwargs={"pk": service_id}),
            data={"service_fee": "60"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "insufficient_balance")

        response = self.client.delete(reverse("services-detail", kwargs={"pk": service_id}))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.card.refresh_from_db()
        self.assertEqual(self.card.balance, Decimal("50.00"))

    def test_cash_payment_ignores_card(self):
        response = self.client.post(
            reverse("services-list"),
            data=self._payload(payment_method="cash", service_fee="300"),
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertIsNone(response.data["membership"])

    def test_bad_customer_filter(self):
        response = self.client.get(reverse("services-list"), data={"customer": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["detail"], "Invalid customer")


class ThrottleTests(SimpleTestCase):
    def test_scopes_read_configured_rates(self):
        rates = settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"]
        self.assertEqual(LookupRateThrottle().rate, rates["lookup"])
        self.assertEqual(QrRateThrottle().rate, rates["qr"])
        self.assertEqual(StatsRateThrottle().rate, rates["stats"])
