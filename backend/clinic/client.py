import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

import requests
from django.conf import settings
from django.utils.dateparse import parse_date, parse_datetime

from .choices import CardStatus
from .exceptions import ClinicApiError
from .rules import evaluate_status, local_day, money, whole

logger = logging.getLogger(__name__)


def _pick(payload: dict, *keys):
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _parse_expiry(value) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return local_day(value)
    text = str(value)
    try:
        parsed = parse_datetime(text)
        if parsed is not None:
            return local_day(parsed)
        return parse_date(text[:10])
    except ValueError:
        return None


@dataclass(frozen=True)
class CardSnapshot:
    id: str
    card_number: str
    card_type: str
    status: str
    balance: Decimal
    count: int
    expiry_date: date | None

    @classmethod
    def from_payload(cls, payload: dict) -> "CardSnapshot":
        return cls(
            id=str(_pick(payload, "_id", "id") or ""),
            card_number=_pick(payload, "cardNumber", "card_number") or "",
            card_type=_pick(payload, "cardType", "card_type") or "",
            status=payload.get("status") or "",
            balance=money(payload.get("balance")),
            count=whole(payload.get("count")),
            expiry_date=_parse_expiry(_pick(payload, "expiryDate", "expiry_date")),
        )


def normalize_card_list(payload) -> list:
    """Canonical card list from any of the list envelopes the API returns."""
    if payload is None:
        rows = []
    elif isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = payload.get("data")
        if rows is None:
            rows = payload.get("memberships")
        if rows is None:
            rows = []
        if not isinstance(rows, list):
            raise ClinicApiError("Unrecognized membership list response")
    else:
        raise ClinicApiError("Unrecognized membership list response")
    return [CardSnapshot.from_payload(row) for row in rows if isinstance(row, dict)]


class ClinicApiClient:
    def __init__(self, base_url=None, auth=None, timeout=None, session=None):
        self.base_url = (base_url or settings.CLINIC_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.CLINIC_API_TIMEOUT
        self.session = session or requests.Session()
        if auth is not None:
            self.session.auth = auth

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Clinic API %s %s failed: %s", method, url, exc)
            raise ClinicApiError("网络请求失败，请稍后重试") from exc

        if not response.ok:
            detail = None
            try:
                body = response.json() if response.content else None
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail = body.get("detail") or body.get("message")
            logger.warning("Clinic API %s %s returned %s", method, url, response.status_code)
            raise ClinicApiError(detail or "服务器错误，请稍后重试", response.status_code)

        try:
            return response.json() if response.content else None
        except ValueError as exc:
            raise ClinicApiError("服务器返回了无法解析的数据", response.status_code) from exc

    def get_customer_cards(self, customer_id) -> list:
        return normalize_card_list(self._request("GET", f"memberships/customer/{customer_id}/"))

    def load_customer_membership(self, customer_id, now=None):
        cards = self.get_customer_cards(customer_id)
        return cards, evaluate_status(cards, now)

    def update_card_status(self, card_id, status, reason=""):
        if status not in CardStatus.values:
            raise ValueError(f"Unknown card status: {status!r}")
        return self._request(
            "PATCH",
            f"memberships/{card_id}/status/",
            json={"status": status, "reason": reason},
        )

    def create_service(self, payload: dict):
        return self._request("POST", "services/", json=payload)
