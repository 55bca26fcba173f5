from django.db import models


class CardType(models.TextChoices):
    COUNT = "count", "次卡"
    PERIOD = "period", "期限卡"
    MIXED = "mixed", "混合卡"
    VALUE = "value", "储值卡"


class CardStatus(models.TextChoices):
    ACTIVE = "active", "正常"
    EXPIRED = "expired", "已过期"
    CANCELLED = "cancelled", "已作废"
    FROZEN = "frozen", "已冻结"
    LOST = "lost", "已挂失"


class MembershipStatus(models.TextChoices):
    """Display status derived from a customer's cards, never stored as truth."""

    ACTIVE = "active", "有效"
    EXPIRING = "expiring", "即将过期"
    EXPIRED = "expired", "已过期"
    NONE = "none", "非会员"


class CapacityKind(models.TextChoices):
    COUNT = "count", "次数"
    CURRENCY = "currency", "金额"
    UNLIMITED = "unlimited", "不限"


class PeriodType(models.TextChoices):
    DAY = "day", "天"
    WEEK = "week", "周"
    MONTH = "month", "月"
    YEAR = "year", "年"


class PaymentMethod(models.TextChoices):
    CASH = "cash", "现金"
    CARD = "card", "银行卡"
    MEMBERSHIP = "membership", "会员卡"
    WECHAT = "wechat", "微信"
    ALIPAY = "alipay", "支付宝"
    OTHER = "other", "其他"


class RechargeType(models.TextChoices):
    COUNT = "count", "充次数"
    AMOUNT = "amount", "充金额"
    EXTEND = "extend", "延期"
    MIXED = "mixed", "综合充值"
