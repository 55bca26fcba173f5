class ChargeRejected(Exception):
    """A membership payment that cannot go through as entered.

    Raised by the payment checks and shown to the user as ``message``; the
    user has to change the form and submit again.
    """

    code = "charge_rejected"
    default_message = "会员卡无法支付"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class RequiresCard(ChargeRejected):
    code = "requires_card"
    default_message = "请选择会员卡"


class InvalidCard(ChargeRejected):
    code = "invalid_card"
    default_message = "会员卡状态异常，无法使用"


class InsufficientBalance(ChargeRejected):
    code = "insufficient_balance"

    def __init__(self, balance, required):
        self.balance = balance
        self.required = required
        super().__init__(f"会员卡余额不足，当前余额 ¥{balance}，需要 ¥{required}")


class InsufficientCount(ChargeRejected):
    code = "insufficient_count"
    default_message = "会员卡剩余次数不足"


class ClinicApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
