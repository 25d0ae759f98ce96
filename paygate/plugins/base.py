"""
支付插件契约：所有渠道插件都继承 ChannelPlugin。

必须实现：submit、notify
可选实现：resolve_payment_method、return_callback、refund、query、close
未实现的可选操作抛出 UnsupportedOperation，由分发器转换为 NotSupported 结果。

插件实例在调用之间无状态；同一实例会被多个请求线程并发调用，
不得在实例上保存与单次请求相关的数据。
"""

import html
import logging
from dataclasses import replace
from decimal import Decimal, InvalidOperation

from paygate.models.schemas import (
    Action,
    ChannelConfig,
    Context,
    ErrorAction,
    Order,
    OrderStatus,
    PluginDescriptor,
    RawRequest,
    RefundResult,
    VerificationOutcome,
)
from paygate.services.provider_http import ProviderHTTP

logger = logging.getLogger(__name__)

# 金额容差上限：1 个最小货币单位（分）
MAX_AMOUNT_TOLERANCE = 1


class UnsupportedOperation(Exception):
    """插件不支持该操作。"""
    pass


def to_decimal(amount) -> Decimal | None:
    """解析渠道返回的金额，无法解析时返回 None。"""
    if amount is None:
        return None
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None
    return value if value.is_finite() else None


def to_minor_units(amount) -> int | None:
    """金额转换为分，无法解析时返回 None。"""
    value = to_decimal(amount)
    if value is None:
        return None
    try:
        return int((value * 100).to_integral_value())
    except ArithmeticError:
        # 超出 Decimal 上下文范围的金额
        return None


def amounts_match(reported, expected, tolerance: int = 0) -> bool:
    """渠道报告金额与订单金额之差不超过 tolerance 分（最多 1 分）。"""
    tolerance = max(0, min(tolerance, MAX_AMOUNT_TOLERANCE))
    a = to_minor_units(reported)
    b = to_minor_units(expected)
    if a is None or b is None:
        return False
    return abs(a - b) <= tolerance


class ChannelPlugin:
    """支付渠道插件基类。"""

    info: PluginDescriptor = PluginDescriptor(name="")

    # 渠道要求的回调应答内容
    ack_success = "success"
    ack_fail = "fail"
    ack_media_type = "text/plain"

    # 除 info.types 外可直接调用的支付方式入口（如 qrcode、jsapi）
    methods: tuple = ()

    def __init__(self, http: ProviderHTTP | None = None):
        self.http = http or ProviderHTTP()

    # ── 契约操作 ──────────────────────────────────────────

    def submit(self, config: ChannelConfig, order: Order, context: Context) -> Action:
        raise NotImplementedError

    def resolve_payment_method(self, config: ChannelConfig, order: Order,
                               context: Context) -> Action:
        """按 context.method（如 qrcode / jsapi）进入具体支付方式，默认同 submit。"""
        return self.submit(config, order, context)

    def notify(self, raw: RawRequest, config: ChannelConfig, order: Order) -> VerificationOutcome:
        raise NotImplementedError

    def return_callback(self, raw: RawRequest, config: ChannelConfig,
                        order: Order) -> VerificationOutcome:
        raise UnsupportedOperation("return")

    def refund(self, order: Order, config: ChannelConfig) -> RefundResult:
        raise UnsupportedOperation("refund")

    def query(self, config: ChannelConfig, trade_no: str) -> OrderStatus:
        raise UnsupportedOperation("query")

    def close(self, config: ChannelConfig, trade_no: str) -> RefundResult:
        raise UnsupportedOperation("close")

    # ── 公共逻辑 ──────────────────────────────────────────

    def validate_config(self, values) -> list[str]:
        """返回声明为必填但在配置中完全缺失的字段。"""
        return [k for k in self.info.required_inputs() if k not in values]

    def notify_response(self, success: bool) -> str:
        return self.ack_success if success else self.ack_fail

    def outcome(
        self,
        order: Order,
        *,
        signature_valid: bool,
        reported_trade_no=None,
        reported_amount=None,
        trade_success: bool = True,
        provider_trade_no: str = "",
        payer_id: str = "",
        refs: dict | None = None,
        msg: str = "",
    ) -> VerificationOutcome:
        """按三项不变量（签名、订单号、金额）构造验证结果并附带应答内容。"""
        matched_order = (
            reported_trade_no is not None
            and str(reported_trade_no) == order.trade_no
        )
        matched_amount = amounts_match(
            reported_amount, order.amount, self.info.amount_tolerance
        )
        result = VerificationOutcome(
            signature_valid=signature_valid,
            matched_order=matched_order,
            matched_amount=matched_amount,
            trade_success=trade_success,
            provider_trade_no=str(provider_trade_no or ""),
            payer_id=str(payer_id or ""),
            raw_channel_refs=dict(refs or {}),
            msg=msg,
        )
        if not result.valid:
            logger.warning(
                "回调验证未通过: channel=%s, trade_no=%s, sign=%s, order=%s, amount=%s, status=%s",
                self.info.name, order.trade_no, signature_valid,
                matched_order, matched_amount, trade_success,
            )
        return self._with_ack(result)

    def rejected(self, order: Order, msg: str) -> VerificationOutcome:
        """无法解析或缺少字段的回调。"""
        logger.warning("回调被拒绝: channel=%s, trade_no=%s, %s",
                       self.info.name, order.trade_no, msg)
        return self._with_ack(VerificationOutcome(msg=msg))

    def _with_ack(self, result: VerificationOutcome) -> VerificationOutcome:
        return replace(
            result,
            ack=self.notify_response(result.valid),
            ack_media_type=self.ack_media_type,
        )

    def reconcile(self, config: ChannelConfig, order: Order) -> VerificationOutcome:
        """
        通过主动查询对账（异步通知疑似丢失时使用）。

        查询结果来自直连渠道接口，不需要验签，订单号与金额仍须匹配。
        """
        status = self.query(config, order.trade_no)
        if status.status == "unknown":
            return self.rejected(order, status.msg or "查询订单失败")
        return self.outcome(
            order,
            signature_valid=True,
            reported_trade_no=status.trade_no,
            reported_amount=status.amount,
            trade_success=status.status == "paid",
            provider_trade_no=status.api_trade_no,
            payer_id=status.payer_id,
            msg=status.msg,
        )

    @staticmethod
    def form_html(action: str, params: dict, form_id: str = "dopay",
                  button: str = "正在跳转") -> str:
        """生成自动提交的 POST 表单，所有值做 HTML 转义。"""
        fields = "".join(
            f'<input type="hidden" name="{html.escape(str(k))}" value="{html.escape(str(v))}">'
            for k, v in params.items()
        )
        return (
            f'<form id="{form_id}" action="{html.escape(action)}" method="post">'
            f'{fields}<input type="submit" value="{button}"></form>'
            f'<script>document.getElementById("{form_id}").submit();</script>'
        )

    @staticmethod
    def error(msg: str) -> ErrorAction:
        return ErrorAction(msg=msg)
