"""
分发器：按通道名解析插件并调用契约方法。

- 未知通道 / 未知方法 / 插件未实现的可选方法 → NotSupported
- 插件内部未捕获的异常在这里兜底，转换为对应操作的失败结果
- 只有 ChannelConfigError（必填配置完全缺失）向上抛出
"""

import logging
from dataclasses import replace

from paygate.models.schemas import (
    ChannelConfig,
    ChannelConfigError,
    Context,
    ErrorAction,
    NotSupported,
    Order,
    OrderStatus,
    RawRequest,
    RefundResult,
    VerificationOutcome,
)
from paygate.plugins.base import ChannelPlugin, UnsupportedOperation
from paygate.plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)

# 回调类操作，context 参数为原始请求 RawRequest
_CALLBACK_METHODS = ("notify", "return")
_CONTRACT_METHODS = ("submit", "notify", "return", "refund", "query", "reconcile", "close")


class Dispatcher:
    """外部 HTTP 层调用插件的唯一入口。"""

    def __init__(self, registry: PluginRegistry):
        self.registry = registry

    def dispatch(self, channel: str, method: str, config: ChannelConfig,
                 order: Order | None = None, context=None):
        """
        调用插件方法。

        Args:
            channel: 插件名。
            method: submit / notify / return / refund / query / reconcile / close，
                其他名称视为支付方式入口（如 qrcode、jsapi、alipay），
                须在插件声明的支付方式或子模式中。
            config: 通道配置。
            order: 订单快照。
            context: 支付类操作为 Context，回调类操作为 RawRequest。

        Returns:
            Action / VerificationOutcome / RefundResult / OrderStatus / NotSupported。
        """
        plugin = self.registry.resolve(channel)
        if plugin is None:
            logger.warning("支付插件不存在: %s", channel)
            return NotSupported(channel=channel, method=method, msg="支付通道不存在或未启用")

        missing = plugin.validate_config(config)
        if missing:
            raise ChannelConfigError(f"通道 {channel} 缺少配置: {', '.join(missing)}")

        if method not in _CONTRACT_METHODS and not self._is_payment_method(plugin, method):
            return NotSupported(channel=channel, method=method, msg="不支持的支付方式")

        try:
            return self._call(plugin, method, config, order, context)
        except UnsupportedOperation:
            return NotSupported(channel=channel, method=method, msg="该通道不支持此操作")
        except ChannelConfigError:
            raise
        except Exception as e:
            logger.exception("插件 %s.%s 调用异常: %s", channel, method, e)
            return self._failure(plugin, method, order, "通道处理异常，请稍后重试")

    @staticmethod
    def _is_payment_method(plugin: ChannelPlugin, method: str) -> bool:
        return method == "mapi" or method in plugin.info.types or method in plugin.methods

    @staticmethod
    def _call(plugin: ChannelPlugin, method: str, config, order, context):
        if method in _CALLBACK_METHODS and not isinstance(context, RawRequest):
            raise TypeError("回调操作需要 RawRequest")
        if method == "submit":
            return plugin.submit(config, order, context or Context())
        if method == "notify":
            return plugin.notify(context, config, order)
        if method == "return":
            return plugin.return_callback(context, config, order)
        if method == "refund":
            return plugin.refund(order, config)
        if method == "query":
            return plugin.query(config, order.trade_no)
        if method == "reconcile":
            return plugin.reconcile(config, order)
        if method == "close":
            return plugin.close(config, order.trade_no)
        ctx = context or Context()
        if method != "mapi":
            ctx = replace(ctx, method=method)
        return plugin.resolve_payment_method(config, order, ctx)

    @staticmethod
    def _failure(plugin: ChannelPlugin, method: str, order, msg: str):
        if method in _CALLBACK_METHODS or method == "reconcile":
            return VerificationOutcome(ack=plugin.notify_response(False),
                                       ack_media_type=plugin.ack_media_type, msg=msg)
        if method in ("refund", "close"):
            return RefundResult(code=-1, msg=msg)
        if method == "query":
            return OrderStatus(trade_no=order.trade_no if order else "", msg=msg)
        return ErrorAction(msg=msg)
