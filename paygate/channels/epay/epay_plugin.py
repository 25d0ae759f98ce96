"""
彩虹易支付对接插件：用于对接其他易支付系统。

签名：参数按码位排序拼接 k=v&...，末尾直接拼接商户密钥做 MD5
（sign、sign_type 与空值不参与签名）。
"""

import logging

from paygate.models.schemas import (
    HtmlAction,
    InputField,
    JumpAction,
    OrderStatus,
    PluginDescriptor,
    QrcodeAction,
    RefundResult,
    SchemeAction,
)
from paygate.plugins.base import ChannelPlugin, to_decimal
from paygate.services.provider_http import QUERY_TIMEOUT, ProviderError, parse_json
from paygate.services.sign import generate_sign, verify_sign

logger = logging.getLogger(__name__)


class Plugin(ChannelPlugin):
    info = PluginDescriptor(
        name="epay",
        showname="彩虹易支付",
        author="彩虹",
        types=("alipay", "qqpay", "wxpay", "bank", "jdpay"),
        inputs=(
            InputField("appurl", "接口地址", note="必须以http://或https://开头，以/结尾"),
            InputField("appid", "商户ID"),
            InputField("appkey", "商户密钥"),
            InputField("appswitch", "是否使用mapi接口", type="select",
                       options={"0": "否", "1": "是"}, required=False),
        ),
        amount_tolerance=1,
    )

    # ── 签名 ──────────────────────────────────────────────

    @staticmethod
    def _signed(params: dict, key: str) -> dict:
        signed = dict(params)
        signed["sign"] = generate_sign(params, key)
        signed["sign_type"] = "MD5"
        return signed

    @staticmethod
    def _credentials(config) -> tuple[str, str, str]:
        return config.require("appurl"), config.require("appid"), config.require("appkey")

    # ── 发起支付 ──────────────────────────────────────────

    def submit(self, config, order, context):
        """页面跳转方式：生成自动提交到 submit.php 的表单。"""
        appurl, appid, appkey = self._credentials(config)
        if not (appurl and appid and appkey):
            return self.error("通道配置不完整")

        if config.text("appswitch") == "1":
            return JumpAction(url=f"/pay/{order.typename}/{order.trade_no}/")

        params = {
            "pid": appid,
            "type": order.typename,
            "notify_url": order.notify_url,
            "return_url": order.return_url,
            "out_trade_no": order.trade_no,
            "name": order.name,
            "money": order.money,
        }
        return HtmlAction(html=self.form_html(appurl + "submit.php", self._signed(params, appkey)))

    def resolve_payment_method(self, config, order, context):
        """MAPI 接口下单，按返回内容决定跳转、二维码或 URL Scheme。"""
        appurl, appid, appkey = self._credentials(config)
        if not (appurl and appid and appkey):
            return self.error("通道配置不完整")

        pay_type = context.method if context.method in self.info.types else order.typename
        params = {
            "pid": appid,
            "type": pay_type,
            "device": context.device,
            "clientip": order.client_ip or context.client_ip or "127.0.0.1",
            "notify_url": order.notify_url,
            "return_url": order.return_url,
            "out_trade_no": order.trade_no,
            "name": order.name,
            "money": order.money,
        }
        try:
            response = self.http.post_form(appurl + "mapi.php", self._signed(params, appkey))
            result = parse_json(response)
        except ProviderError as e:
            return self.error(str(e))

        if str(result.get("code")) != "1":
            return self.error(result.get("msg") or "获取支付接口数据失败")
        if result.get("payurl"):
            return JumpAction(url=result["payurl"])
        if result.get("qrcode"):
            return QrcodeAction(url=result["qrcode"])
        if result.get("urlscheme"):
            return SchemeAction(url=result["urlscheme"])
        return self.error("未返回支付链接")

    # ── 回调 ──────────────────────────────────────────────

    def _verify(self, raw, config, order):
        appkey = config.require("appkey")
        data = raw.params()
        if not data.get("sign") or not data.get("out_trade_no"):
            return self.rejected(order, "回调参数不完整")

        signature_valid = verify_sign(data, appkey, data["sign"])
        return self.outcome(
            order,
            signature_valid=signature_valid,
            reported_trade_no=data.get("out_trade_no"),
            reported_amount=data.get("money"),
            trade_success=data.get("trade_status") == "TRADE_SUCCESS",
            provider_trade_no=data.get("trade_no", ""),
            payer_id=data.get("buyer", ""),
            refs={"type": data.get("type", "")},
        )

    def notify(self, raw, config, order):
        return self._verify(raw, config, order)

    def return_callback(self, raw, config, order):
        return self._verify(raw, config, order)

    # ── 查询 / 退款 ───────────────────────────────────────

    def query(self, config, trade_no):
        appurl, appid, appkey = self._credentials(config)
        params = {"act": "order", "pid": appid, "key": appkey, "out_trade_no": trade_no}
        try:
            result = parse_json(self.http.get(appurl + "api.php", params, timeout=QUERY_TIMEOUT))
        except ProviderError as e:
            return OrderStatus(trade_no=trade_no, msg=str(e))

        if str(result.get("code")) != "1":
            return OrderStatus(trade_no=trade_no, msg=result.get("msg") or "查询订单失败")
        return OrderStatus(
            trade_no=result.get("out_trade_no", ""),
            status="paid" if str(result.get("status")) == "1" else "pending",
            api_trade_no=result.get("trade_no", ""),
            amount=to_decimal(result.get("money")),
            payer_id=result.get("buyer", ""),
        )

    def refund(self, order, config):
        appurl, appid, appkey = self._credentials(config)
        amount = order.refund_amount if order.refund_amount is not None else order.amount
        data = {
            "pid": appid,
            "key": appkey,
            "refund_no": order.refund_no,
            "money": f"{amount:.2f}",
        }
        # 优先使用渠道交易号
        if order.api_trade_no:
            data["trade_no"] = order.api_trade_no
        else:
            data["out_trade_no"] = order.trade_no

        try:
            result = parse_json(self.http.post_form(
                appurl + "api.php?act=refund", data, timeout=QUERY_TIMEOUT
            ))
        except ProviderError as e:
            return RefundResult(code=-1, msg=str(e))

        if str(result.get("code")) == "0":
            return RefundResult(code=0, refund_id=order.refund_no, refund_amount=amount)
        logger.warning("易支付退款失败: trade_no=%s, msg=%s", order.trade_no, result.get("msg"))
        return RefundResult(code=-1, msg=result.get("msg") or "退款失败")
