"""
V免签支付插件。

下单签名：md5(payId + type + price + 通讯密钥)
回调签名：md5(payId + type + price + reallyPrice + 通讯密钥)
字段按固定顺序直接拼接值，不排序、不带键名。
"""

import logging
from urllib.parse import urlencode

from paygate.models.schemas import HtmlAction, InputField, JumpAction, PluginDescriptor
from paygate.plugins.base import ChannelPlugin
from paygate.services.sign import MD5, concat_values, sign, verify

logger = logging.getLogger(__name__)

SUBMIT_FIELDS = ("payId", "type", "price")
NOTIFY_FIELDS = ("payId", "type", "price", "reallyPrice")

_PAY_TYPE_CODES = {"alipay": "2", "qqpay": "4", "wxpay": "1", "bank": "3"}


def pay_type_code(typename: str) -> str:
    return _PAY_TYPE_CODES.get(typename, "1")


class Plugin(ChannelPlugin):
    info = PluginDescriptor(
        name="vmq",
        showname="V免签",
        author="V免签",
        link="https://github.com/szvone/vmqphp",
        types=("alipay", "qqpay", "wxpay"),
        inputs=(
            InputField("appurl", "接口地址", note="必须以http://或https://开头，以/结尾"),
            InputField("appid", "商户ID", note="如果不需要商户ID，随便填写即可"),
            InputField("appkey", "通讯密钥"),
        ),
    )
    ack_success = "success"
    ack_fail = "error"

    def submit(self, config, order, context):
        appurl = config.require("appurl")
        appkey = config.require("appkey")
        if not (appurl and appkey):
            return self.error("通道配置不完整")

        api_url = appurl + "createOrder"
        data = {
            "mchId": config.require("appid"),
            "payId": order.trade_no,
            "type": pay_type_code(order.typename),
            "price": order.money,
            "isHtml": "1",
            "notifyUrl": order.notify_url,
            "returnUrl": order.return_url,
        }
        data["sign"] = sign(concat_values(data, SUBMIT_FIELDS), appkey, MD5)

        # http 接口无法从 https 页面 POST，改为直接跳转
        if api_url.startswith("http://"):
            return JumpAction(url=f"{api_url}?{urlencode(data)}")
        return HtmlAction(html=self.form_html(api_url, data))

    def _verify(self, raw, config, order):
        appkey = config.require("appkey")
        data = raw.params()
        if not data.get("payId") or not data.get("sign"):
            return self.rejected(order, "参数不完整")

        signature_valid = verify(concat_values(data, NOTIFY_FIELDS), data["sign"], appkey, MD5)
        return self.outcome(
            order,
            signature_valid=signature_valid,
            reported_trade_no=data.get("payId"),
            reported_amount=data.get("price"),
            provider_trade_no=data.get("payId", ""),
            refs={"type": data.get("type", ""), "reallyPrice": data.get("reallyPrice", "")},
        )

    def notify(self, raw, config, order):
        return self._verify(raw, config, order)

    def return_callback(self, raw, config, order):
        return self._verify(raw, config, order)
