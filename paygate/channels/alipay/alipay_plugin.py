"""
支付宝官方支付插件：开放平台接口，RSA2 (SHA256withRSA) 签名。

- 请求参数按码位排序拼接 k=v&...（sign 不参与）后用应用私钥签名
- biz_content 序列化为紧凑 JSON（separators=(",", ":")，不转义中文）
- 异步通知验签时 sign、sign_type 都不参与
- 私钥 / 公钥支持 PEM 和裸 Base64
- 金额精确匹配
"""

import logging
from datetime import datetime, timedelta, timezone

from paygate.models.schemas import (
    HtmlAction,
    InputField,
    OrderStatus,
    PluginDescriptor,
    QrcodeAction,
    RefundResult,
)
from paygate.plugins.base import ChannelPlugin, to_decimal
from paygate.services.provider_http import QUERY_TIMEOUT, ProviderError, parse_json
from paygate.services.sign import RSA1, RSA2, SignError, canonicalize, sign, stringify, verify

logger = logging.getLogger(__name__)

GATEWAY_URL = "https://openapi.alipay.com/gateway.do"
# 开放平台网关按北京时间校验 timestamp
GATEWAY_TZ = timezone(timedelta(hours=8))

# 子模式
MODE_PAGE = "1"
MODE_WAP = "2"
MODE_QRCODE = "3"

_METHOD_MODES = {"page": MODE_PAGE, "wap": MODE_WAP, "qrcode": MODE_QRCODE}

_TRADE_STATUS = {
    "TRADE_SUCCESS": "paid",
    "TRADE_FINISHED": "paid",
    "WAIT_BUYER_PAY": "pending",
    "TRADE_CLOSED": "failed",
}


class AlipayError(Exception):
    """支付宝接口返回业务错误。"""
    pass


class Plugin(ChannelPlugin):
    info = PluginDescriptor(
        name="alipay",
        showname="支付宝官方支付",
        author="支付宝",
        link="https://b.alipay.com/signing/productSetV2.htm",
        types=("alipay",),
        inputs=(
            InputField("appid", "应用APPID"),
            InputField("appkey", "支付宝公钥", type="textarea",
                       note="填错也可以支付成功但会无法回调"),
            InputField("appsecret", "应用私钥", type="textarea"),
            InputField("appmchid", "子商户SMID", required=False,
                       note="直付通模式填写，普通商户留空"),
            InputField("apptype", "支付模式", type="select", required=False,
                       options={MODE_PAGE: "电脑网站支付", MODE_WAP: "手机网站支付",
                                MODE_QRCODE: "当面付扫码"},
                       note="可多选，逗号分隔，默认当面付扫码"),
            InputField("gateway", "网关地址", required=False,
                       note=f"不填写默认为{GATEWAY_URL}"),
        ),
        select={"alipay": {MODE_PAGE: "电脑网站支付", MODE_WAP: "手机网站支付",
                           MODE_QRCODE: "当面付扫码"}},
        note="<p>回调验签使用支付宝公钥，不是应用公钥</p>",
        amount_tolerance=0,
    )
    methods = ("qrcode", "page", "wap")

    # ── 请求构造 ──────────────────────────────────────────

    @staticmethod
    def _gateway(config) -> str:
        return config.text("gateway", GATEWAY_URL)

    def _build_request(self, config, api_method: str, biz_content: dict,
                       notify_url: str = "", return_url: str = "") -> dict:
        """构造公共参数并签名，私钥格式错误时抛出 SignError。"""
        params = {
            "app_id": config.require("appid"),
            "method": api_method,
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(GATEWAY_TZ).strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "biz_content": stringify(biz_content),
        }
        if notify_url:
            params["notify_url"] = notify_url
        if return_url:
            params["return_url"] = return_url
        params["sign"] = sign(canonicalize(params), config.require("appsecret"), RSA2)
        return params

    def _call(self, config, api_method: str, biz_content: dict, timeout: float) -> dict:
        """调用开放平台接口，返回 xxx_response 节点。"""
        params = self._build_request(config, api_method, biz_content)
        data = parse_json(self.http.post_form(self._gateway(config), params, timeout=timeout))
        result = data.get(api_method.replace(".", "_") + "_response")
        if not isinstance(result, dict):
            raise ProviderError("支付宝响应缺少业务节点")
        return result

    @staticmethod
    def _trade_biz(config, order) -> dict:
        biz = {
            "out_trade_no": order.trade_no,
            "total_amount": order.money,
            "subject": order.name or order.trade_no,
        }
        smid = config.text("appmchid")
        if smid:
            biz["extend_params"] = {"sys_service_provider_id": smid}
        if order.client_ip:
            biz["business_params"] = {"mc_create_trade_ip": order.client_ip}
        return biz

    # ── 发起支付 ──────────────────────────────────────────

    def _pick_mode(self, config, context) -> str:
        modes = config.choices("apptype") or [MODE_QRCODE]
        hinted = _METHOD_MODES.get(context.method)
        if hinted:
            return hinted if hinted in modes else ""
        preferred = (MODE_WAP, MODE_QRCODE, MODE_PAGE) if context.is_mobile \
            else (MODE_PAGE, MODE_QRCODE, MODE_WAP)
        for mode in preferred:
            if mode in modes:
                return mode
        return ""

    def submit(self, config, order, context):
        if not (config.require("appid") and config.require("appsecret")):
            return self.error("通道配置不完整")

        mode = self._pick_mode(config, context)
        try:
            if mode == MODE_QRCODE:
                return self._precreate(config, order)
            if mode == MODE_PAGE:
                return self._form_pay(config, order, "alipay.trade.page.pay",
                                      "FAST_INSTANT_TRADE_PAY")
            if mode == MODE_WAP:
                return self._form_pay(config, order, "alipay.trade.wap.pay",
                                      "QUICK_WAP_WAY")
        except SignError as e:
            logger.warning("支付宝签名失败: %s", e)
            return self.error("应用私钥格式错误")
        except (ProviderError, AlipayError) as e:
            return self.error(f"支付宝下单失败：{e}")
        return self.error("通道未开启该支付模式")

    def resolve_payment_method(self, config, order, context):
        return self.submit(config, order, context)

    def _precreate(self, config, order) -> QrcodeAction:
        """当面付扫码：预下单获取二维码内容。"""
        params = self._build_request(config, "alipay.trade.precreate",
                                     self._trade_biz(config, order),
                                     notify_url=order.notify_url)
        data = parse_json(self.http.post_form(self._gateway(config), params))
        result = data.get("alipay_trade_precreate_response") or {}
        if result.get("code") != "10000" or not result.get("qr_code"):
            raise AlipayError(result.get("sub_msg") or result.get("msg") or "获取支付二维码失败")
        return QrcodeAction(url=result["qr_code"], page="alipay_qrcode")

    def _form_pay(self, config, order, api_method: str, product_code: str) -> HtmlAction:
        biz = self._trade_biz(config, order)
        biz["product_code"] = product_code
        params = self._build_request(config, api_method, biz,
                                     notify_url=order.notify_url,
                                     return_url=order.return_url)
        action = self._gateway(config) + "?charset=utf-8"
        return HtmlAction(html=self.form_html(action, params, form_id="alipaysubmit"))

    # ── 回调 ──────────────────────────────────────────────

    def _verify(self, raw, config, order, synchronous: bool):
        public_key = config.require("appkey")
        data = raw.params()
        if not data.get("sign") or not data.get("out_trade_no"):
            return self.rejected(order, "回调参数不完整")

        algorithm = RSA1 if data.get("sign_type") == "RSA" else RSA2
        signature_valid = verify(
            canonicalize(data, ("sign_type",)), data["sign"], public_key, algorithm
        )
        trade_status = data.get("trade_status")
        if synchronous and trade_status is None:
            # 同步跳转不带交易状态
            trade_success = True
        else:
            trade_success = _TRADE_STATUS.get(trade_status) == "paid"
        return self.outcome(
            order,
            signature_valid=signature_valid,
            reported_trade_no=data.get("out_trade_no"),
            reported_amount=data.get("total_amount"),
            trade_success=trade_success,
            provider_trade_no=data.get("trade_no", ""),
            payer_id=data.get("buyer_id") or data.get("buyer_open_id", ""),
            refs={"app_id": data.get("app_id", ""), "seller_id": data.get("seller_id", "")},
        )

    def notify(self, raw, config, order):
        return self._verify(raw, config, order, synchronous=False)

    def return_callback(self, raw, config, order):
        return self._verify(raw, config, order, synchronous=True)

    # ── 查询 / 退款 / 关闭 ───────────────────────────────

    def query(self, config, trade_no):
        try:
            result = self._call(config, "alipay.trade.query",
                                {"out_trade_no": trade_no}, QUERY_TIMEOUT)
        except (ProviderError, SignError) as e:
            return OrderStatus(trade_no=trade_no, msg=str(e))

        if result.get("code") == "40004":
            # 交易不存在：用户尚未扫码
            return OrderStatus(trade_no=trade_no, status="pending",
                               msg=result.get("sub_msg", ""))
        if result.get("code") != "10000":
            return OrderStatus(trade_no=trade_no,
                               msg=result.get("sub_msg") or result.get("msg") or "查询订单失败")
        return OrderStatus(
            trade_no=result.get("out_trade_no", ""),
            status=_TRADE_STATUS.get(result.get("trade_status"), "pending"),
            api_trade_no=result.get("trade_no", ""),
            amount=to_decimal(result.get("total_amount")),
            payer_id=result.get("buyer_user_id", ""),
        )

    def refund(self, order, config):
        amount = order.refund_amount if order.refund_amount is not None else order.amount
        biz = {
            "out_request_no": order.refund_no or order.trade_no,
            "refund_amount": f"{amount:.2f}",
        }
        if order.api_trade_no:
            biz["trade_no"] = order.api_trade_no
        else:
            biz["out_trade_no"] = order.trade_no

        try:
            result = self._call(config, "alipay.trade.refund", biz, QUERY_TIMEOUT)
        except (ProviderError, SignError) as e:
            return RefundResult(code=-1, msg=str(e))

        if result.get("code") != "10000":
            msg = result.get("sub_msg") or result.get("msg") or "退款失败"
            logger.warning("支付宝退款失败: trade_no=%s, msg=%s", order.trade_no, msg)
            return RefundResult(code=-1, msg=msg)
        return RefundResult(
            code=0,
            refund_id=result.get("trade_no", ""),
            refund_amount=to_decimal(result.get("refund_fee")),
        )

    def close(self, config, trade_no):
        try:
            result = self._call(config, "alipay.trade.close",
                                {"out_trade_no": trade_no}, QUERY_TIMEOUT)
        except (ProviderError, SignError) as e:
            return RefundResult(code=-1, msg=str(e))
        # 40004：交易不存在，视为已关闭
        if result.get("code") in ("10000", "40004"):
            return RefundResult(code=0)
        return RefundResult(code=-1, msg=result.get("sub_msg") or result.get("msg") or "关闭订单失败")
