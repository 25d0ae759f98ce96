"""
数据模型 / 类型定义，供核心模块与各支付插件引用。
使用 dataclass 保持轻量，不引入 ORM；所有记录在单次调用内只读。
"""

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import ClassVar, Optional, Union
from urllib.parse import parse_qsl


class ChannelConfigError(Exception):
    """通道配置缺少必填字段（部署配置错误，需中止请求）。"""
    pass


# ── 通道配置 ──────────────────────────────────────────────


class ChannelConfig(Mapping):
    """
    只读的通道凭证映射（商户号、密钥、网关地址、功能开关等）。

    由外部配置存储构造，插件只能读取，不能修改。
    """

    def __init__(self, values: Mapping | None = None, channel_id: int | None = None,
                 plugin: str = ""):
        self._values = MappingProxyType(dict(values or {}))
        self.channel_id = channel_id
        self.plugin = plugin

    def __getitem__(self, key: str):
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        # 不输出凭证内容
        return f"ChannelConfig(plugin={self.plugin!r}, channel_id={self.channel_id!r}, keys={sorted(self._values)})"

    def require(self, key: str) -> str:
        """
        读取必填字段。

        字段完全缺失属于部署配置错误，抛出 ChannelConfigError；
        字段存在但为空由插件自行转换为错误结果。
        """
        if key not in self._values:
            raise ChannelConfigError(f"通道配置缺少字段: {key}")
        value = self._values[key]
        return "" if value is None else str(value).strip()

    def text(self, key: str, default: str = "") -> str:
        """读取可选字段，缺失或为空时返回默认值。"""
        value = self._values.get(key)
        if value is None or str(value).strip() == "":
            return default
        return str(value).strip()

    def choices(self, key: str) -> list[str]:
        """读取多选字段（列表或逗号分隔字符串）。"""
        value = self._values.get(key)
        if not value:
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        return [v.strip() for v in str(value).split(",") if v.strip()]


# ── 订单与调用上下文 ──────────────────────────────────────


@dataclass(frozen=True)
class Order:
    """单次支付尝试内不可变的订单快照。"""
    trade_no: str
    amount: Decimal
    name: str = ""
    notify_url: str = ""
    return_url: str = ""
    client_ip: str = ""
    typename: str = "alipay"
    openid: str = ""
    buyer_uid: str = ""
    api_trade_no: str = ""
    refund_no: str = ""
    refund_amount: Optional[Decimal] = None

    @property
    def money(self) -> str:
        """两位小数的金额字符串。"""
        return f"{Decimal(self.amount).quantize(Decimal('0.01'))}"


def detect_device(user_agent: str = "") -> str:
    """根据 User-Agent 判断设备/App 环境。"""
    ua = (user_agent or "").lower()
    if "micromessenger" in ua:
        return "wechat"
    if "qq/" in ua:
        return "qq"
    if "alipay" in ua:
        return "alipay"
    if any(k in ua for k in ("mobile", "android", "iphone", "ipad", "ipod")):
        return "mobile"
    return "pc"


@dataclass(frozen=True)
class Context:
    """外部 HTTP 层透传的调用上下文。"""
    device: str = "pc"
    client_ip: str = ""
    method: str = ""
    user_agent: str = ""
    site_url: str = ""

    @classmethod
    def from_user_agent(cls, user_agent: str = "", client_ip: str = "",
                        method: str = "", site_url: str = "") -> "Context":
        return cls(
            device=detect_device(user_agent),
            client_ip=client_ip,
            method=method,
            user_agent=user_agent,
            site_url=site_url,
        )

    @property
    def is_mobile(self) -> bool:
        return self.device != "pc"


@dataclass(frozen=True)
class RawRequest:
    """
    原样保留的回调请求（body + headers + query）。

    由 Web 层构造后直接交给插件，插件自行按协议解析后验签，
    避免 Web 层提前重新序列化破坏签名原文。
    """
    body: bytes = b""
    headers: Mapping = field(default_factory=dict)
    query: tuple = ()
    method: str = "POST"

    def header(self, name: str, default: str = "") -> str:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return default

    @property
    def content_type(self) -> str:
        return self.header("content-type").split(";")[0].strip().lower()

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def form(self) -> dict:
        """按 application/x-www-form-urlencoded 解析 body（保留空值）。"""
        return dict(parse_qsl(self.text, keep_blank_values=True))

    def json(self):
        return json.loads(self.text)

    def params(self) -> dict:
        """合并 query 与表单 body，body 中的同名字段优先。"""
        merged = dict(self.query)
        if self.body and self.content_type in ("", "application/x-www-form-urlencoded"):
            merged.update(self.form())
        return merged


# ── 支付动作（tagged union） ─────────────────────────────


@dataclass(frozen=True)
class JumpAction:
    """跳转到 URL。"""
    url: str
    type: ClassVar[str] = "jump"

    def to_dict(self) -> dict:
        return {"type": self.type, "url": self.url}


@dataclass(frozen=True)
class QrcodeAction:
    """展示二维码，url 为二维码内容。"""
    url: str
    page: str = "qrcode"
    type: ClassVar[str] = "qrcode"

    def to_dict(self) -> dict:
        return {"type": self.type, "url": self.url, "page": self.page}


@dataclass(frozen=True)
class SchemeAction:
    """唤起 App 的 URL Scheme。"""
    url: str
    type: ClassVar[str] = "scheme"

    def to_dict(self) -> dict:
        return {"type": self.type, "url": self.url}


@dataclass(frozen=True)
class PageAction:
    """渲染指定页面（JSAPI 支付参数等）。"""
    page: str
    data: Mapping = field(default_factory=dict)
    type: ClassVar[str] = "page"

    def to_dict(self) -> dict:
        return {"type": self.type, "page": self.page, "data": dict(self.data)}


@dataclass(frozen=True)
class HtmlAction:
    """原样输出 HTML（自动提交表单等）。"""
    html: str
    type: ClassVar[str] = "html"

    def to_dict(self) -> dict:
        return {"type": self.type, "html": self.html}


@dataclass(frozen=True)
class ErrorAction:
    """页面内错误提示。"""
    msg: str
    type: ClassVar[str] = "error"

    def to_dict(self) -> dict:
        return {"type": self.type, "msg": self.msg}


Action = Union[JumpAction, QrcodeAction, SchemeAction, PageAction, HtmlAction, ErrorAction]


@dataclass(frozen=True)
class NotSupported:
    """通道或方法不可用（区别于渠道/网络错误）。"""
    channel: str
    method: str = ""
    msg: str = ""
    type: ClassVar[str] = "not_supported"

    def to_dict(self) -> dict:
        return {"type": self.type, "channel": self.channel,
                "method": self.method, "msg": self.msg}


# ── 回调验证 / 退款 / 查询结果 ────────────────────────────


@dataclass(frozen=True)
class VerificationOutcome:
    """
    异步通知 / 同步回调的验证结果。

    signature_valid、matched_order、matched_amount 三项相互独立，
    全部成立（且渠道报告交易成功）时 valid 才为 True。
    ack 为必须原样返回给渠道的应答内容。
    """
    signature_valid: bool = False
    matched_order: bool = False
    matched_amount: bool = False
    trade_success: bool = False
    provider_trade_no: str = ""
    payer_id: str = ""
    raw_channel_refs: Mapping = field(default_factory=dict)
    ack: str = ""
    ack_media_type: str = "text/plain"
    msg: str = ""

    @property
    def valid(self) -> bool:
        return (self.signature_valid and self.matched_order
                and self.matched_amount and self.trade_success)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["raw_channel_refs"] = dict(self.raw_channel_refs)
        data["valid"] = self.valid
        return data


@dataclass(frozen=True)
class RefundResult:
    """退款结果：code 0 成功，-1 失败。"""
    code: int
    refund_id: str = ""
    refund_amount: Optional[Decimal] = None
    msg: str = ""

    @property
    def ok(self) -> bool:
        return self.code == 0


@dataclass(frozen=True)
class OrderStatus:
    """渠道侧订单状态：paid / pending / failed / unknown。"""
    trade_no: str
    status: str = "unknown"
    api_trade_no: str = ""
    amount: Optional[Decimal] = None
    payer_id: str = ""
    msg: str = ""


# ── 插件描述 ──────────────────────────────────────────────


@dataclass(frozen=True)
class InputField:
    """凭证输入项的声明（仅结构，不含值）。"""
    key: str
    name: str
    type: str = "input"
    note: str = ""
    options: Mapping = field(default_factory=dict)
    required: bool = True

    def to_dict(self) -> dict:
        data = {"name": self.name, "type": self.type, "note": self.note,
                "required": self.required}
        if self.options:
            data["options"] = dict(self.options)
        return data


@dataclass(frozen=True)
class CertField:
    """证书文件声明。"""
    key: str
    name: str
    ext: str = ".crt"
    desc: str = ""
    required: bool = False
    optional: bool = False
    need_password: bool = False


@dataclass(frozen=True)
class PluginDescriptor:
    """插件注册时声明的元信息，仅供配置界面展示。"""
    name: str
    showname: str = ""
    author: str = ""
    link: str = ""
    types: tuple = ()
    inputs: tuple = ()
    select: Mapping = field(default_factory=dict)
    certs: tuple = ()
    note: str = ""
    amount_tolerance: int = 0

    @property
    def exact_amount(self) -> bool:
        return self.amount_tolerance == 0

    def required_inputs(self) -> list[str]:
        return [f.key for f in self.inputs if f.required]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "showname": self.showname or self.name,
            "author": self.author,
            "link": self.link,
            "types": list(self.types),
            "inputs": {f.key: f.to_dict() for f in self.inputs},
            "select": {t: dict(opts) for t, opts in self.select.items()} or None,
            "certs": [asdict(c) for c in self.certs] or None,
            "note": self.note,
            "exact_amount": self.exact_amount,
            "amount_tolerance": self.amount_tolerance,
        }
