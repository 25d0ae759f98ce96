"""
管理与查询接口：

- GET  /v1/api/plugins[?type=]              插件列表（仅描述，不含凭证）
- GET  /v1/api/order/status/{trade_no}      订单状态轮询
- POST /v1/api/order/refund/{trade_no}      发起退款（X-Admin-Token）
- POST /v1/api/order/close/{trade_no}       关闭待支付订单（X-Admin-Token）
- POST /v1/api/channels                     新建 / 更新通道（X-Admin-Token）
- POST /v1/api/channels/{id}/active         启用 / 停用通道（X-Admin-Token）
"""

import hmac
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from paygate.models.schemas import NotSupported
from paygate.services.channel_store import ChannelStoreError
from paygate.services.order_store import STATUS_FAILED, STATUS_PENDING
from paygate.services.sign import nonce_str

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/api")

# 状态文本映射
_STATUS_TEXT = {0: "待支付", 1: "已支付", 2: "已关闭"}


def require_admin(request: Request) -> None:
    """
    FastAPI 依赖项：校验 X-Admin-Token。

    Raises:
        HTTPException(401): 未配置 ADMIN_TOKEN 或令牌不匹配。
    """
    expected = os.getenv("ADMIN_TOKEN", "")
    token = request.headers.get("X-Admin-Token", "")
    if not expected or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="管理令牌无效")


class RefundRequest(BaseModel):
    money: Optional[str] = None
    refund_no: Optional[str] = None


class ChannelSaveRequest(BaseModel):
    plugin: str
    name: str
    config: dict
    id: Optional[int] = None
    active: bool = True


class ChannelActiveRequest(BaseModel):
    active: bool


@router.get("/plugins")
async def plugin_list(request: Request, type: Optional[str] = None):
    registry = request.app.state.registry
    infos = registry.by_type(type) if type else registry.list()
    return JSONResponse(content={"code": 1, "data": [info.to_dict() for info in infos]})


@router.get("/order/status/{trade_no}")
async def order_status(trade_no: str, request: Request):
    """订单状态轮询接口（公开，无需认证），仅返回数据库中的当前状态。"""
    record = request.app.state.orders.get_order(trade_no)
    if record is None:
        return JSONResponse(content={"code": -1, "msg": "订单不存在"})
    return JSONResponse(content={
        "code": 1,
        "trade_no": trade_no,
        "status": record.status,
        "status_text": _STATUS_TEXT.get(record.status, "未知"),
    })


@router.post("/order/refund/{trade_no}", dependencies=[Depends(require_admin)])
async def refund_order(trade_no: str, request: Request, body: Optional[RefundRequest] = None):
    """
    对已支付订单发起退款，默认全额。

    退款单号与金额先写入订单，再交给插件调用渠道退款接口。
    """
    state = request.app.state
    body = body or RefundRequest()
    record = state.orders.get_order(trade_no)
    if record is None:
        return JSONResponse(content={"code": -1, "msg": "订单不存在"})
    if not record.paid:
        return JSONResponse(content={"code": -1, "msg": "订单未支付，无法退款"})
    if record.refunded:
        return JSONResponse(content={"code": -1, "msg": "订单已退款"})

    try:
        money = Decimal(body.money) if body.money else record.order.amount
    except InvalidOperation:
        return JSONResponse(content={"code": -1, "msg": "退款金额无效"})
    if money <= 0 or money > record.order.amount:
        return JSONResponse(content={"code": -1, "msg": "退款金额超出订单金额"})

    try:
        plugin_name, config = state.channels.get_channel(record.channel_id)
    except ChannelStoreError as e:
        logger.warning("订单 %s 通道不可用: %s", trade_no, e)
        return JSONResponse(content={"code": -1, "msg": "支付通道不可用"})

    refund_no = body.refund_no or record.order.refund_no or f"R{trade_no}{nonce_str(6)}"
    state.orders.set_refund(trade_no, refund_no, money)
    order = state.orders.get_order(trade_no).order

    result = await run_in_threadpool(state.dispatcher.dispatch, plugin_name, "refund", config, order)
    if isinstance(result, NotSupported):
        return JSONResponse(content={"code": -2, "msg": result.msg})
    if not result.ok:
        return JSONResponse(content={"code": -1, "msg": result.msg or "退款失败"})

    state.orders.mark_refunded(trade_no)
    logger.info("退款成功: trade_no=%s, refund_no=%s, money=%s", trade_no, refund_no, money)
    return JSONResponse(content={
        "code": 1,
        "trade_no": trade_no,
        "refund_no": refund_no,
        "refund_id": result.refund_id,
        "money": f"{result.refund_amount if result.refund_amount is not None else money:.2f}",
    })


@router.post("/channels", dependencies=[Depends(require_admin)])
async def save_channel(body: ChannelSaveRequest, request: Request):
    try:
        channel_id = request.app.state.channels.save_channel(
            body.plugin, body.name, body.config, channel_id=body.id, active=body.active,
        )
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "id": channel_id})


@router.post("/channels/{channel_id}/active", dependencies=[Depends(require_admin)])
async def set_channel_active(channel_id: int, body: ChannelActiveRequest, request: Request):
    """启用或停用通道，停用后该通道的订单不再发起支付。"""
    try:
        request.app.state.channels.set_active(channel_id, body.active)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    logger.info("通道 id=%s 已%s", channel_id, "启用" if body.active else "停用")
    return JSONResponse(content={"code": 1, "id": channel_id, "active": body.active})


@router.post("/order/close/{trade_no}", dependencies=[Depends(require_admin)])
async def close_order(trade_no: str, request: Request):
    """关闭待支付订单：渠道支持关单时先在渠道侧关闭，再标记为已关闭。"""
    state = request.app.state
    record = state.orders.get_order(trade_no)
    if record is None:
        return JSONResponse(content={"code": -1, "msg": "订单不存在"})
    if record.status != STATUS_PENDING:
        return JSONResponse(content={"code": -1, "msg": "只能关闭待支付订单"})

    try:
        plugin_name, config = state.channels.get_channel(record.channel_id)
    except ChannelStoreError as e:
        logger.warning("订单 %s 通道不可用: %s", trade_no, e)
        return JSONResponse(content={"code": -1, "msg": "支付通道不可用"})

    result = await run_in_threadpool(state.dispatcher.dispatch, plugin_name, "close", config, record.order)
    if not isinstance(result, NotSupported) and not result.ok:
        return JSONResponse(content={"code": -1, "msg": result.msg or "关闭订单失败"})

    if not state.orders.mark_failed(trade_no):
        return JSONResponse(content={"code": -1, "msg": "订单状态已变化，无法关闭"})
    logger.info("订单已关闭: trade_no=%s", trade_no)
    return JSONResponse(content={"code": 1, "trade_no": trade_no, "status": STATUS_FAILED,
                                 "status_text": _STATUS_TEXT[STATUS_FAILED]})
