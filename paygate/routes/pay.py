"""
支付页面与渠道回调路由：

- GET|POST /pay/submit/{trade_no}    发起支付
- GET|POST /pay/notify/{trade_no}    渠道异步通知
- GET      /pay/return/{trade_no}    同步跳转
- GET      /pay/query/{trade_no}     主动查询对账
- GET      /pay/{method}/{trade_no}  指定支付方式（qrcode / jsapi / alipay ...）

插件调用（含同步网络请求）放到线程池执行。
"""

import logging
import os
from dataclasses import replace

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from paygate.models.schemas import (
    Context,
    ErrorAction,
    HtmlAction,
    JumpAction,
    NotSupported,
    RawRequest,
    SchemeAction,
)
from paygate.services.channel_store import ChannelStoreError

logger = logging.getLogger(__name__)

router = APIRouter()

_ADMIN_METHODS = ("refund", "close", "query", "reconcile", "notify", "return")


def _site_url(request: Request) -> str:
    return os.getenv("SITE_URL") or str(request.base_url).rstrip("/")


def _context(request: Request) -> Context:
    return Context.from_user_agent(
        request.headers.get("user-agent", ""),
        client_ip=request.client.host if request.client else "",
        site_url=_site_url(request),
    )


def _load(request: Request, trade_no: str):
    """
    读取订单和通道配置。

    订单快照中的 notify_url / return_url 替换为本平台的回调地址，
    商户自己的地址保留在订单记录中。

    Returns:
        (record, order, plugin_name, config) 或错误响应。
    """
    state = request.app.state
    record = state.orders.get_order(trade_no)
    if record is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "订单不存在"})
    try:
        plugin_name, config = state.channels.get_channel(record.channel_id)
    except ChannelStoreError as e:
        logger.warning("订单 %s 通道不可用: %s", trade_no, e)
        return JSONResponse(content={"code": -1, "msg": "支付通道不可用"})

    site = _site_url(request)
    order = replace(
        record.order,
        notify_url=f"{site}/pay/notify/{trade_no}",
        return_url=f"{site}/pay/return/{trade_no}",
    )
    return record, order, plugin_name, config


def render_action(result) -> Response:
    """把插件返回的支付动作转换为 HTTP 响应。"""
    if isinstance(result, (JumpAction, SchemeAction)):
        return RedirectResponse(url=result.url, status_code=302)
    if isinstance(result, HtmlAction):
        return HTMLResponse(content=result.html)
    if isinstance(result, ErrorAction):
        return JSONResponse(content={"code": -1, "msg": result.msg})
    if isinstance(result, NotSupported):
        return JSONResponse(content={"code": -2, "msg": result.msg})
    return JSONResponse(content={"code": 1, **result.to_dict()})


async def _raw_request(request: Request) -> RawRequest:
    return RawRequest(
        body=await request.body(),
        headers=dict(request.headers),
        query=tuple(request.query_params.multi_items()),
        method=request.method,
    )


# ── 发起支付 ──────────────────────────────────────────────


@router.api_route("/pay/submit/{trade_no}", methods=["GET", "POST"])
async def submit(trade_no: str, request: Request):
    loaded = _load(request, trade_no)
    if isinstance(loaded, Response):
        return loaded
    record, order, plugin_name, config = loaded
    if record.paid:
        return JSONResponse(content={"code": -1, "msg": "订单已支付"})

    result = await run_in_threadpool(
        request.app.state.dispatcher.dispatch,
        plugin_name, "submit", config, order, _context(request),
    )
    return render_action(result)


# ── 回调 ──────────────────────────────────────────────────


@router.api_route("/pay/notify/{trade_no}", methods=["GET", "POST"])
async def notify(trade_no: str, request: Request):
    """
    渠道异步通知。

    原始请求不做解析直接交给插件验签；验证通过才标记已支付。
    重复通知同样返回成功应答，但不会重复触发状态转换。
    """
    loaded = _load(request, trade_no)
    if isinstance(loaded, Response):
        return PlainTextResponse("fail", status_code=loaded.status_code)
    record, order, plugin_name, config = loaded

    raw = await _raw_request(request)
    result = await run_in_threadpool(
        request.app.state.dispatcher.dispatch, plugin_name, "notify", config, order, raw,
    )
    if isinstance(result, NotSupported):
        return PlainTextResponse("fail")

    if result.valid:
        if request.app.state.orders.mark_paid(trade_no, result.provider_trade_no, result.payer_id):
            logger.info("异步通知确认支付: trade_no=%s, channel=%s", trade_no, plugin_name)
        else:
            logger.info("重复的异步通知: trade_no=%s", trade_no)
    return Response(content=result.ack, media_type=result.ack_media_type)


@router.get("/pay/return/{trade_no}")
async def return_page(trade_no: str, request: Request):
    """同步跳转：只给用户提示，不改变订单状态。"""
    loaded = _load(request, trade_no)
    if isinstance(loaded, Response):
        return loaded
    record, order, plugin_name, config = loaded

    raw = await _raw_request(request)
    result = await run_in_threadpool(
        request.app.state.dispatcher.dispatch, plugin_name, "return", config, order, raw,
    )
    if isinstance(result, NotSupported):
        return JSONResponse(content={"code": -2, "msg": result.msg})
    if not result.valid:
        return JSONResponse(content={"code": -1, "msg": result.msg or "支付结果校验失败"})
    if record.order.return_url:
        return RedirectResponse(url=record.order.return_url, status_code=302)
    return JSONResponse(content={"code": 1, "msg": "支付成功", "trade_no": trade_no})


@router.get("/pay/query/{trade_no}")
async def reconcile(trade_no: str, request: Request):
    """主动查询渠道订单状态，确认已支付时补单。"""
    loaded = _load(request, trade_no)
    if isinstance(loaded, Response):
        return loaded
    record, order, plugin_name, config = loaded
    if record.paid:
        return JSONResponse(content={"code": 1, "status": "paid", "msg": "订单已支付"})

    result = await run_in_threadpool(
        request.app.state.dispatcher.dispatch, plugin_name, "reconcile", config, order,
    )
    if isinstance(result, NotSupported):
        return JSONResponse(content={"code": -2, "msg": result.msg})
    if result.valid:
        request.app.state.orders.mark_paid(trade_no, result.provider_trade_no, result.payer_id)
        logger.info("主动查询确认支付: trade_no=%s, channel=%s", trade_no, plugin_name)
        return JSONResponse(content={"code": 1, "status": "paid", "msg": "支付成功"})
    return JSONResponse(content={"code": 1, "status": "pending", "msg": result.msg or "未支付"})


# ── 指定支付方式 ──────────────────────────────────────────


@router.get("/pay/{method}/{trade_no}")
async def pay_method(method: str, trade_no: str, request: Request):
    # 退款、关单等管理操作只能走 /v1/api
    if method in _ADMIN_METHODS:
        return JSONResponse(content={"code": -2, "msg": "不支持的支付方式"})
    loaded = _load(request, trade_no)
    if isinstance(loaded, Response):
        return loaded
    record, order, plugin_name, config = loaded
    if record.paid:
        return JSONResponse(content={"code": -1, "msg": "订单已支付"})

    result = await run_in_threadpool(
        request.app.state.dispatcher.dispatch,
        plugin_name, method, config, order, _context(request),
    )
    return render_action(result)
