"""
Paygate 应用入口：FastAPI 应用实例、路由注册、生命周期和插件热加载任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent

PLUGINS_DIR = os.getenv("PLUGINS_DIR") or str(BASE_DIR / "channels")

from paygate.models.schemas import ChannelConfigError
from paygate.plugins.dispatcher import Dispatcher
from paygate.plugins.registry import PluginRegistry
from paygate.services.channel_store import ChannelStore
from paygate.services.order_store import OrderStore
from paygate.services.provider_http import ProviderHTTP


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：初始化数据库、加载插件并启动目录监听。"""
    from paygate.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    # 各渠道插件共享同一个 HTTP 连接池
    app.state.http = ProviderHTTP()
    app.state.registry = PluginRegistry(PLUGINS_DIR, http=app.state.http)
    app.state.dispatcher = Dispatcher(app.state.registry)
    app.state.channels = ChannelStore(app.state.registry)
    app.state.orders = OrderStore()
    app.state.registry.load_all()

    tasks = []
    watch_enabled = os.environ.get("PLUGIN_WATCH", "1") != "0"
    if os.environ.get("TESTING") != "1" and watch_enabled:
        interval = float(os.environ.get("PLUGIN_POLL_INTERVAL", "0.2"))
        tasks.append(asyncio.create_task(app.state.registry.watch(interval)))

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass
    app.state.http.close()


app = FastAPI(title="Paygate", description="支付通道插件网关", lifespan=lifespan)


@app.exception_handler(ChannelConfigError)
async def channel_config_error_handler(request: Request, exc: ChannelConfigError):
    logger.error("通道配置错误: %s", exc)
    return JSONResponse(status_code=500, content={"code": -1, "msg": "支付通道配置错误"})


# ── 路由注册 ──────────────────────────────────────────────

from paygate.routes.api import router as api_router
from paygate.routes.pay import router as pay_router

app.include_router(api_router)
app.include_router(pay_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check(request: Request):
    return {"status": "ok", "plugins": request.app.state.registry.names()}
