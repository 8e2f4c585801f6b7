"""
FastAPI 应用入口
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import get_settings
from marketplace.database import init_db
from marketplace.api import api_router
from marketplace.services.notification_client import build_notifier
from marketplace.services.refund_client import HttpRefundClient
from marketplace.workers.sla_worker import SLAWorker
from marketplace import models  # noqa: F401  (确保所有模型已注册到 Base.metadata，用于 create_all)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时初始化数据库
    await init_db()

    # 外部协作方：整个进程共用一个 HTTP 连接池
    app.state.refund_client = HttpRefundClient()
    app.state.notifier = build_notifier()

    # SLA 巡检 worker（可通过配置关闭，改用独立进程 / 定时任务）
    worker_task: asyncio.Task | None = None
    worker: SLAWorker | None = None
    if settings.enable_sla_worker:
        worker = SLAWorker()
        worker_task = asyncio.create_task(worker.run_forever())

    yield
    # 关闭时清理资源
    if worker:
        worker.stop()
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    await app.state.refund_client.close()
    if hasattr(app.state.notifier, "close"):
        await app.state.notifier.close()


app = FastAPI(
    title="电商售后处理系统",
    description="退货 / 投诉售后单、SLA 巡检与平台介入",
    version="1.0.0",
    lifespan=lifespan,
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境应限制具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """根路径"""
    return {
        "name": "电商售后处理系统",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """健康检查"""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "marketplace.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
