# -*- coding: utf-8 -*-
"""
后端 API 服务器

文件功能:
    - 提供基于 FastAPI 的后端服务，管理本地 Koinos 节点服务栈。
    - 通过 RESTful API 和 SSE 与前端交互。

公开接口:
    - GET  /api/requirements: 系统需求检查
    - GET  /api/initialized: 是否已完成初始化
    - POST /api/setup: 初始化节点目录与配置
    - POST /api/start | /api/stop | /api/restart: 生命周期操作
    - GET  /api/status: 节点状态快照
    - GET  /api/status/detailed: 详细状态
    - GET  /api/resources: 最近一次资源采样
    - POST /api/snapshot/download: 后台下载并解压快照
    - POST /api/snapshot/cancel: 取消快照下载
    - GET  /api/snapshot: 当前的下载记录
    - GET  /api/logs | POST /api/logs/clear: 日志缓冲区
    - GET  /api/events/stream: 通过 SSE 推送 node_status_update / download_progress / log_entry / logs_cleared
    - GET  /api/logs/stream: 通过 SSE 只推送日志
"""

import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel
from starlette.responses import StreamingResponse

from config import Settings
from service.errors import NodeError
from service.event_hub import LOG_ENTRY_EVENT, LOGS_CLEARED_EVENT
from workers.node_context import ALL_EVENTS, NodeContext

# --- Pydantic 模型 ---

class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None


class DownloadRequest(BaseModel):
    url: Optional[str] = None


def _dump(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return payload


def format_sse(event: str, payload: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(_dump(payload), ensure_ascii=False)}\n\n"


# --- SSE 事件流 ---

async def event_generator(request: Request, context: NodeContext, events: Iterable[str]):
    subscription = context.subscribe(events)
    try:
        while True:
            if await request.is_disconnected():
                break
            item = await asyncio.to_thread(subscription.get, 1.0)
            if item is None:
                continue
            event, payload = item
            yield format_sse(event, payload)
    finally:
        context.unsubscribe(subscription)


async def run_download_task(context: NodeContext, url: Optional[str]) -> None:
    try:
        await context.download_snapshot(url)
    except NodeError as e:
        logger.error(f"[{e.kind}] 快照获取失败: {e.message}")


def create_app(settings: Optional[Settings] = None, context: Optional[NodeContext] = None) -> FastAPI:
    node = context or NodeContext(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await node.startup()
        try:
            yield
        finally:
            await node.shutdown()

    app = FastAPI(
        title="Koinos 节点管理后端",
        description="提供节点初始化、生命周期管理、快照下载和状态查询的 API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.context = node

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NodeError)
    async def node_error_handler(request: Request, exc: NodeError):
        logger.warning(f"[{exc.kind}] {request.method} {request.url.path}: {exc.message}")
        body = ApiResponse(success=False, message=exc.message, data=exc.to_dict())
        return JSONResponse(content=body.model_dump())

    # --- 初始化 ---

    @app.get("/api/requirements", response_model=ApiResponse, summary="检查系统需求")
    async def get_requirements():
        requirements = await node.check_system_requirements()
        message = "系统满足运行要求" if requirements.is_sufficient else "系统不满足运行要求"
        return ApiResponse(success=True, message=message, data=requirements.model_dump())

    @app.get("/api/initialized", response_model=ApiResponse, summary="是否已完成初始化")
    def get_initialized():
        initialized = node.is_initialized()
        return ApiResponse(success=True, message="已初始化" if initialized else "未初始化", data={"initialized": initialized})

    @app.post("/api/setup", response_model=ApiResponse, summary="初始化节点")
    async def setup_node():
        success, message = await node.setup_node()
        return ApiResponse(success=success, message=message)

    # --- 生命周期 ---

    @app.post("/api/start", response_model=ApiResponse, summary="启动节点")
    async def start_node():
        logger.info("收到启动请求")
        status = await node.start_node()
        return ApiResponse(success=True, message=f"节点状态: {status.status.value}", data=status.model_dump(mode="json"))

    @app.post("/api/stop", response_model=ApiResponse, summary="停止节点")
    async def stop_node():
        logger.info("收到停止请求")
        status = await node.stop_node()
        return ApiResponse(success=True, message=f"节点状态: {status.status.value}", data=status.model_dump(mode="json"))

    @app.post("/api/restart", response_model=ApiResponse, summary="重启节点")
    async def restart_node():
        logger.info("收到重启请求")
        status = await node.restart_node()
        return ApiResponse(success=True, message=f"节点状态: {status.status.value}", data=status.model_dump(mode="json"))

    # --- 状态 ---

    @app.get("/api/status", response_model=ApiResponse, summary="获取节点状态")
    def get_status():
        status = node.get_node_status()
        return ApiResponse(success=True, message=status.status.value, data=status.model_dump(mode="json"))

    @app.get("/api/status/detailed", response_model=ApiResponse, summary="获取详细状态")
    async def get_detailed_status():
        detailed = await node.get_detailed_status()
        return ApiResponse(success=True, message="ok", data=detailed.model_dump())

    @app.get("/api/resources", response_model=ApiResponse, summary="获取资源使用情况")
    def get_resources():
        return ApiResponse(success=True, message="ok", data=node.get_resource_usage().model_dump())

    # --- 快照 ---

    @app.post("/api/snapshot/download", response_model=ApiResponse, summary="下载链数据快照")
    async def download_snapshot(background_tasks: BackgroundTasks, body: Optional[DownloadRequest] = None):
        if node.acquirer.busy:
            return ApiResponse(success=False, message="已有快照下载正在进行", data={"kind": "Retryable", "retryable": True})
        url = body.url if body else None
        background_tasks.add_task(run_download_task, node, url)
        return ApiResponse(success=True, message="快照下载任务已开始，请关注进度事件。")

    @app.post("/api/snapshot/cancel", response_model=ApiResponse, summary="取消快照下载")
    async def cancel_snapshot():
        cancelled = await node.cancel_download()
        if not cancelled:
            return ApiResponse(success=False, message="当前没有进行中的快照下载")
        return ApiResponse(success=True, message="快照下载已取消，进度已保存")

    @app.get("/api/snapshot", response_model=ApiResponse, summary="获取快照下载记录")
    def get_snapshot():
        record = node.snapshot_record()
        return ApiResponse(
            success=True,
            message="下载中" if node.acquirer.busy else "空闲",
            data={
                "busy": node.acquirer.busy,
                "data_ready": node.acquirer.data_ready(),
                "record": record.model_dump() if record else None,
            },
        )

    # --- 日志与事件 ---

    @app.get("/api/logs", response_model=ApiResponse, summary="获取日志")
    def get_logs():
        entries = [entry.model_dump() for entry in node.get_logs()]
        return ApiResponse(success=True, message=f"{len(entries)} 条日志", data={"entries": entries})

    @app.post("/api/logs/clear", response_model=ApiResponse, summary="清空日志")
    def clear_logs():
        node.clear_logs()
        return ApiResponse(success=True, message="日志已清空")

    @app.get("/api/events/stream")
    def stream_events(request: Request):
        return StreamingResponse(event_generator(request, node, ALL_EVENTS), media_type="text/event-stream")

    @app.get("/api/logs/stream")
    def stream_logs(request: Request):
        return StreamingResponse(
            event_generator(request, node, (LOG_ENTRY_EVENT, LOGS_CLEARED_EVENT)), media_type="text/event-stream"
        )

    # 挂载前端静态文件
    frontend_dist_dir = Path.cwd() / "dist"
    if frontend_dist_dir.exists():
        app.mount("/", StaticFiles(directory=str(frontend_dist_dir), html=True), name="frontend")
    else:
        logger.debug(f"前端静态文件目录不存在: {frontend_dist_dir}")

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="localhost", port=1234, reload=False)
