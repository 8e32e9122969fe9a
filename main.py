import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import attachments
import crud
from attachments import PendingUpload
from broadcaster import ConnectionManager, status_update_event, task_added_event
from config import Settings
from document_store import DocumentStore
from logging_setup import install_excepthook, log_async_exception, setup_logging
from schemas import ApiResponse, TaskCreatedOut, TaskValidationError
from watcher import ChangeWatcher

logger = logging.getLogger(__name__)

PROCESS_STARTED = time.monotonic()

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}


async def read_upload(upload: UploadFile, settings: Settings) -> PendingUpload:
    # 多读一个字节用来判断是否超限
    data = await upload.read(settings.max_attachment_bytes + 1)
    await upload.close()
    return PendingUpload(upload.filename or "", upload.content_type, data)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    store = DocumentStore()
    manager = ConnectionManager()

    async def on_outbox_change(content: str) -> None:
        await manager.broadcast(status_update_event(content))

    watcher = ChangeWatcher(
        store,
        settings.outbox_path,
        on_outbox_change,
        interval=settings.watch_interval_seconds,
        retry_delay=settings.watch_retry_delay_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(log_async_exception)
        logger.info("Inbox文件: %s", settings.inbox_path)
        logger.info("Outbox文件: %s", settings.outbox_path)
        watcher.start()
        yield
        await watcher.stop()
        logger.info("服务器已关闭")

    app = FastAPI(title="Task Inbox", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.manager = manager
    app.state.watcher = watcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origin.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 生产环境安全头
    if settings.is_production:
        @app.middleware("http")
        async def security_headers(request: Request, call_next):
            response = await call_next(request)
            for name, value in SECURITY_HEADERS.items():
                response.headers[name] = value
            return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        message = exc.detail if exc.status_code != 404 or exc.detail != "Not Found" else "接口不存在"
        return JSONResponse({"success": False, "message": message}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def server_error(request: Request, exc: Exception):
        logger.error("服务器错误: %s", exc, exc_info=exc)
        return JSONResponse({"success": False, "message": "服务器内部错误"}, status_code=500)

    # 任务API
    @app.post("/api/tasks", response_model=TaskCreatedOut)
    async def add_task(
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        priority: Optional[str] = Form(None),
        deadline: Optional[str] = Form(None),
        expected: Optional[str] = Form(None),
        notes: Optional[str] = Form(None),
        files: Optional[List[UploadFile]] = File(None, alias="attachments"),
    ):
        logger.info("收到添加任务请求")
        data = {
            "title": title,
            "description": description,
            "priority": priority,
            "deadline": deadline,
            "expected": expected,
            "notes": notes,
        }
        files = [f for f in (files or []) if f.filename]
        try:
            crud.validate_task(data, settings)
            attachments.validate_upload_count(len(files), settings)
            uploads = [await read_upload(f, settings) for f in files]
            record, refs = crud.submit_task(store, settings, data, uploads)
        except TaskValidationError as e:
            logger.warning("任务校验失败: %s", e)
            raise HTTPException(status_code=400, detail=str(e))
        except OSError:
            logger.exception("添加任务失败")
            raise HTTPException(status_code=500, detail="添加任务失败，请重试")

        await manager.broadcast(task_added_event(record.model_dump(by_alias=True)))
        return TaskCreatedOut(message="任务添加成功", task=record, attachments=refs)

    @app.get("/api/tasks", response_model=ApiResponse)
    async def read_tasks():
        logger.info("获取任务列表请求")
        try:
            view = crud.get_inbox_view(store, settings)
        except OSError:
            logger.exception("获取任务列表失败")
            raise HTTPException(status_code=500, detail="获取任务列表失败")
        return ApiResponse(data=view.model_dump(by_alias=True), message="获取任务列表成功")

    @app.get("/api/inbox", response_model=ApiResponse)
    async def read_inbox():
        try:
            content = crud.get_inbox_text(store, settings)
        except OSError:
            logger.exception("读取inbox失败")
            raise HTTPException(status_code=500, detail="读取任务队列失败")
        return ApiResponse(data=content, message="获取任务队列成功")

    @app.get("/api/status", response_model=ApiResponse)
    async def read_status():
        logger.info("获取状态请求")
        try:
            content = crud.get_outbox_text(store, settings)
        except OSError:
            logger.exception("获取状态失败")
            raise HTTPException(status_code=500, detail="获取状态失败")
        return ApiResponse(data=content, message="获取状态成功")

    # 附件API
    @app.get("/api/files", response_model=ApiResponse)
    async def list_files():
        refs = attachments.list_attachments(settings)
        return ApiResponse(data=[r.model_dump(by_alias=True) for r in refs], message="获取文件列表成功")

    @app.get("/api/files/{storage_name}")
    async def download_file(storage_name: str):
        path = attachments.resolve_attachment(storage_name, settings)
        if path is None:
            raise HTTPException(status_code=404, detail="文件不存在")
        return FileResponse(path=path, filename=attachments.display_name_from_storage(storage_name))

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - PROCESS_STARTED, 3),
        }

    # 实时状态推送
    @app.websocket("/ws")
    async def live_feed(websocket: WebSocket):
        await websocket.accept()
        manager.register(websocket)
        try:
            content = store.read(settings.outbox_path)
        except OSError:
            logger.exception("发送初始状态失败")
        else:
            await manager.send(websocket, status_update_event(content))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            manager.unregister(websocket)

    return app


def run() -> None:
    settings = Settings()
    setup_logging(settings.log_level, settings.log_file)
    install_excepthook()
    logger.info("服务器启动: http://%s:%s (WebSocket: /ws)", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


# 也可以用 uvicorn main:create_app --factory 启动
if __name__ == "__main__":
    run()
