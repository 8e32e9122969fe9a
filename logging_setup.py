import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """配置控制台日志和可选的文件日志, 启动时调用一次"""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_file), encoding="utf-8"))

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
    logging.captureWarnings(True)


def install_excepthook() -> None:
    """主线程未捕获异常: 记录后以状态码1退出"""

    def _hook(exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        logger.critical("未捕获异常, 进程退出", exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook


def log_async_exception(loop, context: dict) -> None:
    """事件循环异常处理器: 只记录, 不终止进程"""
    exc = context.get("exception")
    message = context.get("message", "后台任务异常")
    if exc is not None:
        logger.error("未处理的异步异常: %s", message, exc_info=exc)
    else:
        logger.error("未处理的异步异常: %s", message)
