import logging
import os
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class DocumentStore:
    """inbox/outbox 文档的纯文本读写

    文件不存在时首次读取会创建空文件, 调用方不会遇到"找不到文件"。
    内容原样读写, 不转换换行符。写入没有加锁: 两个调用方同时读-改-写
    同一文档时可能丢失其中一次更新。
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    def ensure_exists(self, path: PathLike) -> bool:
        """文档不存在时创建空文件, 创建了返回True"""
        path = Path(path)
        if path.exists():
            return False
        logger.info("文件不存在，创建: %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("", encoding=self.encoding)
        return True

    def read(self, path: PathLike) -> str:
        path = Path(path)
        try:
            self.ensure_exists(path)
            with open(path, "r", encoding=self.encoding, newline="") as f:
                return f.read()
        except OSError as e:
            logger.error("读取文件失败: %s, 错误: %s", path, e)
            raise

    def write(self, path: PathLike, text: str) -> None:
        path = Path(path)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # 先写临时文件再替换, 读者不会看到写了一半的文档
            with open(tmp, "w", encoding=self.encoding, newline="") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            logger.error("写入文件失败: %s, 错误: %s", path, e)
            if tmp.exists():
                tmp.unlink()
            raise
        logger.debug("文件写入成功: %s", path)

    def append(self, path: PathLike, text: str) -> None:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding=self.encoding, newline="") as f:
                f.write(text)
        except OSError as e:
            logger.error("追加文件失败: %s, 错误: %s", path, e)
            raise
        logger.debug("文件追加成功: %s", path)

    def stat(self, path: PathLike) -> Optional[os.stat_result]:
        try:
            return os.stat(path)
        except FileNotFoundError:
            return None
