import logging
import re
import time
from pathlib import Path
from typing import Iterable, List, NamedTuple, Optional
from urllib.parse import quote

from config import Settings
from schemas import AttachmentRef, TaskValidationError

logger = logging.getLogger(__name__)

ATTACHMENT_URL_PREFIX = "/api/files/"
STORAGE_PREFIX_RE = re.compile(r"^\d+-")
UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
GENERIC_MIME_TYPES = ("", "application/octet-stream")


class PendingUpload(NamedTuple):
    filename: str
    content_type: Optional[str]
    data: bytes


def decode_display_name(name: str) -> str:
    """还原被按latin-1解码的UTF-8文件名, 并去掉路径部分"""
    try:
        name = name.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        pass
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    return " ".join(name.split())


def safe_file_name(name: str) -> str:
    cleaned = UNSAFE_CHARS_RE.sub("_", name).strip().lstrip(".")
    return cleaned or "file"


def make_storage_name(display_name: str, upload_dir: Path, now_ms: Optional[int] = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    base = safe_file_name(display_name)
    # 同一毫秒内同名文件顺延时间戳
    while (upload_dir / f"{stamp}-{base}").exists():
        stamp += 1
    return f"{stamp}-{base}"


def display_name_from_storage(storage_name: str) -> str:
    return STORAGE_PREFIX_RE.sub("", storage_name, count=1) or storage_name


def attachment_url(ref: AttachmentRef) -> str:
    return ATTACHMENT_URL_PREFIX + quote(ref.storage_name)


def validate_upload_count(count: int, settings: Settings) -> None:
    if count > settings.max_attachments:
        raise TaskValidationError(f"最多只能上传{settings.max_attachments}个附件")


def validate_upload(upload: PendingUpload, settings: Settings) -> None:
    name = upload.filename
    suffix = Path(name).suffix.lower()
    if suffix not in settings.allowed_extensions:
        raise TaskValidationError(f"不支持的文件类型: {name}")
    content_type = (upload.content_type or "").split(";")[0].strip().lower()
    if content_type not in GENERIC_MIME_TYPES and content_type not in settings.allowed_mime_types:
        raise TaskValidationError(f"不支持的文件类型: {name} ({content_type})")
    if len(upload.data) > settings.max_attachment_bytes:
        limit_mb = settings.max_attachment_bytes // (1024 * 1024)
        raise TaskValidationError(f"文件过大: {name}（最大{limit_mb}MB）")


def validate_uploads(uploads: List[PendingUpload], settings: Settings) -> None:
    validate_upload_count(len(uploads), settings)
    for upload in uploads:
        validate_upload(upload, settings)


def save_attachments(uploads: Iterable[PendingUpload], settings: Settings) -> List[AttachmentRef]:
    """把校验过的附件写入上传目录, 失败时删除已写入的文件"""
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    saved: List[AttachmentRef] = []
    try:
        for upload in uploads:
            display_name = decode_display_name(upload.filename)
            storage_name = make_storage_name(display_name, upload_dir)
            (upload_dir / storage_name).write_bytes(upload.data)
            saved.append(AttachmentRef(
                display_name=display_name,
                storage_name=storage_name,
                size_bytes=len(upload.data),
            ))
            logger.info("附件保存成功: %s -> %s", display_name, storage_name)
    except OSError:
        logger.exception("附件保存失败")
        delete_attachments(saved, settings)
        raise
    return saved


def delete_attachments(refs: Iterable[AttachmentRef], settings: Settings) -> None:
    for ref in refs:
        path = Path(settings.upload_dir) / ref.storage_name
        try:
            path.unlink(missing_ok=True)
            logger.info("已回滚附件: %s", ref.storage_name)
        except OSError as e:
            logger.error("删除附件失败: %s, 错误: %s", path, e)


def list_attachments(settings: Settings) -> List[AttachmentRef]:
    upload_dir = Path(settings.upload_dir)
    if not upload_dir.is_dir():
        return []
    files = [p for p in upload_dir.iterdir() if p.is_file() and not p.name.startswith(".")]
    files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return [
        AttachmentRef(
            display_name=display_name_from_storage(p.name),
            storage_name=p.name,
            size_bytes=p.stat().st_size,
        )
        for p in files
    ]


def resolve_attachment(storage_name: str, settings: Settings) -> Optional[Path]:
    if not storage_name or storage_name != Path(storage_name).name or "\\" in storage_name:
        return None
    if storage_name.startswith("."):
        return None
    path = Path(settings.upload_dir) / storage_name
    if not path.is_file():
        return None
    return path
