from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# 附件白名单
DEFAULT_ALLOWED_EXTENSIONS = [
    ".txt", ".md", ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".csv", ".json", ".zip", ".png", ".jpg", ".jpeg", ".gif", ".webp",
]
DEFAULT_ALLOWED_MIME_TYPES = [
    "text/plain", "text/markdown", "text/csv", "application/json",
    "application/pdf", "application/zip", "application/x-zip-compressed",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "image/png", "image/jpeg", "image/gif", "image/webp",
]


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 3000

    inbox_path: Path = Path("inbox.md")
    outbox_path: Path = Path("outbox.md")
    upload_dir: Path = Path("uploads")

    cors_origin: str = "*"
    environment: str = "development"

    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # outbox轮询
    watch_interval_seconds: float = 1.0
    watch_retry_delay_seconds: float = 1.0

    # 任务和附件限制
    title_max_length: int = 200
    description_max_length: int = 2000
    max_attachments: int = 5
    max_attachment_bytes: int = 10 * 1024 * 1024
    allowed_extensions: List[str] = DEFAULT_ALLOWED_EXTENSIONS
    allowed_mime_types: List[str] = DEFAULT_ALLOWED_MIME_TYPES

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
