from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from config import Settings
from document_store import DocumentStore
from main import create_app

INBOX_TEMPLATE = """# Agent Inbox

## Pending Tasks
*no pending tasks*

## Completed Tasks
### Fix bug ✅
**Priority**: high
**Completed Time**: 2024-01-01
**Deliverables**:
- ✅ patch.diff
"""


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """所有文档和上传目录都指向tmp_path的配置"""
    return Settings(
        inbox_path=tmp_path / "inbox.md",
        outbox_path=tmp_path / "outbox.md",
        upload_dir=tmp_path / "uploads",
        watch_interval_seconds=0.05,
        watch_retry_delay_seconds=0.01,
    )


@pytest.fixture()
def store() -> DocumentStore:
    return DocumentStore()


@pytest.fixture()
def inbox(settings: Settings) -> Path:
    settings.inbox_path.write_text(INBOX_TEMPLATE, encoding="utf-8")
    return settings.inbox_path


@pytest.fixture()
def client(settings: Settings, inbox: Path):
    settings.outbox_path.write_text("# Status\nidle\n", encoding="utf-8")
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
