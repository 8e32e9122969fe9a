import html
import logging
import re
import time
from typing import List, Mapping, Optional, Sequence, Tuple

import attachments
from attachments import PendingUpload
from config import Settings
from document_store import DocumentStore
from schemas import AttachmentRef, InboxView, Priority, TaskCreate, TaskRecord, TaskValidationError
from task_parser import parse_inbox

logger = logging.getLogger(__name__)

PENDING_HEADING_RE = re.compile(r"^##[ \t]+(?:Pending Tasks|待处理任务)[ \t]*(?=\r?$)", re.M)
PLACEHOLDER_RE = re.compile(r"\s*\*(?:no pending tasks|目前没有新任务)\*[ \t]*\r?(?:\n|$)")
NEXT_SECTION_RE = re.compile(r"^##[ \t]", re.M)


def line_ending(text: str) -> str:
    # 沿用文档自身的换行符
    return "\r\n" if "\r\n" in text else "\n"


def generate_task_id() -> str:
    # 毫秒时间戳, 同一毫秒内可能重复
    return str(int(time.time() * 1000))


def sanitize_input(text) -> str:
    if not isinstance(text, str):
        return ""
    return html.escape(text, quote=True)


def single_line(text: Optional[str]) -> str:
    return " ".join((text or "").split())


# 任务校验与清理

def validate_task(data: Mapping[str, Optional[str]], settings: Settings) -> TaskCreate:
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    if not title or not description:
        raise TaskValidationError("任务标题和描述不能为空")
    if len(title) > settings.title_max_length:
        raise TaskValidationError(f"任务标题过长（最多{settings.title_max_length}字符）")
    if len(description) > settings.description_max_length:
        raise TaskValidationError(f"任务描述过长（最多{settings.description_max_length}字符）")

    priority = (data.get("priority") or Priority.medium.value).strip().lower()
    if priority not in Priority.__members__:
        raise TaskValidationError("优先级无效（low/medium/high）")

    return TaskCreate(
        title=title,
        description=description,
        priority=Priority(priority),
        deadline=(data.get("deadline") or "").strip() or None,
        expected=(data.get("expected") or "").strip() or None,
        notes=(data.get("notes") or "").strip() or None,
    )


def build_task_record(task: TaskCreate, refs: Sequence[AttachmentRef] = (), task_id: Optional[str] = None) -> TaskRecord:
    """转义用户输入并压成单行, 得到可直接写入inbox的记录"""
    return TaskRecord(
        id=task_id or generate_task_id(),
        title=single_line(sanitize_input(task.title)),
        description=single_line(sanitize_input(task.description)),
        priority=task.priority.value,
        deadline=single_line(sanitize_input(task.deadline or "")),
        expected=single_line(sanitize_input(task.expected or "")),
        notes=single_line(sanitize_input(task.notes or "")),
        attachments=list(refs),
    )


# 任务写入inbox

def format_task_markdown(record: TaskRecord) -> str:
    heading = f"### Task {record.id} - {record.title}" if record.id else f"### {record.title}"
    lines = [heading, f"**Priority**: {record.priority}"]
    if record.deadline:
        lines.append(f"**Deadline**: {record.deadline}")
    lines.append(f"**Description**: {record.description}")
    if record.expected:
        lines.append(f"**Expected Result**: {record.expected}")
    if record.notes:
        lines.append(f"**Notes**: {record.notes}")
    if record.attachments:
        lines.append("**Attachments**:")
        for ref in record.attachments:
            lines.append(f"- [{single_line(ref.display_name)}]({attachments.attachment_url(ref)})")
    lines.extend(["", "---", "", ""])
    return "\n".join(lines)


def insert_task(inbox_text: str, task_markdown: str) -> str:
    """把任务追加到待处理区的末尾

    标题下紧跟的占位行会被替换; 找不到待处理标题时追加到文档末尾。
    插入内容使用文档原有的换行符, 插入点以外的内容保持不变。
    """
    newline = line_ending(inbox_text)
    task_markdown = task_markdown.replace("\r\n", "\n").replace("\n", newline)

    heading = PENDING_HEADING_RE.search(inbox_text)
    if heading is None:
        if inbox_text and not inbox_text.endswith("\n"):
            inbox_text += newline
        return inbox_text + task_markdown

    head_end = heading.end()
    placeholder = PLACEHOLDER_RE.match(inbox_text, head_end)
    if placeholder is not None:
        return inbox_text[:head_end] + newline + task_markdown + inbox_text[placeholder.end():]

    next_section = NEXT_SECTION_RE.search(inbox_text, head_end)
    insert_at = next_section.start() if next_section else len(inbox_text)
    before, after = inbox_text[:insert_at], inbox_text[insert_at:]
    if not before.endswith("\n"):
        before += newline
    return before + task_markdown + after


def create_task(store: DocumentStore, settings: Settings, task: TaskCreate,
                refs: Sequence[AttachmentRef] = ()) -> TaskRecord:
    record = build_task_record(task, refs)
    # 读取-修改-写回之间没有锁, 并发写入可能丢失其中一次插入
    inbox_text = store.read(settings.inbox_path)
    store.write(settings.inbox_path, insert_task(inbox_text, format_task_markdown(record)))
    logger.info("任务添加成功: %s (%s)", record.title, record.id)
    return record


def submit_task(store: DocumentStore, settings: Settings, data: Mapping[str, Optional[str]],
                uploads: List[PendingUpload]) -> Tuple[TaskRecord, List[AttachmentRef]]:
    """校验 -> 保存附件 -> 写入任务

    校验失败时不写任何内容; 写inbox失败时删除已保存的附件。
    """
    task = validate_task(data, settings)
    attachments.validate_uploads(uploads, settings)

    refs = attachments.save_attachments(uploads, settings)
    try:
        record = create_task(store, settings, task, refs)
    except Exception:
        attachments.delete_attachments(refs, settings)
        raise
    return record, refs


# 读取

def get_inbox_view(store: DocumentStore, settings: Settings) -> InboxView:
    return parse_inbox(store.read(settings.inbox_path))


def get_inbox_text(store: DocumentStore, settings: Settings) -> str:
    return store.read(settings.inbox_path)


def get_outbox_text(store: DocumentStore, settings: Settings) -> str:
    return store.read(settings.outbox_path)
