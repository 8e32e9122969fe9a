"""从inbox文档解析任务记录

文档是宽松的markdown: ``## `` 标题开始待处理区和已完成区, ``### `` 标题开始
一条记录, ``**标签**:`` 行是字段, ``- `` 行是列表项。解析是逐行的状态机,
由 ``TRANSITIONS`` 驱动, 不会因为内容而抛异常。
记录下无法识别的非空行并入任务描述。
旧版中文文档的字段值写在标签的下一行: 标签后为空时, 下一行文本作为该字段的值。
"""

import logging
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote

from schemas import AttachmentRef, CompletedTaskRecord, InboxView, TaskRecord

logger = logging.getLogger(__name__)

PENDING_HEADING = "Pending Tasks"
COMPLETED_HEADING = "Completed Tasks"
NO_PENDING_PLACEHOLDER = "*no pending tasks*"
COMPLETION_MARKER = "✅"

# 标题关键字, 兼容旧的中文文档
PENDING_MARKERS = (PENDING_HEADING, "待处理任务")
COMPLETED_MARKERS = (COMPLETED_HEADING, "已完成任务")

# 字段标签 -> 字段名
FIELD_LABELS: Dict[str, str] = {
    "Priority": "priority",
    "优先级": "priority",
    "Deadline": "deadline",
    "截止时间": "deadline",
    "Description": "description",
    "任务描述": "description",
    "Expected Result": "expected",
    "预期结果": "expected",
    "Notes": "notes",
    "备注": "notes",
    "Attachments": "attachments",
    "附件": "attachments",
    "Completed Time": "completed_time",
    "完成时间": "completed_time",
    "Deliverables": "deliverables",
    "交付物": "deliverables",
    "Tech Implementation": "tech_implementation",
    "技术实现": "tech_implementation",
    "Status": "status",
    "状态": "status",
}

PENDING_FIELDS = ("priority", "deadline", "description", "expected", "notes")
COMPLETED_FIELDS = ("priority", "description", "completed_time")
# 旧文档里的固定状态行, 不对应任何字段
IGNORED_FIELDS = ("status",)

FIELD_RE = re.compile(r"^\*\*(?P<label>[^*]+?)\*\*\s*[:：]\s*(?P<value>.*)$")
LIST_ITEM_RE = re.compile(r"^-\s+(?P<item>.*)$")
DIVIDER_RE = re.compile(r"^(?:-{3,}|\*{3,}|_{3,})$")
LINK_RE = re.compile(r"^\[(?P<name>.+)\]\((?P<url>[^()\s]+)\)$")
TASK_ID_RE = re.compile(r"^(?:Task|任务)\s+(?P<id>\S+)\s+-\s+(?P<title>.*)$")
CHECKED_RE = re.compile(r"^(?:✅|☑\ufe0f?|✔\ufe0f?|\[[xX ]\])\s*")


class State(Enum):
    OUTSIDE = "outside"
    PENDING = "in_pending_section"
    COMPLETED = "in_completed_section"
    ATTACHMENTS = "in_attachment_block"
    DELIVERABLES = "in_deliverables_block"
    TECH = "in_tech_block"


class LineKind(Enum):
    SECTION = "section"
    RECORD = "record"
    FIELD = "field"
    LIST_ITEM = "list_item"
    DIVIDER = "divider"
    BLANK = "blank"
    TEXT = "text"


PENDING_STATES = (State.PENDING, State.ATTACHMENTS)
COMPLETED_STATES = (State.COMPLETED, State.DELIVERABLES, State.TECH)

# (状态, 行类型) -> 处理方法; 表中没有的组合直接忽略
TRANSITIONS: Dict[Tuple[State, LineKind], str] = {}
for _state in State:
    TRANSITIONS[(_state, LineKind.SECTION)] = "enter_section"
for _state in PENDING_STATES:
    TRANSITIONS[(_state, LineKind.RECORD)] = "start_pending_record"
    TRANSITIONS[(_state, LineKind.FIELD)] = "pending_field"
for _state in COMPLETED_STATES:
    TRANSITIONS[(_state, LineKind.RECORD)] = "start_completed_record"
    TRANSITIONS[(_state, LineKind.FIELD)] = "completed_field"
    TRANSITIONS[(_state, LineKind.TEXT)] = "continue_description"
TRANSITIONS.update({
    (State.PENDING, LineKind.LIST_ITEM): "continue_description",
    (State.PENDING, LineKind.TEXT): "continue_description",
    (State.ATTACHMENTS, LineKind.LIST_ITEM): "attachment_item",
    (State.ATTACHMENTS, LineKind.DIVIDER): "end_attachments",
    (State.ATTACHMENTS, LineKind.BLANK): "end_attachments",
    (State.ATTACHMENTS, LineKind.TEXT): "end_attachments_with_text",
    (State.COMPLETED, LineKind.LIST_ITEM): "continue_description",
    (State.DELIVERABLES, LineKind.LIST_ITEM): "deliverable_item",
    (State.DELIVERABLES, LineKind.DIVIDER): "end_list",
    (State.TECH, LineKind.LIST_ITEM): "tech_item",
    (State.TECH, LineKind.DIVIDER): "end_list",
})


def classify(line: str) -> Tuple[LineKind, Optional[str], str]:
    """对去掉首尾空白的一行返回 (行类型, 字段名, 内容)"""
    if not line:
        return LineKind.BLANK, None, ""
    if line.startswith("### "):
        return LineKind.RECORD, None, line[4:].strip()
    if line.startswith("## "):
        return LineKind.SECTION, None, line[3:].strip()
    if DIVIDER_RE.match(line):
        return LineKind.DIVIDER, None, ""
    m = FIELD_RE.match(line)
    if m and m.group("label").strip() in FIELD_LABELS:
        return LineKind.FIELD, FIELD_LABELS[m.group("label").strip()], m.group("value").strip()
    m = LIST_ITEM_RE.match(line)
    if m:
        return LineKind.LIST_ITEM, None, m.group("item").strip()
    return LineKind.TEXT, None, line


def parse_attachment_link(item: str) -> Optional[AttachmentRef]:
    m = LINK_RE.match(item)
    if not m:
        return None
    url = m.group("url")
    storage_name = unquote(url.rstrip("/").rsplit("/", 1)[-1])
    if not storage_name:
        return None
    return AttachmentRef(display_name=m.group("name").strip(), storage_name=storage_name)


def strip_checkbox(item: str) -> str:
    return CHECKED_RE.sub("", item, count=1).strip()


def strip_completion_marker(title: str) -> str:
    while title.endswith(COMPLETION_MARKER):
        title = title[: -len(COMPLETION_MARKER)].rstrip()
    return title


class TaskDocumentParser:
    def __init__(self):
        self._reset()

    def _reset(self):
        self.state = State.OUTSIDE
        self.current: Optional[dict] = None
        self.current_kind: Optional[State] = None
        self.pending: List[TaskRecord] = []
        self.completed: List[CompletedTaskRecord] = []
        self.seen_pending = False
        self.seen_completed = False
        self.awaiting: Optional[str] = None

    def parse(self, text: str) -> InboxView:
        self._reset()
        for raw in (text or "").splitlines():
            kind, field, payload = classify(raw.strip())
            handler = TRANSITIONS.get((self.state, kind))
            if handler is not None:
                getattr(self, handler)(field, payload, raw.strip())
        self.flush()
        return InboxView(pending_tasks=self.pending, completed_tasks=self.completed)

    def flush(self):
        record, self.current = self.current, None
        self.awaiting = None
        if record is None:
            return
        if self.current_kind is State.PENDING:
            self.pending.append(TaskRecord(**record))
        else:
            self.completed.append(CompletedTaskRecord(**record))

    # 状态转换处理方法

    def enter_section(self, field, heading, line):
        self.flush()
        if any(m in heading for m in PENDING_MARKERS) and not self.seen_pending:
            self.seen_pending = True
            self.state = State.PENDING
        elif any(m in heading for m in COMPLETED_MARKERS) and not self.seen_completed:
            self.seen_completed = True
            self.state = State.COMPLETED
        else:
            self.state = State.OUTSIDE

    def start_pending_record(self, field, heading, line):
        self.flush()
        record = {"id": "", "title": heading, "attachments": []}
        m = TASK_ID_RE.match(heading)
        if m:
            record["id"] = m.group("id")
            record["title"] = m.group("title").strip()
        for name in PENDING_FIELDS:
            record[name] = ""
        self.current = record
        self.current_kind = State.PENDING
        self.state = State.PENDING

    def start_completed_record(self, field, heading, line):
        self.flush()
        record = {
            "title": strip_completion_marker(heading),
            "deliverables": [],
            "tech_implementation": [],
        }
        for name in COMPLETED_FIELDS:
            record[name] = ""
        self.current = record
        self.current_kind = State.COMPLETED
        self.state = State.COMPLETED

    def pending_field(self, field, value, line):
        self.state = State.PENDING
        self.awaiting = None
        if self.current is None:
            return
        if field == "attachments":
            self.state = State.ATTACHMENTS
        elif field in PENDING_FIELDS:
            self.current[field] = value
            if not value:
                self.awaiting = field
        elif field not in IGNORED_FIELDS:
            self.continue_description(field, line, line)

    def completed_field(self, field, value, line):
        self.awaiting = None
        if field == "deliverables":
            self.state = State.DELIVERABLES
        elif field == "tech_implementation":
            self.state = State.TECH
        else:
            self.state = State.COMPLETED
        if self.current is None:
            return
        if field in COMPLETED_FIELDS:
            self.current[field] = value
            if not value:
                self.awaiting = field
        elif field not in ("deliverables", "tech_implementation") + IGNORED_FIELDS:
            self.continue_description(field, line, line)

    def continue_description(self, field, text, line):
        if self.current is None or not text:
            return
        if self.awaiting is not None:
            # 标签后为空, 这一行就是该字段的值
            self.current[self.awaiting] = text
            self.awaiting = None
        elif self.current["description"]:
            self.current["description"] += " " + text
        else:
            self.current["description"] = text

    def attachment_item(self, field, item, line):
        if self.current is None:
            return
        ref = parse_attachment_link(item)
        if ref is None:
            logger.debug("跳过无法解析的附件行: %s", item)
            return
        self.current["attachments"].append(ref)

    def end_attachments(self, field, payload, line):
        self.state = State.PENDING

    def end_attachments_with_text(self, field, text, line):
        self.state = State.PENDING
        self.continue_description(field, text, line)

    def deliverable_item(self, field, item, line):
        if self.current is not None and strip_checkbox(item):
            self.current["deliverables"].append(strip_checkbox(item))

    def tech_item(self, field, item, line):
        if self.current is not None and strip_checkbox(item):
            self.current["tech_implementation"].append(strip_checkbox(item))

    def end_list(self, field, payload, line):
        self.state = State.COMPLETED


def parse_inbox(text: str) -> InboxView:
    return TaskDocumentParser().parse(text)


def parse_pending_tasks(text: str) -> List[TaskRecord]:
    return parse_inbox(text).pending_tasks


def parse_completed_tasks(text: str) -> List[CompletedTaskRecord]:
    return parse_inbox(text).completed_tasks
