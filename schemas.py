from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttachmentRef(CamelModel):
    display_name: str
    storage_name: str
    # 从文档解析出来的附件没有大小
    size_bytes: Optional[int] = None


class TaskCreate(BaseModel):
    title: str
    description: str
    priority: Priority = Priority.medium
    deadline: Optional[str] = None
    expected: Optional[str] = None
    notes: Optional[str] = None


class TaskRecord(CamelModel):
    id: str = ""
    title: str
    description: str = ""
    priority: str = ""
    deadline: str = ""
    expected: str = ""
    notes: str = ""
    attachments: List[AttachmentRef] = Field(default_factory=list)


class CompletedTaskRecord(CamelModel):
    title: str
    description: str = ""
    priority: str = ""
    completed_time: str = ""
    deliverables: List[str] = Field(default_factory=list)
    tech_implementation: List[str] = Field(default_factory=list)


class InboxView(CamelModel):
    pending_tasks: List[TaskRecord] = Field(default_factory=list)
    completed_tasks: List[CompletedTaskRecord] = Field(default_factory=list)


# 接口响应
class ApiResponse(BaseModel):
    success: bool = True
    message: str = ""
    data: Any = None


class TaskCreatedOut(BaseModel):
    success: bool = True
    message: str
    task: TaskRecord
    attachments: List[AttachmentRef] = Field(default_factory=list)


class TaskValidationError(ValueError):
    """提交被拒绝, 错误信息原样返回给调用方"""
