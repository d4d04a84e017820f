"""
Persistence backends for executions, raw responses and reports.
"""

from .base import (
    ExecutionStore,
    NotificationChannel,
    ProjectStore,
    PromptSetStore,
    RawResponseStore,
    ReportNotifier,
    ReportStore,
)
from .local import (
    LocalExecutionStore,
    LocalProjectStore,
    LocalPromptSetStore,
    LocalRawResponseStore,
    LocalReportStore,
    LocalStore,
)
from .memory import (
    InMemoryExecutionStore,
    InMemoryProjectStore,
    InMemoryPromptSetStore,
    InMemoryRawResponseStore,
    InMemoryReportStore,
)

__all__ = [
    "ExecutionStore",
    "NotificationChannel",
    "ProjectStore",
    "PromptSetStore",
    "RawResponseStore",
    "ReportNotifier",
    "ReportStore",
    "LocalStore",
    "LocalExecutionStore",
    "LocalProjectStore",
    "LocalPromptSetStore",
    "LocalRawResponseStore",
    "LocalReportStore",
    "InMemoryExecutionStore",
    "InMemoryProjectStore",
    "InMemoryPromptSetStore",
    "InMemoryRawResponseStore",
    "InMemoryReportStore",
]
