from enum import Enum


class AuditStatus(str, Enum):
    PENDING = "pending"
    CRAWLING = "crawling"
    BATCH_COMPLETE = "batch_complete"
    CHECKING = "checking"
    STOP_REQUESTED = "stop_requested"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AuditStatus.COMPLETED, AuditStatus.FAILED, AuditStatus.STOPPED})


class CheckCategory(str, Enum):
    SEO = "seo"
    AI_READINESS = "ai_readiness"
    TECHNICAL = "technical"


class CheckPriority(str, Enum):
    CRITICAL = "critical"
    RECOMMENDED = "recommended"
    OPTIONAL = "optional"


class CheckStatus(str, Enum):
    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class ResourceType(str, Enum):
    PDF = "pdf"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    PRESENTATION = "presentation"
    ARCHIVE = "archive"
    IMAGE = "image"
    OTHER = "other"
