from dataclasses import dataclass
from urllib.parse import unquote, urlparse

from services.site_audit.enums import ResourceType

RESOURCE_EXTENSIONS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.PDF: (".pdf",),
    ResourceType.DOCUMENT: (".doc", ".docx", ".odt", ".rtf", ".txt"),
    ResourceType.SPREADSHEET: (".xls", ".xlsx", ".csv", ".ods"),
    ResourceType.PRESENTATION: (".ppt", ".pptx", ".odp"),
    ResourceType.ARCHIVE: (".zip", ".rar", ".7z", ".tar", ".gz"),
    ResourceType.IMAGE: (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico"),
}


@dataclass(frozen=True)
class Classification:
    is_resource: bool
    resource_type: ResourceType | None = None


HTML_PAGE = Classification(is_resource=False)


def classify(url: str) -> Classification:
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        return HTML_PAGE
    for resource_type, extensions in RESOURCE_EXTENSIONS.items():
        if path.endswith(extensions):
            return Classification(is_resource=True, resource_type=resource_type)
    return HTML_PAGE


def resource_title(url: str) -> str | None:
    filename = urlparse(url).path.rsplit("/", 1)[-1]
    return unquote(filename) or None
