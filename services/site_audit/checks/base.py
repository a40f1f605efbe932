from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

import httpx
from bs4 import BeautifulSoup

from services.site_audit.config import settings
from services.site_audit.enums import CheckCategory, CheckPriority, CheckStatus


@dataclass(frozen=True)
class CheckDefinition:
    name: str
    category: CheckCategory
    priority: CheckPriority
    description: str
    display_name: str
    display_name_passed: str
    learn_more_url: str | None = None
    fix_guidance: str | None = None
    site_wide: bool = False


@dataclass(frozen=True)
class CheckOutcome:
    status: CheckStatus
    details: dict = field(default_factory=dict)

    @property
    def message(self) -> str | None:
        return self.details.get("message")


def passed(message: str | None = None, **details) -> CheckOutcome:
    if message is not None:
        details["message"] = message
    return CheckOutcome(CheckStatus.PASSED, details)


def warning(message: str, **details) -> CheckOutcome:
    return CheckOutcome(CheckStatus.WARNING, {"message": message, **details})


def failed(message: str, **details) -> CheckOutcome:
    return CheckOutcome(CheckStatus.FAILED, {"message": message, **details})


@dataclass(frozen=True)
class PageSnapshot:
    url: str
    title: str | None = None
    meta_description: str | None = None
    status_code: int | None = None
    last_modified: datetime | None = None
    is_resource: bool = False


@dataclass(frozen=True)
class CheckContext:
    url: str
    html: str
    title: str | None = None
    status_code: int | None = None
    pages: tuple[PageSnapshot, ...] = ()
    relaxed_tls: bool = False

    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html, "lxml")

    def html_pages(self) -> list[PageSnapshot]:
        return [p for p in self.pages if not p.is_resource]


Evaluator = Callable[[CheckContext], Awaitable[CheckOutcome]]

_DEFINITIONS: dict[str, CheckDefinition] = {}
_EVALUATORS: dict[str, Evaluator] = {}


def register(definition: CheckDefinition):
    def decorator(fn: Evaluator) -> Evaluator:
        if definition.name in _DEFINITIONS:
            raise ValueError(f"duplicate check name: {definition.name}")
        _DEFINITIONS[definition.name] = definition
        _EVALUATORS[definition.name] = fn
        return fn

    return decorator


def registered_checks() -> list[CheckDefinition]:
    return list(_DEFINITIONS.values())


def evaluator_for(name: str) -> Evaluator:
    return _EVALUATORS[name]


def auxiliary_client(ctx: CheckContext, follow_redirects: bool = True, timeout: float | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent},
        timeout=timeout or settings.aux_timeout_s,
        follow_redirects=follow_redirects,
        verify=not ctx.relaxed_tls,
    )
