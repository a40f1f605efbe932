from services.site_audit.checks import ai_readiness, seo, technical  # noqa: F401  rule modules register on import
from services.site_audit.checks.base import CheckDefinition, registered_checks


def page_checks() -> list[CheckDefinition]:
    return [c for c in registered_checks() if not c.site_wide]


def site_wide_checks() -> list[CheckDefinition]:
    return [c for c in registered_checks() if c.site_wide]


def get_check(name: str) -> CheckDefinition | None:
    for c in registered_checks():
        if c.name == name:
            return c
    return None
