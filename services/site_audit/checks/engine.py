import asyncio
from typing import Sequence

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession

from config.logging_config import get_logger
from services.site_audit.checks.base import CheckContext, CheckDefinition, CheckOutcome, evaluator_for
from services.site_audit.checks.dismissals import DismissalFilter
from services.site_audit.db import repository
from services.site_audit.errors import RuleEvaluationError

logger = get_logger(__name__)

check_errors_total = Counter(
    'site_audit_check_errors_total',
    'Check evaluations that raised instead of returning a result',
    ['check_name']
)


async def _evaluate(definition: CheckDefinition, ctx: CheckContext) -> CheckOutcome:
    try:
        return await evaluator_for(definition.name)(ctx)
    except Exception as e:
        raise RuleEvaluationError(definition.name, ctx.url) from e


def result_row(audit_id: str, page_id: int | None, definition: CheckDefinition, outcome: CheckOutcome) -> dict:
    return {
        "audit_id": audit_id,
        "page_id": page_id,
        "check_type": definition.category.value,
        "check_name": definition.name,
        "priority": definition.priority.value,
        "status": outcome.status.value,
        "details": outcome.details or None,
        "display_name": definition.display_name,
        "display_name_passed": definition.display_name_passed,
        "learn_more_url": definition.learn_more_url,
        "fix_guidance": definition.fix_guidance or outcome.message,
        "is_site_wide": definition.site_wide,
    }


async def evaluate_concurrently(
    definitions: Sequence[CheckDefinition], ctx: CheckContext
) -> list[tuple[CheckDefinition, CheckOutcome]]:
    """Run independent checks against one context.

    A check that raises is logged and left out of the result.
    """
    outcomes = await asyncio.gather(*(_evaluate(d, ctx) for d in definitions), return_exceptions=True)
    results = []
    for definition, outcome in zip(definitions, outcomes):
        if isinstance(outcome, RuleEvaluationError):
            check_errors_total.labels(check_name=definition.name).inc()
            logger.error(
                str(outcome),
                extra={"check_name": definition.name, "url": ctx.url},
                exc_info=outcome.__cause__,
            )
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        results.append((definition, outcome))
    return results


async def run_page_checks(
    session: AsyncSession,
    audit_id: str,
    page_id: int,
    ctx: CheckContext,
    definitions: Sequence[CheckDefinition],
    dismissals: DismissalFilter,
) -> list[dict]:
    active = [d for d in definitions if not dismissals.is_dismissed(d.name, ctx.url)]
    if not active:
        return []
    rows = [result_row(audit_id, page_id, d, o) for d, o in await evaluate_concurrently(active, ctx)]
    await repository.save_check_results(session, rows)
    return rows


async def run_site_wide_checks(
    session: AsyncSession,
    audit_id: str,
    target_url: str,
    ctx: CheckContext,
    definitions: Sequence[CheckDefinition],
    dismissals: DismissalFilter,
) -> list[dict]:
    """Evaluate site-wide checks one after another and store them in one write.

    Rules that already have a result for this audit are skipped, so a resumed
    or stopped audit never ends up with two site-wide entries for one rule.
    ``target_url`` is the site origin used for dismissal matching.
    """
    done = await repository.site_wide_check_names(session, audit_id)
    rows = []
    for definition in definitions:
        if definition.name in done or dismissals.is_dismissed(definition.name, target_url):
            continue
        try:
            outcome = await _evaluate(definition, ctx)
        except RuleEvaluationError as e:
            check_errors_total.labels(check_name=definition.name).inc()
            logger.error(str(e), extra={"check_name": definition.name, "url": ctx.url}, exc_info=e.__cause__)
            continue
        rows.append(result_row(audit_id, None, definition, outcome))
    await repository.save_check_results(session, rows)
    return rows
