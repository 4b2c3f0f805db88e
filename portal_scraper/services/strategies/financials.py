"""Financials: paged statement listing, with a CSV export fallback."""
import logging

from ...models.records import Category
from ..errors import ParseError
from ..transforms import is_tabular_payload, parse_delimited, parse_json, json_rows, json_total, normalize_row_dates
from .base import ExtractionContext, ExtractionStrategy, Outcome, StrategyChain

logger = logging.getLogger(__name__)


class StatementPages(ExtractionStrategy):
    """Walk the statement listing page by page.

    Stops on a short page, or once the portal's advertised total (capped by
    ``statement_max_rows``) has been collected. When the run budget is spent
    part way through, the pages collected so far are the result; the first
    page is always fetched.
    """
    name = "statement_pages"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        page_size = ctx.pacing.statement_page_size
        cap = ctx.pacing.statement_max_rows
        path = ctx.endpoints.primary("statement_list")
        rows = []
        target = cap
        page = 1

        while len(rows) < target:
            if rows and ctx.deadline.expired():
                ctx.log.add(f"[financials] run budget spent before page {page}, keeping {len(rows)} rows")
                break
            response = await ctx.ajax("POST", path, data={
                "page": page,
                "pageSize": page_size,
                "startDate": ctx.date_from or "",
                "endDate": ctx.date_to or "",
            })
            if not response.ok:
                if rows:
                    ctx.log.add(f"[financials] page {page} answered {response.status}, keeping {len(rows)} rows")
                    break
                return Outcome.no_data(f"statement listing answered {response.status}")

            try:
                payload = parse_json(response.body)
                batch = json_rows(payload)
            except ParseError:
                if rows:
                    ctx.log.add(f"[financials] page {page} is not JSON, keeping {len(rows)} rows")
                    break
                raise
            total = json_total(payload)
            if total is not None:
                target = min(total, cap)

            rows.extend(normalize_row_dates(row) for row in batch)
            if len(batch) < page_size:
                break
            page += 1
            await ctx.pacing.between_requests()

        if not rows:
            return Outcome.no_data("statement listing is empty")
        return Outcome.success(rows[:cap])


class StatementExport(ExtractionStrategy):
    name = "statement_export"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        params = {"startDate": ctx.date_from or "", "endDate": ctx.date_to or ""}
        for path in ctx.endpoints.variants("statement_export"):
            response = await ctx.ajax("GET", path, params=params)
            if response.ok and is_tabular_payload(response.body):
                return Outcome.success([normalize_row_dates(row) for row in parse_delimited(response.body)])
        return Outcome.no_data("statement export returned nothing usable")


def financials_chain() -> StrategyChain:
    return StrategyChain(Category.FINANCIALS, [
        StatementPages(),
        StatementExport(),
    ])
