"""Appointments: report trigger, export polling, scheduler feed."""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple
import asyncio
import logging

from ...models.records import Category
from ..errors import ParseError, RequestValidationError
from ..transforms import is_tabular_payload, parse_delimited, json_rows, normalize_row_dates, pick, looks_like_html
from .base import ExtractionContext, ExtractionStrategy, Outcome, StrategyChain

logger = logging.getLogger(__name__)

DATE_FORMAT = "%m/%d/%Y"
DEFAULT_DAYS_BACK = 365
DEFAULT_DAYS_AHEAD = 90
ALL_PROVIDERS = "0"


def parse_portal_date(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        raise RequestValidationError(f"Dates must be MM/DD/YYYY, got {value!r}")


def resolve_date_range(date_from: Optional[str], date_to: Optional[str], today: Optional[date] = None) -> Tuple[str, str]:
    """Caller's range, or a year back through 90 days ahead."""
    today = today or date.today()
    start = parse_portal_date(date_from) if date_from else today - timedelta(days=DEFAULT_DAYS_BACK)
    end = parse_portal_date(date_to) if date_to else today + timedelta(days=DEFAULT_DAYS_AHEAD)
    if start > end:
        raise RequestValidationError(f"dateFrom {date_from} is after dateTo {date_to}")
    return start.strftime(DATE_FORMAT), end.strftime(DATE_FORMAT)


async def resolve_provider(ctx: ExtractionContext) -> str:
    """First concrete provider id from the provider list, else all providers."""
    if "provider_id" in ctx.scratch:
        return ctx.scratch["provider_id"]

    provider_id = ALL_PROVIDERS
    for path in ctx.endpoints.variants("provider_list"):
        response = await ctx.ajax("GET", path)
        if not response.ok or not response.body.strip():
            continue
        candidates = []
        if looks_like_html(response.body) or "<option" in response.body.lower():
            candidates = [value for value, _ in ctx.parser.select_options(response.body)]
        else:
            try:
                candidates = [str(pick(row, "ProviderId", "ProviderID", "Id", "Value")) for row in json_rows(response.body)]
            except ParseError:
                continue
        candidates = [c for c in candidates if c and c not in (ALL_PROVIDERS, "-1")]
        if candidates:
            provider_id = candidates[0]
            break

    ctx.scratch["provider_id"] = provider_id
    ctx.log.add(f"[appointments] provider filter: {provider_id}")
    return provider_id


def report_params(ctx: ExtractionContext, provider_id: str) -> dict:
    return {
        "StartDate": ctx.date_from,
        "EndDate": ctx.date_to,
        "ProviderId": provider_id,
        "ReportType": "AppointmentList",
    }


class AppointmentReportTrigger(ExtractionStrategy):
    """Trigger the appointment report; some deployments answer with the data."""
    name = "appointment_report_trigger"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        provider_id = await resolve_provider(ctx)
        trigger = ctx.endpoints.primary("appointment_report_trigger")
        response = await ctx.ajax("POST", trigger, data=report_params(ctx, provider_id))
        ctx.scratch["appointment_report_triggered"] = response.ok
        if response.ok and is_tabular_payload(response.body):
            return Outcome.success(parse_delimited(response.body))
        return Outcome.no_data(f"trigger answered {response.status} without report data")


class AppointmentExportPoll(ExtractionStrategy):
    """Poll the export endpoint until the generated report shows up."""
    name = "appointment_export_poll"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        provider_id = await resolve_provider(ctx)
        params = report_params(ctx, provider_id)
        attempts = ctx.pacing.appointment_poll_attempts
        interval = ctx.pacing.appointment_poll_interval

        for attempt in range(1, attempts + 1):
            ctx.deadline.check()
            for path in ctx.endpoints.variants("appointment_export"):
                response = await ctx.ajax("GET", path, params=params)
                if response.ok and is_tabular_payload(response.body):
                    ctx.log.add(f"[appointments] report ready on attempt {attempt} via {path}")
                    return Outcome.success(parse_delimited(response.body))
            if attempt < attempts:
                ctx.deadline.check(needed=interval)
                await asyncio.sleep(interval)

        return Outcome.fatal_if_last(f"report not ready after {attempts} attempts")


class SchedulerFeedFallback(ExtractionStrategy):
    """The scheduler calendar's JSON feed for the same range."""
    name = "scheduler_feed"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        provider_id = await resolve_provider(ctx)
        params = {"start": ctx.date_from, "end": ctx.date_to, "providerId": provider_id}
        for path in ctx.endpoints.variants("scheduler_feed"):
            response = await ctx.ajax("GET", path, params=params)
            if not response.ok:
                continue
            rows = json_rows(response.body)
            if rows:
                return Outcome.success([normalize_row_dates(row) for row in rows])
        return Outcome.no_data("scheduler feed returned no appointments")


def appointments_chain() -> StrategyChain:
    return StrategyChain(Category.APPOINTMENTS, [
        AppointmentReportTrigger(),
        AppointmentExportPoll(),
        SchedulerFeedFallback(),
    ])
