"""Demographics: bulk export, then triggered report, then the JSON roster."""
import asyncio
import logging

from ...models.records import Category
from ..errors import ParseError
from ..transforms import is_tabular_payload, parse_delimited, json_rows, normalize_portal_date, pick
from .base import ExtractionContext, ExtractionStrategy, Outcome, StrategyChain

logger = logging.getLogger(__name__)

ROSTER_FIELDS = ("PatientId", "FirstName", "LastName", "DateOfBirth", "Phone", "Email")


async def try_export_variants(ctx: ExtractionContext, endpoint: str, params=None) -> Outcome:
    """GET each export variant until one answers with tabular data."""
    reasons = []
    for path in ctx.endpoints.variants(endpoint):
        response = await ctx.ajax("GET", path, params=params)
        if response.ok and is_tabular_payload(response.body):
            return Outcome.success(parse_delimited(response.body))
        reasons.append(f"{path} -> {response.status} ({len(response.body)} chars)")
    return Outcome.no_data("; ".join(reasons))


class BulkPatientExport(ExtractionStrategy):
    name = "bulk_patient_export"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        return await try_export_variants(ctx, "patient_export")


class TriggeredPatientReport(ExtractionStrategy):
    """Ask the portal to build the patient list report, wait, export again.

    Report generation is asynchronous on the portal side; the fixed wait is
    the time it usually needs to materialise the file.
    """
    name = "triggered_patient_report"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        delay = ctx.pacing.report_generation_delay
        if ctx.deadline.remaining() < delay:
            return Outcome.no_data(f"{ctx.deadline.remaining():.0f}s left, report needs {delay:.0f}s")

        trigger = ctx.endpoints.primary("patient_report_trigger")
        response = await ctx.ajax("POST", trigger, data={"reportType": "PatientList", "includeInactive": "true"})
        if not response.ok:
            return Outcome.no_data(f"report trigger answered {response.status}")
        if is_tabular_payload(response.body):
            return Outcome.success(parse_delimited(response.body))

        ctx.log.add(f"[demographics] waiting {delay:.0f}s for report generation")
        await asyncio.sleep(delay)
        return await try_export_variants(ctx, "patient_export")


class PatientRosterFallback(ExtractionStrategy):
    """Smaller fixed field set from the JSON roster. Always available."""
    name = "patient_roster_json"

    async def attempt(self, ctx: ExtractionContext) -> Outcome:
        for path in ctx.endpoints.variants("patient_roster"):
            response = await ctx.ajax("GET", path)
            if not response.ok:
                continue
            try:
                rows = json_rows(response.body)
            except ParseError as e:
                logger.debug(f"{path}: {e}")
                continue
            if rows:
                return Outcome.success([self._reduce(row) for row in rows])
        return Outcome.no_data("roster endpoints returned no patients")

    def _reduce(self, row):
        return {
            "PatientId": str(pick(row, "PatientId", "PatientID", "Id")),
            "FirstName": pick(row, "FirstName", "First"),
            "LastName": pick(row, "LastName", "Last"),
            "DateOfBirth": normalize_portal_date(pick(row, "DateOfBirth", "DOB", "BirthDate")),
            "Phone": pick(row, "Phone", "HomePhone", "CellPhone", "MobilePhone"),
            "Email": pick(row, "Email", "EmailAddress"),
        }


def demographics_chain() -> StrategyChain:
    return StrategyChain(Category.DEMOGRAPHICS, [
        BulkPatientExport(),
        TriggeredPatientReport(),
        PatientRosterFallback(),
    ])
