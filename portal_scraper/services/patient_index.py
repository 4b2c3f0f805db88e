from typing import List, Optional
import logging

from ..models.records import PatientRecord
from .errors import PortalError
from .strategies.base import ExtractionContext
from .strategies.demographics import try_export_variants
from .transforms import json_rows, pick

logger = logging.getLogger(__name__)


def _record(row) -> Optional[PatientRecord]:
    first = str(pick(row, "FirstName", "First", "First Name")).strip()
    last = str(pick(row, "LastName", "Last", "Last Name")).strip()
    if not first and not last:
        return None
    patient_id = str(pick(row, "PatientId", "PatientID", "Patient Id", "Id", "Account", "AccountNumber")).strip()
    return PatientRecord(patient_id=patient_id or None, first_name=first, last_name=last)


def matches_name(patient: PatientRecord, needle: str) -> bool:
    needle = needle.strip().lower()
    return (
        needle in patient.search_name.lower()
        or needle in f"{patient.first_name} {patient.last_name}".lower()
    )


class PatientIndexCache:
    """Patient roster for one run, loaded once and sorted.

    The order is stable across invocations so a checkpoint's resume index
    points at the same patient after re-authentication.
    """

    def __init__(self, test_limit: Optional[int] = None, test_patient_name: Optional[str] = None):
        self.test_limit = test_limit
        self.test_patient_name = test_patient_name
        self._patients: Optional[List[PatientRecord]] = None
        self.source: Optional[str] = None

    async def get(self, ctx: ExtractionContext) -> List[PatientRecord]:
        if self._patients is None:
            self._patients = self._select(await self._load(ctx))
            ctx.log.add(f"Patient index: {len(self._patients)} patients (source: {self.source or 'none'})")
        return self._patients

    async def _load(self, ctx: ExtractionContext) -> List[PatientRecord]:
        for path in ctx.endpoints.variants("patient_roster"):
            try:
                response = await ctx.ajax("GET", path)
                if not response.ok:
                    logger.debug(f"{path} answered {response.status}")
                    continue
                rows = json_rows(response.body)
            except PortalError as e:
                ctx.log.add(f"Patient index: {path}: {type(e).__name__}: {e}")
                continue
            records = [r for r in (_record(row) for row in rows) if r]
            if records:
                self.source = path
                return records

        try:
            outcome = await try_export_variants(ctx, "patient_export")
        except PortalError as e:
            ctx.log.add(f"Patient index: export failed: {type(e).__name__}: {e}")
            return []
        if outcome.is_success:
            self.source = "patient_export"
            return [r for r in (_record(row) for row in outcome.rows) if r]
        return []

    def _select(self, patients: List[PatientRecord]) -> List[PatientRecord]:
        unique = {}
        for patient in patients:
            unique.setdefault((patient.patient_id, patient.last_name, patient.first_name), patient)
        selected = sorted(unique.values(), key=lambda p: p.sort_key)
        if self.test_patient_name:
            selected = [p for p in selected if matches_name(p, self.test_patient_name)]
        if self.test_limit:
            selected = selected[:self.test_limit]
        return selected
