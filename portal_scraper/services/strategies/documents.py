"""Per-patient document export for the ``soap_notes`` category."""
from typing import Dict, List, Optional
import logging
import re

from ...models.records import PatientRecord, Row
from ..errors import ParseError, UploadError
from ..object_store import ObjectStore
from ..transforms import json_rows, pick
from .base import ExtractionContext

logger = logging.getLogger(__name__)

COUNTERS = (
    "patients_processed",
    "documents_found",
    "search_failures",
    "skipped_cases",
    "no_documents",
    "upload_failures",
)

PLACEHOLDER_CASE_NAMES = {"default case", "default", "no case"}
PDF_MAGIC = b"%PDF"


def empty_counters() -> Dict[str, int]:
    return {name: 0 for name in COUNTERS}


def is_placeholder_case(case: Row) -> bool:
    case_id = str(pick(case, "CaseId", "CaseID", "Id")).strip()
    case_name = str(pick(case, "CaseName", "Name", "Description")).strip().lower()
    return case_id in ("", "0") or case_name in PLACEHOLDER_CASE_NAMES


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", value or "").strip("_") or "unknown"


class PatientDocumentExporter:
    """Exports the stored documents of one patient as a consolidated PDF.

    Called once per patient by the batch runner. Counters are updated in
    place; the returned rows are the document index entries.
    """

    def __init__(self, object_store: ObjectStore, user_id: str, job_id: str):
        self.object_store = object_store
        self.user_id = user_id
        self.job_id = job_id

    async def __call__(self, ctx: ExtractionContext, patient: PatientRecord, counters: Dict[str, int]) -> List[Row]:
        patient_id = await self.find_patient(ctx, patient)
        await ctx.pacing.between_requests()
        if not patient_id:
            counters["search_failures"] += 1
            ctx.log.add(f"[soap_notes] {patient.search_name}: not found")
            return []

        cases = await self.real_cases(ctx, patient_id)
        await ctx.pacing.between_requests()
        if not cases:
            counters["skipped_cases"] += 1
            return []

        rows = []
        for case in cases:
            row = await self.export_case(ctx, patient, patient_id, case, counters)
            if row:
                rows.append(row)
            await ctx.pacing.between_requests()

        if not rows:
            counters["no_documents"] += 1
        return rows

    async def find_patient(self, ctx: ExtractionContext, patient: PatientRecord) -> Optional[str]:
        """Search active patients first, then archived ones."""
        for archived in ("false", "true"):
            response = await ctx.ajax(
                "POST",
                ctx.endpoints.primary("patient_search"),
                data={"searchText": patient.search_name, "isArchived": archived},
            )
            if not response.ok:
                continue
            try:
                matches = json_rows(response.body)
            except ParseError as e:
                logger.debug(f"Search for {patient.search_name} returned unparseable body: {e}")
                continue
            for match in matches:
                found_id = str(pick(match, "PatientId", "PatientID", "Id"))
                if not found_id:
                    continue
                if patient.patient_id and found_id != patient.patient_id:
                    continue
                return found_id
        return None

    async def real_cases(self, ctx: ExtractionContext, patient_id: str) -> List[Row]:
        response = await ctx.ajax(
            "GET",
            ctx.endpoints.primary("patient_cases"),
            params={"patientId": patient_id},
        )
        if not response.ok:
            return []
        return [case for case in json_rows(response.body) if not is_placeholder_case(case)]

    async def export_case(self, ctx: ExtractionContext, patient: PatientRecord, patient_id: str, case: Row, counters: Dict[str, int]) -> Optional[Row]:
        case_id = str(pick(case, "CaseId", "CaseID", "Id"))
        case_name = str(pick(case, "CaseName", "Name", "Description", default=case_id))

        await ctx.ajax(
            "POST",
            ctx.endpoints.primary("set_patient_context"),
            data={"patientId": patient_id, "caseId": case_id},
        )

        listing = await ctx.ajax(
            "GET",
            ctx.endpoints.primary("patient_files"),
            params={"patientId": patient_id, "caseId": case_id},
        )
        try:
            files = json_rows(listing.body) if listing.ok else []
        except ParseError as e:
            ctx.log.add(f"[soap_notes] {patient.search_name} / {case_name}: file listing unreadable: {e}")
            return None
        file_ids = [str(pick(f, "FileId", "FileID", "DocumentId", "Id")) for f in files]
        file_ids = [f for f in file_ids if f]
        if not file_ids:
            return None
        counters["documents_found"] += len(file_ids)

        row = {
            "PatientId": patient_id,
            "LastName": patient.last_name,
            "FirstName": patient.first_name,
            "CaseName": case_name,
            "FileCount": len(file_ids),
            "Link": "",
        }

        export = await ctx.ajax(
            "POST",
            ctx.endpoints.primary("export_files"),
            data={"patientId": patient_id, "caseId": case_id, "fileIds": ",".join(file_ids)},
        )
        if not export.ok or not export.content.startswith(PDF_MAGIC):
            counters["upload_failures"] += 1
            ctx.log.add(f"[soap_notes] {patient.search_name} / {case_name}: export returned no PDF ({export.status})")
            return row

        path = f"{self.user_id}/{self.job_id}/soap_notes/{_slug(patient.last_name)}_{_slug(patient.first_name)}_{patient_id}_{_slug(case_id)}.pdf"
        try:
            stored = await self.object_store.upload(path, export.content, "application/pdf")
            row["Link"] = self.object_store.link_for(stored)
        except UploadError as e:
            counters["upload_failures"] += 1
            ctx.log.add(f"[soap_notes] {patient.search_name} / {case_name}: upload failed: {e}")
        return row
