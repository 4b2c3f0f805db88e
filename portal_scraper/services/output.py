from typing import List, Optional
import io
import logging

import pandas as pd

from ..models.records import Category, CategoryResult, ResultRecord
from .errors import UploadError
from .job_store import JobStore
from .object_store import ObjectStore

logger = logging.getLogger(__name__)

WORKBOOK_NAME = "portal_extract.xlsx"
WORKBOOK_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
INDEX_SHEET = "Document Index"
LINK_COLUMN = "Link"
NO_DATA_MESSAGE = "No data was extracted. Check the log for details."

INDEX_COLUMNS = ["LastName", "FirstName", "PatientId", "CaseName", "FileCount", LINK_COLUMN]


def workbook_path(user_id: str, job_id: str) -> str:
    return f"{user_id}/{job_id}/{WORKBOOK_NAME}"


def _write_sheet(writer, title: str, df: pd.DataFrame, links: bool = False):
    df.to_excel(writer, sheet_name=title[:31], index=False)

    sheet = writer.sheets[title[:31]]
    for idx, col in enumerate(df.columns, start=1):
        width = max([len(str(col))] + [len(str(v)) for v in df[col].head(200)])
        sheet.column_dimensions[sheet.cell(row=1, column=idx).column_letter].width = min(60, width + 2)

    if links and LINK_COLUMN in df.columns:
        col_idx = list(df.columns).index(LINK_COLUMN) + 1
        for row_idx in range(2, len(df) + 2):
            cell = sheet.cell(row=row_idx, column=col_idx)
            if cell.value:
                cell.hyperlink = str(cell.value)
                cell.style = "Hyperlink"


def build_workbook(results: List[CategoryResult]) -> bytes:
    """One sheet per non-empty category, plus a document index with
    clickable links when document rows exist."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for result in results:
            if not result.rows:
                continue
            df = pd.DataFrame(result.rows)
            _write_sheet(writer, result.category.sheet_title, df)

            if result.category == Category.SOAP_NOTES:
                index = df[[c for c in INDEX_COLUMNS if c in df.columns]]
                _write_sheet(writer, INDEX_SHEET, index, links=True)
    return buffer.getvalue()


class OutputAssembler:
    """Writes the run's workbook and result records."""

    def __init__(self, object_store: ObjectStore, job_store: JobStore):
        self.object_store = object_store
        self.job_store = job_store

    async def assemble(self, user_id: str, job_id: str, results: List[CategoryResult], log) -> Optional[str]:
        """Return the stored workbook path, or None when nothing was written."""
        non_empty = [r for r in results if r.rows]
        if not non_empty:
            log.add(NO_DATA_MESSAGE)
            return None

        path = workbook_path(user_id, job_id)
        try:
            content = build_workbook(non_empty)
            stored = await self.object_store.upload(path, content, WORKBOOK_CONTENT_TYPE)
        except UploadError as e:
            log.add(f"Workbook upload failed: {e}")
            return None
        except (ValueError, OSError) as e:
            logger.exception(f"Failed to build workbook for job {job_id}")
            log.add(f"Workbook could not be built: {e}")
            return None

        for result in non_empty:
            await self.job_store.add_result(ResultRecord(
                job_id=job_id,
                user_id=user_id,
                data_type=result.category.value,
                file_path=stored,
                row_count=result.row_count,
            ))
            log.add(f"{result.category.sheet_title}: {result.row_count} rows")
        log.add(f"Workbook stored at {stored}")
        return stored

