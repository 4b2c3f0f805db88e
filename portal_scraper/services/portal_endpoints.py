"""Catalogue of the portal's undocumented endpoints.

Each logical operation maps to an ordered list of path variants; callers try
them in order. The variants were found empirically and it is not known which
ones a given portal deployment actually serves, so the list is data rather
than code: ``ENDPOINT_OVERRIDES`` in the environment replaces any entry.
"""
from typing import Dict, List, Optional, Sequence

DEFAULT_ENDPOINTS: Dict[str, List[str]] = {
    # Demographics
    "patient_export": [
        "/Reports/ExportPatientList",
        "/Patient/ExportAllPatients",
        "/Reports/PatientListExport",
        "/Patient/ExportPatients",
    ],
    "patient_report_trigger": [
        "/Reports/GeneratePatientListReport",
    ],
    "patient_roster": [
        "/Patient/GetAllPatients",
        "/Patient/GetPatientList",
    ],
    # Appointments
    "provider_list": [
        "/User/Scheduler/GetProviders",
        "/Scheduler/GetProviderList",
    ],
    "appointment_report_trigger": [
        "/Reports/GenerateAppointmentReport",
    ],
    "appointment_export": [
        "/Reports/ExportAppointmentReport",
        "/Reports/ExportAppointments",
    ],
    "scheduler_feed": [
        "/User/Scheduler/GetAppointments",
    ],
    # Document index
    "patient_search": [
        "/Patient/SearchPatient",
    ],
    "patient_cases": [
        "/Patient/GetPatientCases",
    ],
    "set_patient_context": [
        "/Patient/SetPatientInSession",
    ],
    "patient_files": [
        "/Documents/GetPatientFiles",
    ],
    "export_files": [
        "/Documents/ExportFilesAsPdf",
    ],
    # Financials
    "statement_list": [
        "/Billing/GetStatements",
    ],
    "statement_export": [
        "/Billing/ExportStatements",
    ],
}

# Pages and endpoints fetched in discovery mode, in order
DISCOVERY_TARGETS = [
    ("Home", "/"),
    ("Scheduler", "/User/Scheduler"),
    ("Billing", "/Billing/"),
    ("Reports", "/Reports/"),
    ("Patient Roster", "/Patient/GetAllPatients"),
    ("Providers", "/User/Scheduler/GetProviders"),
]


class EndpointCatalog:
    """Ordered endpoint variants, with configured overrides applied."""

    def __init__(self, overrides: Optional[Dict[str, Sequence[str]]] = None):
        self._endpoints = {name: list(paths) for name, paths in DEFAULT_ENDPOINTS.items()}
        for name, paths in (overrides or {}).items():
            self._endpoints[name] = list(paths)

    def variants(self, name: str) -> List[str]:
        if name not in self._endpoints:
            raise KeyError(f"Unknown portal endpoint: {name}")
        return list(self._endpoints[name])

    def primary(self, name: str) -> str:
        return self.variants(name)[0]
