from fastapi import APIRouter, Depends
from datetime import date
from ..deps import require_role, require_store, store_dep
from ..errors import client_error
from ..reporting.report_merge import REPORTS, report_id
from ..store.base import DocumentStore

router = APIRouter(prefix="/reports", tags=["reports"])


def _parse_report_date(raw: str) -> str:
    try:
        return date.fromisoformat((raw or "").strip()).isoformat()
    except ValueError:
        raise client_error("invalid-argument", "report_date must be YYYY-MM-DD")


@router.get("/daily/{report_date}")
def daily_report(
    report_date: str,
    session=Depends(require_role("owner", "manager")),
    store: DocumentStore = Depends(store_dep),
):
    key = _parse_report_date(report_date)
    snap = store.get(REPORTS, report_id(require_store(session), key))
    if not snap.exists:
        raise client_error("not-found", "no report for this date")
    return {"id": snap.id, "reportDateKey": key, "report": snap.to_dict()}
