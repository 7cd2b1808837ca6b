"""
Same-day history export as a CSV download.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from tracker.services.session import DashboardSession, get_dashboard_session

router = APIRouter(prefix="/api/v1/export", tags=["export"])


@router.get("/today")
async def export_today(session: DashboardSession = Depends(get_dashboard_session)):
    """Today's history (from local midnight). Header-only when there is none."""
    filename, document = await session.exporter.export_today_csv()
    return StreamingResponse(
        iter([document]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
