"""
Dashboard page state: snapshot, layout reports, navigation and map actions.
"""
from fastapi import APIRouter, Depends, HTTPException

from tracker.schemas import LayoutReport, RouteResponse
from tracker.services.session import DashboardSession, get_dashboard_session

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@router.get("/snapshot")
async def get_snapshot(session: DashboardSession = Depends(get_dashboard_session)):
    """Everything currently rendered: displays, regions and viewports."""
    return session.snapshot()


@router.post("/layout")
async def report_layout(
    body: LayoutReport,
    session: DashboardSession = Depends(get_dashboard_session),
):
    """
    The page reports which map containers exist and how wide it is.

    Missing viewports are retried on the bounded schedule from here.
    """
    session.report_layout(
        containers=body.containers,
        width_px=body.width_px,
        active_tab=body.active_tab,
        alerts_permitted=body.alerts_permitted,
    )
    return {
        "viewports": [vp.name for vp in session.registry.viewports],
        "missing": session.registry.missing,
        "constrained": session.page.is_constrained,
    }


@router.post("/tabs/{tab}")
async def switch_tab(tab: str, session: DashboardSession = Depends(get_dashboard_session)):
    try:
        await session.switch_tab(tab)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"active_tab": session.page.active_tab}


@router.post("/center")
async def center_map(session: DashboardSession = Depends(get_dashboard_session)):
    """Recentre both maps on the device's current fix."""
    centered = await session.center_map()
    if not centered:
        raise HTTPException(status_code=409, detail="No GPS fix available yet")
    return {"centered": True}


@router.post("/route", response_model=RouteResponse)
async def load_route(session: DashboardSession = Depends(get_dashboard_session)):
    """Draw today's route history on the overview map."""
    points = await session.load_route()
    if points == 0:
        return RouteResponse(points=0, message="No route history for today")
    return RouteResponse(points=points, message=f"Route loaded with {points} points")


@router.get("/diagnostics")
async def diagnostics(session: DashboardSession = Depends(get_dashboard_session)):
    return session.diagnostics()
