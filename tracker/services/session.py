"""
Dashboard session: everything one signed-in user's page needs, in one place.

A session is created when its user signs in and stopped when they sign
out. It owns the page layout, display board, viewport registry, marker
controller, speed limit and command dispatcher, and wires them to the
store subscriptions for the configured device.
"""
import asyncio
import inspect
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

import structlog
from fastapi import Depends

from tracker import store_client
from tracker.config import Settings, get_settings
from tracker.schemas import DeviceCommand, DeviceLocation, GeofenceConfig
from tracker.services.auth import User, get_current_user
from tracker.services.commands import CommandDispatcher
from tracker.services.display import BrowserPage, DisplayBoard
from tracker.services.export import ExportService
from tracker.services.markers import ActiveViewRecentre, MarkerController, StochasticRecentre
from tracker.services.speed import SpeedLimit
from tracker.services.state_sync import EVENTS, FULL_MAP, NOTIFICATIONS, OVERVIEW_MAP, DeviceStateSync
from tracker.services.viewports import Viewport, ViewportRegistry
from tracker.store_client import StoreWriteError, device_path

logger = structlog.get_logger("session")

TABS = ("overview", "map", "history", "controls", "settings")

PostSwitchHook = Callable[["DashboardSession", str], Union[None, Awaitable[None]]]


async def constrained_map_hook(session: "DashboardSession", tab: str) -> None:
    """On phone layouts, pin the full map on the vehicle after opening it."""
    if tab != "map" or not session.page.is_constrained:
        return
    await session.recentre_full_map(session.settings.constrained_switch_zoom)


class DashboardSession:
    """Session-scoped dashboard state for one user."""

    def __init__(
        self,
        user: Optional[User] = None,
        store=store_client,
        settings: Optional[Settings] = None,
        rng=None,
        sleep=asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.user = user
        self.store = store
        self.device_id = self.settings.device_id

        self.board = DisplayBoard()
        self.page = BrowserPage(constrained_width_px=self.settings.constrained_width_px)
        self.registry = ViewportRegistry(
            self.page, self.board, self.settings.viewport_retry_delays_ms, sleep=sleep,
        )
        self.markers = MarkerController(
            policies={
                OVERVIEW_MAP: StochasticRecentre(self.settings.recentre_probability, rng=rng),
                FULL_MAP: ActiveViewRecentre(),
            },
            recentre_zooms={
                OVERVIEW_MAP: self.settings.overview_recentre_zoom,
                FULL_MAP: self.settings.full_recentre_zoom,
            },
        )
        self.speed_limit = SpeedLimit(store, self.device_id, self.settings)
        self.sync = DeviceStateSync(
            self.device_id, self.board, self.page, self.registry, self.markers,
            self.speed_limit, self.settings,
        )
        self.commands = CommandDispatcher(store, self.device_id, self.board, self.settings)
        self.exporter = ExportService(store, self.device_id, clock=clock)

        self.post_switch_hooks: list[PostSwitchHook] = [constrained_map_hook]
        self.subscriptions: list = []
        self._tasks: set[asyncio.Task] = set()
        self.started = False

        default_center = (self.settings.default_center_lat, self.settings.default_center_lng)
        self.registry.want(OVERVIEW_MAP, default_center, self.settings.overview_zoom)
        self.registry.want(FULL_MAP, default_center, self.settings.full_zoom)
        self.registry.on_created(self._on_viewport_created)

    # ============ Lifecycle ============

    async def start(self) -> None:
        if self.started:
            return
        self.started = True
        await self.speed_limit.load()
        self.board.set_text("speed-limit", str(self.speed_limit.value))
        if self.user is not None:
            self.board.set_text("user-email-sidebar", self.user.email)
        self.subscriptions = self.sync.subscribe(self.store)
        self.registry.schedule_retry("page-load")
        logger.info("Dashboard session started", device_id=self.device_id,
                    user=self.user.email if self.user else None)

    async def stop(self) -> None:
        for subscription in self.subscriptions:
            subscription.cancel()
        self.subscriptions = []
        self.registry.cancel_retry()
        self.commands.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        self.started = False
        logger.info("Dashboard session stopped", device_id=self.device_id)

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ============ Viewports ============

    def _on_viewport_created(self, viewport: Viewport) -> None:
        self.markers.ensure_marker(viewport)
        if self.sync.last_location is not None:
            self._place_initial(viewport, self.sync.last_location)
        else:
            self._spawn(self._place_from_store(viewport))

    def _place_initial(self, viewport: Viewport, location: DeviceLocation) -> None:
        zoom = self._initial_zoom(viewport)
        self.markers.recentre(viewport, location, zoom)

    def _initial_zoom(self, viewport: Viewport) -> int:
        if self.page.is_constrained:
            return self.settings.constrained_overview_zoom if viewport.name == OVERVIEW_MAP \
                else self.settings.constrained_full_zoom
        return self.settings.overview_recentre_zoom if viewport.name == OVERVIEW_MAP \
            else self.settings.full_recentre_zoom

    async def _place_from_store(self, viewport: Viewport) -> None:
        location = await self.read_location()
        if location is not None:
            self._place_initial(viewport, location)

    async def read_location(self) -> Optional[DeviceLocation]:
        """Read-once of the current location; None unless it is a valid fix."""
        raw = await self.store.get(device_path(self.device_id, "location"))
        location = self.sync.parse_location(raw)
        if location is None or not location.is_valid:
            return None
        return location

    def report_layout(
        self,
        containers: Optional[list[str]] = None,
        width_px: Optional[int] = None,
        active_tab: Optional[str] = None,
        alerts_permitted: Optional[bool] = None,
    ) -> None:
        self.page.update(containers, width_px, active_tab, alerts_permitted)
        self.registry.schedule_retry("layout")

    # ============ Navigation ============

    def add_post_switch_hook(self, hook: PostSwitchHook) -> None:
        self.post_switch_hooks.append(hook)

    async def switch_tab(self, tab: str) -> None:
        if tab not in TABS:
            raise ValueError(f"Unknown tab: {tab}")
        self.page.active_tab = tab

        if tab in ("overview", "map"):
            self.registry.schedule_retry(f"tab:{tab}")
        if tab == "map":
            await self.recentre_full_map(self.settings.full_recentre_zoom)
        if tab == "history":
            for kind in (EVENTS, NOTIFICATIONS):
                self.board.replace_region(f"{kind}-log-history", self.board.region(f"{kind}-log"))

        for hook in self.post_switch_hooks:
            result = hook(self, tab)
            if inspect.isawaitable(result):
                await result

    async def recentre_full_map(self, zoom: int) -> bool:
        viewport = self.registry.get(FULL_MAP)
        if viewport is None:
            return False
        location = await self.read_location()
        if location is None:
            return False
        self.markers.recentre(viewport, location, zoom)
        return True

    async def center_map(self) -> bool:
        """Recentre both maps on the current fix."""
        location = await self.read_location()
        if location is None:
            return False
        overview = self.registry.get(OVERVIEW_MAP)
        if overview is not None:
            overview.set_view(location.latlng, self.settings.overview_recentre_zoom)
        full = self.registry.get(FULL_MAP)
        if full is not None:
            full.set_view(location.latlng, self.settings.full_recentre_zoom)
        return True

    async def load_route(self) -> int:
        """Draw today's route on the overview map, replacing any earlier one."""
        points = await self.exporter.route_today()
        overview = self.registry.get(OVERVIEW_MAP)
        if overview is None:
            logger.warning("Overview map not ready for route", points=len(points))
            self.registry.schedule_retry("route")
            return len(points)
        overview.set_path(points)
        if points:
            overview.fit_bounds(points)
        return len(points)

    # ============ Settings ============

    async def set_speed_limit(self, limit: int) -> int:
        value = await self.speed_limit.update(limit)
        self.board.set_text("speed-limit", str(value))
        return value

    async def configure_geofence(self, config: GeofenceConfig) -> bool:
        """
        Persist the geofence, then reboot the device so it applies it.

        Raises StoreWriteError when the config itself is not saved. Returns
        False when the config was saved but the REBOOT command was not.
        """
        config = config.model_copy(update={"enabled": True})
        await self.store.set(
            device_path(self.device_id, "geofence", "config"),
            config.model_dump(by_alias=True),
        )
        logger.info("Geofence configured", name=config.name, radius_m=config.radius_meters)
        try:
            await self.commands.send(DeviceCommand.REBOOT)
        except StoreWriteError as e:
            logger.warning("Geofence saved but reboot not sent", name=config.name, error=e.message)
            return False
        return True

    # ============ Diagnostics ============

    def diagnostics(self) -> dict:
        overview = self.registry.get(OVERVIEW_MAP)
        full = self.registry.get(FULL_MAP)
        location = self.sync.last_location
        return {
            "screen": {
                "width_px": self.page.width_px,
                "constrained": self.page.is_constrained,
                "active_tab": self.page.active_tab,
            },
            "maps": {
                "overview_map": overview is not None,
                "overview_marker": bool(overview and overview.marker),
                "full_map": full is not None,
                "full_marker": bool(full and full.marker),
            },
            "containers": {
                OVERVIEW_MAP: self.page.has_container(OVERVIEW_MAP),
                FULL_MAP: self.page.has_container(FULL_MAP),
            },
            "session": {
                "authenticated": self.user is not None,
                "subscriptions": sum(1 for s in self.subscriptions if getattr(s, "active", True)),
                "listeners": self.board.listener_count,
            },
            "gps": {
                "has_fix": location is not None,
                "latitude": location.latitude if location else None,
                "longitude": location.longitude if location else None,
                "satellites": location.satellites if location else None,
                "speed_kmh": location.speed_kmh if location else None,
            },
            "speed_limit": self.speed_limit.value,
        }

    def snapshot(self) -> dict:
        return {
            **self.board.snapshot(),
            "viewports": {vp.name: vp.to_dict() for vp in self.registry.viewports},
            "speed_limit": self.speed_limit.value,
            "active_tab": self.page.active_tab,
        }


class SessionManager:
    """Dashboard sessions by user id, driven by auth state changes."""

    def __init__(self, factory: Callable[[User], DashboardSession] = None):
        self._factory = factory or (lambda user: DashboardSession(user))
        self._sessions: dict[str, DashboardSession] = {}

    def get(self, uid: str) -> Optional[DashboardSession]:
        return self._sessions.get(uid)

    async def ensure(self, user: User) -> DashboardSession:
        session = self._sessions.get(user.uid)
        if session is None:
            session = self._factory(user)
            self._sessions[user.uid] = session
        await session.start()
        return session

    async def end(self, user: User) -> None:
        session = self._sessions.pop(user.uid, None)
        if session is not None:
            await session.stop()

    async def handle_auth_change(self, signed_in: Optional[User], signed_out: Optional[User]) -> None:
        if signed_in is not None:
            await self.ensure(signed_in)
        if signed_out is not None:
            await self.end(signed_out)

    async def stop_all(self) -> None:
        for uid in list(self._sessions):
            await self._sessions.pop(uid).stop()


session_manager = SessionManager()


async def get_dashboard_session(user: User = Depends(get_current_user)) -> DashboardSession:
    """Dependency: the caller's running dashboard session (started on demand)."""
    return await session_manager.ensure(user)
