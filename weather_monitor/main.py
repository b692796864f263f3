import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import Settings, get_settings
from .monitor import WeatherMonitor
from .mqtt_client import alert_publisher, start_alert_publisher, stop_alert_publisher
from .schemas import (
    Alert,
    AlertConfig,
    AlertStatus,
    CityInfo,
    ConfigUpdate,
    ConfigView,
    CycleReport,
    DailySummary,
    Reading,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_monitor(request: Request) -> WeatherMonitor:
    return request.app.state.monitor


async def require_api_key(
    request: Request, x_api_key: Optional[str] = Header(None, alias="X-API-Key")
):
    expected = request.app.state.settings.api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key.")


def require_city(city_id: str, monitor: WeatherMonitor) -> CityInfo:
    city = monitor.state.config.city(city_id)
    if city is None:
        raise HTTPException(status_code=404, detail=f"Unknown city '{city_id}'.")
    return city


@router.get("/health")
async def health(request: Request, monitor: WeatherMonitor = Depends(get_monitor)):
    state = monitor.state
    mqtt_connected = None
    client = getattr(request.app.state, "mqtt_client", None)
    if client is not None:
        try:
            mqtt_connected = bool(client.is_connected())
        except Exception as exc:
            logger.warning("MQTT connection check failed: %s", exc)
            mqtt_connected = False
    return {
        "status": "ok",
        "polling": monitor.is_running,
        "is_loading": state.is_loading,
        "last_updated": state.last_updated,
        "readings": state.store.count(),
        "unacknowledged_alerts": state.alert_log.unacknowledged_count(),
        "consecutive_credential_failures": state.consecutive_credential_failures,
        "mqtt_connected": mqtt_connected,
    }


@router.get("/cities", response_model=List[CityInfo], dependencies=[Depends(require_api_key)])
async def list_cities(monitor: WeatherMonitor = Depends(get_monitor)):
    return monitor.state.config.cities


@router.get(
    "/cities/{city_id}/readings",
    response_model=List[Reading],
    summary="Reading history for a city (most recent first)",
    dependencies=[Depends(require_api_key)],
)
async def list_readings(
    city_id: str,
    limit: Optional[int] = Query(None, ge=1),
    monitor: WeatherMonitor = Depends(get_monitor),
):
    require_city(city_id, monitor)
    return monitor.state.store.history(city_id, limit=limit)


@router.get(
    "/cities/{city_id}/readings/latest",
    response_model=Reading,
    dependencies=[Depends(require_api_key)],
)
async def latest_reading(city_id: str, monitor: WeatherMonitor = Depends(get_monitor)):
    require_city(city_id, monitor)
    reading = monitor.state.store.latest(city_id)
    if reading is None:
        raise HTTPException(status_code=404, detail=f"No readings yet for '{city_id}'.")
    return reading


@router.delete(
    "/cities/{city_id}/readings", status_code=204, dependencies=[Depends(require_api_key)]
)
async def clear_city_readings(city_id: str, monitor: WeatherMonitor = Depends(get_monitor)):
    require_city(city_id, monitor)
    monitor.clear_readings(city_id)
    return Response(status_code=204)


@router.delete("/readings", status_code=204, dependencies=[Depends(require_api_key)])
async def clear_all_readings(monitor: WeatherMonitor = Depends(get_monitor)):
    monitor.clear_readings()
    return Response(status_code=204)


@router.get(
    "/cities/{city_id}/summaries",
    response_model=List[DailySummary],
    summary="Daily summaries for a city (most recent date first)",
    dependencies=[Depends(require_api_key)],
)
async def list_summaries(city_id: str, monitor: WeatherMonitor = Depends(get_monitor)):
    require_city(city_id, monitor)
    aggregator = monitor.state.aggregator
    return [aggregator.summary(city_id, day) for day in aggregator.dates(city_id)]


@router.get(
    "/cities/{city_id}/summaries/{day}",
    response_model=DailySummary,
    dependencies=[Depends(require_api_key)],
)
async def get_summary(city_id: str, day: date, monitor: WeatherMonitor = Depends(get_monitor)):
    require_city(city_id, monitor)
    summary = monitor.state.aggregator.summary(city_id, day)
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No summary for '{city_id}' on {day}.")
    return summary


@router.get(
    "/alerts",
    response_model=List[Alert],
    summary="Alert log (most recent first)",
    dependencies=[Depends(require_api_key)],
)
async def list_alerts(
    limit: Optional[int] = Query(None, ge=1),
    unacknowledged_only: bool = False,
    monitor: WeatherMonitor = Depends(get_monitor),
):
    return monitor.state.alert_log.list(limit=limit, unacknowledged_only=unacknowledged_only)


@router.get("/alerts/status", response_model=AlertStatus, dependencies=[Depends(require_api_key)])
async def alert_status(monitor: WeatherMonitor = Depends(get_monitor)):
    log = monitor.state.alert_log
    return AlertStatus(total=len(log), unacknowledged=log.unacknowledged_count())


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=Alert,
    dependencies=[Depends(require_api_key)],
)
async def acknowledge_alert(alert_id: str, monitor: WeatherMonitor = Depends(get_monitor)):
    if not monitor.acknowledge_alert(alert_id):
        raise HTTPException(status_code=404, detail=f"Unknown alert '{alert_id}'.")
    return monitor.state.alert_log.get(alert_id)


@router.delete("/alerts", status_code=204, dependencies=[Depends(require_api_key)])
async def clear_alerts(monitor: WeatherMonitor = Depends(get_monitor)):
    monitor.clear_alerts()
    return Response(status_code=204)


@router.get(
    "/cities/{city_id}/alert-config",
    response_model=AlertConfig,
    dependencies=[Depends(require_api_key)],
)
async def get_alert_config(city_id: str, monitor: WeatherMonitor = Depends(get_monitor)):
    require_city(city_id, monitor)
    return monitor.state.config.alerts[city_id]


@router.put(
    "/cities/{city_id}/alert-config",
    response_model=AlertConfig,
    dependencies=[Depends(require_api_key)],
)
async def put_alert_config(
    city_id: str, body: AlertConfig, monitor: WeatherMonitor = Depends(get_monitor)
):
    require_city(city_id, monitor)
    return monitor.update_alert_config(city_id, **body.model_dump())


def _config_view(monitor: WeatherMonitor) -> ConfigView:
    config = monitor.state.config
    return ConfigView(
        has_api_key=bool(config.api_key),
        update_interval=config.update_interval,
        temperature_unit=config.temperature_unit,
        cities=config.cities,
    )


@router.get("/config", response_model=ConfigView, dependencies=[Depends(require_api_key)])
async def get_config(monitor: WeatherMonitor = Depends(get_monitor)):
    return _config_view(monitor)


@router.patch("/config", response_model=ConfigView, dependencies=[Depends(require_api_key)])
async def patch_config(body: ConfigUpdate, monitor: WeatherMonitor = Depends(get_monitor)):
    await monitor.update_config(**body.model_dump(exclude_unset=True))
    return _config_view(monitor)


@router.post(
    "/refresh",
    response_model=CycleReport,
    summary="Run one polling cycle now",
    dependencies=[Depends(require_api_key)],
)
async def refresh(monitor: WeatherMonitor = Depends(get_monitor)):
    return await monitor.poll_once()


@router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(
    settings: Optional[Settings] = None, monitor: Optional[WeatherMonitor] = None
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            mqtt_client = await asyncio.to_thread(start_alert_publisher, settings)
        except RuntimeError as exc:
            logger.error("MQTT alert publishing unavailable: %s", exc)
            mqtt_client = None
        if mqtt_client is not None:
            app.state.monitor.state.engine.on_alert(
                alert_publisher(mqtt_client, settings.mqtt_topic_prefix)
            )
        app.state.mqtt_client = mqtt_client
        app.state.monitor.start()

        yield

        # Shutdown order: stop polling, then MQTT.
        await app.state.monitor.stop()
        if mqtt_client is not None:
            stop_alert_publisher(mqtt_client)

    app = FastAPI(
        title="Weather Monitor",
        version="0.1.0",
        description="Polls current weather per city, summarizes each day and raises threshold alerts.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.monitor = monitor or WeatherMonitor.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


logging.basicConfig(level=get_settings().log_level.upper())
app = create_app()
