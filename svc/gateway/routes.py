from __future__ import annotations
from datetime import datetime
from typing import Callable, List, TypeVar
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from .models import (
    ErrorResponse, GatewayStateResponse, HealthResponse, ReadingResponse,
    SensorInfo, SensorStatusResponse
)
from .config import DB_FILE, DB_TIMEOUT_S, MODE, RESPONSE_TIMEOUT_S
from .registry import DeviceRegistry
from .sensor import ReadingKind
from .service import GatewayService
from .state import SensorNotFound, SensorStore, StorageBusy, StorageError

T = TypeVar("T")

router = APIRouter()
svc: GatewayService | None = None

_STORAGE_ERRORS = {
    404: {"model": ErrorResponse, "description": "Sensor or reading not found"},
    500: {"model": ErrorResponse, "description": "Storage failure"},
    503: {"model": ErrorResponse, "description": "Storage busy, retry later"},
}


def get_service() -> GatewayService:
    global svc
    if svc is None:
        svc = GatewayService(
            store=SensorStore(DB_FILE, timeout_s=DB_TIMEOUT_S),
            registry=DeviceRegistry(response_timeout_s=RESPONSE_TIMEOUT_S),
            mode=MODE,
        )
    return svc


def _storage_call(fn: Callable[[], T]) -> T:
    """Run a storage read, translating storage errors into HTTP errors."""
    try:
        return fn()
    except SensorNotFound as e:
        raise HTTPException(status_code=404, detail=f"not found: {e}")
    except StorageBusy:
        raise HTTPException(status_code=503, detail="Database connection failed")
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns service health status and the radio mode (sim or ble)",
    tags=["Health"]
)
def health(service: GatewayService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", mode=service.mode)


@router.get("/api/status", response_class=PlainTextResponse, tags=["Health"])
def status() -> str:
    return "Server is up and running!"


@router.get(
    "/api/gateway",
    response_model=GatewayStateResponse,
    summary="Lifecycle manager snapshot",
    description="Addresses pending inspection, with a live session, and reported online",
    tags=["Gateway"]
)
def gateway_state(service: GatewayService = Depends(get_service)) -> GatewayStateResponse:
    pending, active, online = service.gateway_state()
    return GatewayStateResponse(pending=pending, active=active, online=online)


@router.get(
    "/api/sensors/list",
    response_model=List[SensorInfo],
    summary="List known sensors",
    responses=_STORAGE_ERRORS,
    tags=["Sensors"],
)
def sensors_list(service: GatewayService = Depends(get_service)) -> List[SensorInfo]:
    rows = _storage_call(service.list_sensors)
    return [
        SensorInfo(id=handle, family=s.family.value, address=s.address, name=s.name)
        for handle, s in rows
    ]


@router.get(
    "/api/sensors/{sensor_id}",
    response_model=SensorStatusResponse,
    summary="Online status of a sensor",
    responses=_STORAGE_ERRORS,
    tags=["Sensors"],
)
def sensor_status(
    sensor_id: int, service: GatewayService = Depends(get_service)
) -> SensorStatusResponse:
    st = _storage_call(lambda: service.sensor_status(sensor_id))
    return SensorStatusResponse(status=st.value)


@router.get(
    "/api/sensors/{sensor_id}/readings",
    response_model=List[ReadingResponse],
    summary="All readings of a sensor",
    responses=_STORAGE_ERRORS,
    tags=["Sensors"],
)
def sensor_readings(
    sensor_id: int, service: GatewayService = Depends(get_service)
) -> List[ReadingResponse]:
    rows = _storage_call(lambda: service.readings(sensor_id))
    return [ReadingResponse.from_reading(r) for r in rows]


@router.get(
    "/api/sensors/{sensor_id}/readings/after/{timestamp}",
    response_model=List[ReadingResponse],
    summary="Readings newer than a timestamp",
    description="Timestamp is ISO 8601; without a UTC offset it is taken as UTC",
    responses=_STORAGE_ERRORS,
    tags=["Sensors"],
)
def sensor_readings_after(
    sensor_id: int, timestamp: datetime, service: GatewayService = Depends(get_service)
) -> List[ReadingResponse]:
    rows = _storage_call(lambda: service.readings_after(sensor_id, timestamp))
    return [ReadingResponse.from_reading(r) for r in rows]


@router.get(
    "/api/sensors/{sensor_id}/latest/{kind}",
    response_model=ReadingResponse,
    summary="Latest reading of one kind",
    description="kind is 'T' (temperature) or 'H' (humidity)",
    responses=_STORAGE_ERRORS,
    tags=["Sensors"],
)
def sensor_latest_reading(
    sensor_id: int, kind: ReadingKind, service: GatewayService = Depends(get_service)
) -> ReadingResponse:
    r = _storage_call(lambda: service.latest_reading(sensor_id, kind))
    return ReadingResponse.from_reading(r)
