import asyncio
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from config import setup_logging
from manager import UsageDataManager, build_manager, check_alerts
from models import (
    ProviderState,
    RefreshInterval,
    ServiceKind,
    ServiceUsage,
    UsageAlert,
    UsageSummary,
)

log = logging.getLogger(__name__)

app = FastAPI(title="AI Quota Monitor")


class CredentialIn(BaseModel):
    value: str


class RefreshIntervalIn(BaseModel):
    seconds: RefreshInterval


class RefreshIntervalOut(BaseModel):
    seconds: int
    display_name: str
    scheduled: bool


@app.on_event("startup")
async def startup():
    if getattr(app.state, "manager", None) is None:
        setup_logging()
        app.state.manager = build_manager()
    manager: UsageDataManager = app.state.manager
    manager.start()
    app.state.initial_refresh = asyncio.create_task(manager.refresh_all())


@app.on_event("shutdown")
async def shutdown():
    task: asyncio.Task | None = getattr(app.state, "initial_refresh", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.exception("Initial refresh failed")
    app.state.initial_refresh = None
    manager: UsageDataManager | None = getattr(app.state, "manager", None)
    if manager is not None:
        await manager.stop()


def get_manager(request: Request) -> UsageDataManager:
    return request.app.state.manager


def _service(name: str) -> ServiceKind:
    kind = ServiceKind.parse(name)
    if kind is None:
        raise HTTPException(404, f"Unknown service: {name}")
    return kind


def _summary(manager: UsageDataManager) -> UsageSummary:
    return UsageSummary(
        services=[ServiceUsage.of(m) for m in manager.metrics.values()],
        next_reset=manager.next_reset_time(),
        last_refreshed=manager.last_refreshed,
        last_error=manager.last_error,
    )


def _interval(manager: UsageDataManager) -> RefreshIntervalOut:
    interval = manager.refresh_interval
    return RefreshIntervalOut(
        seconds=interval.value,
        display_name=interval.display_name,
        scheduled=manager.is_scheduled,
    )


@app.get("/api/usage", response_model=UsageSummary)
async def usage_summary(manager: UsageDataManager = Depends(get_manager)):
    return _summary(manager)


@app.get("/api/usage/{service}", response_model=ServiceUsage)
async def usage(service: str, manager: UsageDataManager = Depends(get_manager)):
    kind = _service(service)
    metrics = manager.metrics.get(kind)
    if metrics is None:
        raise HTTPException(404, f"{kind.display_name} is not configured")
    return ServiceUsage.of(metrics)


@app.post("/api/refresh", response_model=UsageSummary)
async def refresh_all(manager: UsageDataManager = Depends(get_manager)):
    await manager.refresh_all()
    return _summary(manager)


@app.post("/api/refresh/{service}", response_model=ServiceUsage)
async def refresh(service: str, manager: UsageDataManager = Depends(get_manager)):
    kind = _service(service)
    metrics = await manager.refresh(kind)
    if metrics is None:
        detail = manager.errors.get(kind) or f"{kind.display_name} is not configured"
        raise HTTPException(404, detail)
    return ServiceUsage.of(metrics)


@app.get("/api/providers", response_model=list[ProviderState])
async def providers(manager: UsageDataManager = Depends(get_manager)):
    return manager.provider_states()


@app.post("/api/providers/check", response_model=list[ProviderState])
async def check_providers(deep_scan: bool = False, manager: UsageDataManager = Depends(get_manager)):
    return await asyncio.to_thread(manager.check_access, deep_scan=deep_scan)


@app.put("/api/credentials/{service}", response_model=ProviderState)
async def set_credential(service: str, body: CredentialIn, manager: UsageDataManager = Depends(get_manager)):
    kind = _service(service)
    if not body.value.strip():
        raise HTTPException(400, "Credential must not be empty")
    if not manager.set_credential(kind, body.value):
        raise HTTPException(503, "Could not store credential")
    return next(s for s in manager.provider_states() if s.service is kind)


@app.delete("/api/credentials/{service}", status_code=204)
async def remove_credential(service: str, manager: UsageDataManager = Depends(get_manager)):
    manager.remove_credential(_service(service))
    return Response(status_code=204)


@app.get("/api/settings/refresh-interval", response_model=RefreshIntervalOut)
async def get_refresh_interval(manager: UsageDataManager = Depends(get_manager)):
    return _interval(manager)


@app.put("/api/settings/refresh-interval", response_model=RefreshIntervalOut)
async def set_refresh_interval(body: RefreshIntervalIn, manager: UsageDataManager = Depends(get_manager)):
    manager.set_refresh_interval(body.seconds)
    return _interval(manager)


@app.get("/api/alerts", response_model=list[UsageAlert])
async def alerts(manager: UsageDataManager = Depends(get_manager)):
    return check_alerts(manager.metrics)
