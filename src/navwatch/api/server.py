"""
FastAPI server exposing the monitor trigger, its status and read-only NAV views.
This file wires:
- Services (store, NAV service, monitor) built from Settings at startup, or injected
- a background monitor loop when requested
- Web endpoints for the scheduler and for inspection
"""

import asyncio
import contextlib
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request

from navwatch.config import Settings, load_config
from navwatch.core.errors import MnavError, UnknownCompany


def _services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def _require_cron_auth(request: Request, authorization: Optional[str]) -> None:
    secret = _services(request).settings.cron_secret
    if not secret or authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Authentication required")


def create_app(services=None, settings: Optional[Settings] = None, background_monitor: bool = False) -> FastAPI:
    app = FastAPI(title="navwatch mNAV API", version="0.1.0")
    app.state.services = services
    app.state.monitor_task = None

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            from navwatch.app import build_services

            app.state.services = await build_services(settings or load_config())
        if background_monitor:
            svc = app.state.services
            interval = svc.settings.check_interval_minutes * 60
            app.state.monitor_task = asyncio.create_task(svc.monitor.run_forever(interval))

    @app.on_event("shutdown")
    async def shutdown_event():
        task = app.state.monitor_task
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if services is None and app.state.services is not None:
            await app.state.services.close()

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/mnav-monitor/check")
    async def check_thresholds(request: Request, authorization: Optional[str] = Header(None)):
        """Run one monitor pass. Called by the external scheduler."""
        _require_cron_auth(request, authorization)
        results = await _services(request).monitor.run_once()
        notifications = [n.id for r in results for n in r.triggered]
        return {
            "data": {
                "companies_checked": len(results),
                "alerts_triggered": len(notifications),
                "notifications_created": notifications,
                "results": [r.model_dump(mode="json") for r in results],
            },
            "message": f"Checked {len(results)} companies, triggered {len(notifications)} notifications",
        }

    @app.get("/api/mnav-monitor/status")
    async def monitor_status(request: Request, authorization: Optional[str] = Header(None)):
        _require_cron_auth(request, authorization)
        status = await _services(request).monitor.status()
        return {"data": status.model_dump(mode="json")}

    @app.get("/api/companies/{company_id}/metrics")
    async def company_metrics(company_id: str, request: Request):
        """Gap-filled daily metric series for a company."""
        try:
            series = await _services(request).nav_service.metric_series(company_id)
        except UnknownCompany:
            raise HTTPException(status_code=404, detail="Company not found")
        return {"data": [m.model_dump(mode="json") for m in series]}

    @app.get("/api/companies/{company_id}/nav")
    async def company_nav(company_id: str, request: Request):
        try:
            nav = await _services(request).nav_service.current_nav(company_id)
        except UnknownCompany:
            raise HTTPException(status_code=404, detail="Company not found")
        except MnavError as e:
            raise HTTPException(status_code=503, detail=f"NAV unavailable: {e}")
        return {"data": nav.model_dump(mode="json")}

    return app
