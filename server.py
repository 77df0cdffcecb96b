"""
FastAPI server for Session Monitoring.

Run with: uvicorn server:app --port 8000
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from models import (
    MonitoringAction,
    MonitoringActionResponse,
    MonitoringData,
    MonitoringStatus,
    MonitoringUpdate,
    SessionControlResult,
    SessionControls,
)
from monitoring_service import InvalidConfigError, MonitoringService, ProjectNotMonitoredError
from process_matcher import NullProcessMatcher, PsutilProcessMatcher
from session_controller import SessionController
from state_detector import SessionStateDetector
from transcript_store import InvalidIdentifierError, TranscriptStore, validate_identifier

logger = logging.getLogger(__name__)

PROCESS_SIGNALS_ENABLED = os.environ.get("MONITOR_PROCESS_SIGNALS", "1").lower() not in ("0", "false", "no")


def build_service() -> MonitoringService:
    """Wire the default monitoring service from the environment."""
    store = TranscriptStore()
    detector = SessionStateDetector(store)
    matcher = PsutilProcessMatcher() if PROCESS_SIGNALS_ENABLED else NullProcessMatcher()
    controller = SessionController(store, matcher=matcher, detector=detector)
    return MonitoringService(store, detector=detector, controller=controller)


def create_app(service: Optional[MonitoringService] = None) -> FastAPI:
    service = service or build_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await service.shutdown()

    app = FastAPI(title="Session Monitor API", lifespan=lifespan)
    app.state.service = service

    def get_service(request: Request) -> MonitoringService:
        return request.app.state.service

    def checked(project_id: str, session_id: Optional[str] = None) -> None:
        try:
            validate_identifier(project_id, "project id")
            if session_id is not None:
                validate_identifier(session_id, "session id")
        except InvalidIdentifierError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/monitoring/projects", response_model=list[str])
    def list_monitored_projects(request: Request) -> list[str]:
        """List projects that are currently being monitored."""
        return get_service(request).get_active_projects()

    @app.get("/projects/{project_id}/monitoring", response_model=MonitoringData)
    def get_monitoring_data(project_id: str, request: Request) -> MonitoringData:
        """Return the latest snapshot for a project."""
        checked(project_id)
        data = get_service(request).get_monitoring_data(project_id)
        if data is None:
            raise HTTPException(status_code=404, detail="Monitoring not active for project")
        return data

    @app.post("/projects/{project_id}/monitoring")
    async def monitoring_action(project_id: str, body: MonitoringAction, request: Request):
        """Start, stop, reconfigure monitoring or run a session control."""
        checked(project_id)
        svc = get_service(request)

        if body.action == "start":
            try:
                await svc.start_monitoring(project_id, body.config)
            except InvalidConfigError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return MonitoringActionResponse(
                project_id=project_id, status="started", message="Monitoring started successfully"
            ).model_dump(by_alias=True, mode="json")

        if body.action == "stop":
            stopped = await svc.stop_monitoring(project_id)
            message = "Monitoring stopped successfully" if stopped else "Monitoring was not active"
            return MonitoringActionResponse(
                project_id=project_id, status="stopped", message=message
            ).model_dump(by_alias=True, mode="json")

        if body.action == "configure":
            try:
                config = await svc.update_config(project_id, body.config or {})
            except ProjectNotMonitoredError:
                raise HTTPException(status_code=404, detail="Monitoring not active for project")
            except InvalidConfigError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return config.model_dump(by_alias=True, mode="json")

        if body.action == "control":
            control = body.request
            if control is None:
                raise HTTPException(status_code=400, detail="Control request is required")
            if control.project_id != project_id:
                raise HTTPException(status_code=400, detail="Control request project does not match path")
            checked(project_id, control.session_id)
            result: SessionControlResult = await svc.execute_session_control(control)
            return result.model_dump(by_alias=True, mode="json")

        raise HTTPException(status_code=400, detail=f"Unknown action: {body.action}")

    @app.get("/projects/{project_id}/monitoring/status", response_model=MonitoringStatus)
    def get_monitoring_status(project_id: str, request: Request) -> MonitoringStatus:
        """Report whether a project is being monitored."""
        checked(project_id)
        return get_service(request).get_status(project_id)

    @app.get("/projects/{project_id}/monitoring/sessions/{session_id}", response_model=MonitoringUpdate)
    async def get_session_update(project_id: str, session_id: str, request: Request) -> MonitoringUpdate:
        """Return one session's latest update."""
        checked(project_id, session_id)
        return await get_service(request).get_session_update(project_id, session_id)

    @app.get("/projects/{project_id}/monitoring/sessions/{session_id}/controls", response_model=SessionControls)
    async def get_session_controls(project_id: str, session_id: str, request: Request) -> SessionControls:
        """Return the control actions available for a session."""
        checked(project_id, session_id)
        return await get_service(request).get_session_controls(project_id, session_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(process)d] %(name)s - %(message)s",
    )
    uvicorn.run(app, host="127.0.0.1", port=int(os.environ.get("PORT", "8000")))
