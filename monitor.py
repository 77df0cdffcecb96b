"""
Panel Session Monitor Dashboard

Shows live session state for one Claude Code project and exposes
pause/resume/terminate/restart controls.
Run with: panel serve monitor.py --port 5000
"""

import logging
import os
from typing import Optional

import pandas as pd
import panel as pn

from models import MonitoringData, SessionControlAction, SessionControlRequest
from session_client import ConnectionStatus, MonitoringClient

logger = logging.getLogger(__name__)

SERVER_URL = os.environ.get("MONITOR_SERVER_URL", "http://localhost:8000")
REFRESH_PERIOD_MS = 2000

COLUMNS = ["Session ID", "State", "Last Activity", "Activity", "Messages", "Tokens", "Errors", "Warnings"]

DESTRUCTIVE_ACTIONS = (SessionControlAction.TERMINATE, SessionControlAction.RESTART)

STATUS_BADGES = {
    ConnectionStatus.CONNECTED: "🟢 Connected",
    ConnectionStatus.CONNECTING: "🟡 Connecting",
    ConnectionStatus.DISCONNECTED: "⚪ Disconnected",
    ConnectionStatus.ERROR: "🔴 Error",
}


def sessions_to_frame(data: Optional[MonitoringData]) -> pd.DataFrame:
    """Format a monitoring snapshot as a table, most recent activity first."""
    if data is None or not data.sessions:
        return pd.DataFrame({column: [] for column in COLUMNS})

    sessions = sorted(data.sessions, key=lambda s: s.health.last_activity_at, reverse=True)
    return pd.DataFrame([
        {
            "Session ID": s.session_id,
            "State": s.state.value,
            "Last Activity": s.health.last_activity_at.strftime("%H:%M:%S"),
            "Activity": s.progress.current_activity or "",
            "Messages": s.progress.messages_count,
            "Tokens": s.progress.token_usage.total_tokens,
            "Errors": s.health.error_count,
            "Warnings": "; ".join(s.health.warnings),
        }
        for s in sessions
    ], columns=COLUMNS)


def summary_markdown(data: Optional[MonitoringData]) -> str:
    if data is None:
        return "*Not monitoring*"
    stats = data.overall_stats
    response = (
        f"{stats.average_response_time:.0f} ms" if stats.average_response_time is not None else "unknown"
    )
    text = (
        f"**Active:** {stats.active_sessions}/{stats.total_sessions} · "
        f"**Avg response:** {response} · **Load:** {stats.system_load:.0f}% · "
        f"**Updated:** {data.last_updated.strftime('%H:%M:%S')}"
    )
    if data.stale:
        text += f"  \n⚠️ Server could not refresh this snapshot: {data.last_error}"
    return text


class MonitorDashboard(pn.viewable.Viewer):
    """Main monitoring dashboard component."""

    def __init__(self, project_id: str = "", server_url: str = SERVER_URL):
        super().__init__()
        self._server_url = server_url
        self._client: Optional[MonitoringClient] = None
        self._pending_action: Optional[SessionControlAction] = None

        self._project_input = pn.widgets.TextInput(name="Project ID", value=project_id, width=320)
        self._start_btn = pn.widgets.Button(name="Start Monitoring", button_type="primary", width=140)
        self._stop_btn = pn.widgets.Button(name="Stop", button_type="default", width=80, disabled=True)
        self._start_btn.on_click(self._start)
        self._stop_btn.on_click(self._stop)

        self._status_text = pn.pane.Markdown(STATUS_BADGES[ConnectionStatus.DISCONNECTED])
        self._summary = pn.pane.Markdown(summary_markdown(None))
        self._error_banner = pn.pane.Alert("", alert_type="danger", visible=False, sizing_mode="stretch_width")
        self._dismiss_btn = pn.widgets.Button(name="Dismiss", width=80, visible=False)
        self._dismiss_btn.on_click(self._dismiss_error)

        self._perspective: Optional[pn.pane.Perspective] = None
        self._detail = pn.pane.Markdown("*Click a row to select a session*")

        self._control_buttons = {}
        for action in SessionControlAction:
            button = pn.widgets.Button(
                name=action.value.capitalize(),
                button_type="danger" if action in DESTRUCTIVE_ACTIONS else "default",
                width=90,
                disabled=True,
            )
            button.on_click(lambda event, a=action: self._request_action(a))
            self._control_buttons[action] = button

        self._confirm_text = pn.pane.Markdown("", visible=False)
        self._confirm_btn = pn.widgets.Button(name="Confirm", button_type="danger", width=90, visible=False)
        self._cancel_btn = pn.widgets.Button(name="Cancel", width=90, visible=False)
        self._confirm_btn.on_click(self._confirm_action)
        self._cancel_btn.on_click(lambda event: self._set_pending(None))
        self._result_text = pn.pane.Markdown("")

    # -- data -------------------------------------------------------------

    def _create_perspective(self) -> pn.pane.Perspective:
        """Create the sessions Perspective pane."""
        perspective = pn.pane.Perspective(
            sessions_to_frame(None),
            height=400,
            sizing_mode="stretch_width",
            selectable=True,
            plugin="datagrid",
        )
        perspective.on_click(self._handle_click)
        return perspective

    def _handle_click(self, event) -> None:
        """Handle click events on the Perspective pane."""
        session_id = None
        if hasattr(event, "row") and event.row:
            row_data = event.row
            if isinstance(row_data, dict) and "Session ID" in row_data:
                session_id = row_data["Session ID"]
        elif hasattr(event, "config") and event.config:
            if isinstance(event.config, dict) and "Session ID" in event.config:
                session_id = event.config["Session ID"]

        if session_id and self._client:
            self._client.select_session(session_id)
            self._set_pending(None)
            self._refresh()

    def _refresh(self) -> None:
        """Re-render from the client's local view. Never blanks on failure."""
        client = self._client
        if client is None:
            return
        data = client.monitoring_data
        if self._perspective is not None and data is not None:
            self._perspective.object = sessions_to_frame(data)
        self._summary.object = summary_markdown(data)

        status = STATUS_BADGES[client.connection_status]
        if client.polling_suspended:
            status += " · polling paused after repeated failures"
        self._status_text.object = status

        info = client.error_info
        self._error_banner.visible = info is not None
        self._dismiss_btn.visible = info is not None
        if info is not None:
            self._error_banner.object = (
                f"**{info.operation}** failed ({info.severity.value}"
                f"{', will retry' if info.retryable else ''}): {info.message}"
            )

        self._render_selection()

    def _render_selection(self) -> None:
        session = self._client.selected_session if self._client else None
        if session is None:
            self._detail.object = "*Click a row to select a session*"
            for button in self._control_buttons.values():
                button.disabled = True
            return

        tokens = session.progress.token_usage
        response = (
            f"{session.health.response_time:.0f} ms" if session.health.response_time is not None else "unknown"
        )
        self._detail.object = (
            f"### {session.session_id}\n"
            f"**State:** {session.state.value}  \n"
            f"**Activity:** {session.progress.current_activity or '-'}  \n"
            f"**Tokens:** {tokens.input_tokens} in / {tokens.output_tokens} out ({tokens.total_tokens})  \n"
            f"**Messages:** {session.progress.messages_count} · "
            f"**Duration:** {session.progress.duration / 1000:.0f}s · **Response:** {response}  \n"
            f"**Errors:** {session.health.error_count}"
            + "".join(f"  \n⚠️ {w}" for w in session.health.warnings)
        )
        controls = session.controls
        allowed = set(controls.available_actions) if controls else set()
        for action, button in self._control_buttons.items():
            button.disabled = action not in allowed

    # -- controls ---------------------------------------------------------

    def _set_pending(self, action: Optional[SessionControlAction]) -> None:
        self._pending_action = action
        visible = action is not None
        self._confirm_text.visible = visible
        self._confirm_btn.visible = visible
        self._cancel_btn.visible = visible
        if visible:
            self._confirm_text.object = f"Really **{action.value}** this session?"

    def _request_action(self, action: SessionControlAction) -> None:
        if action in DESTRUCTIVE_ACTIONS:
            self._set_pending(action)
        else:
            self._execute(action)

    def _confirm_action(self, event) -> None:
        action = self._pending_action
        self._set_pending(None)
        if action is not None:
            self._execute(action)

    def _execute(self, action: SessionControlAction) -> None:
        client = self._client
        session = client.selected_session if client else None
        if session is None:
            return
        request = SessionControlRequest(
            session_id=session.session_id,
            project_id=client.project_id,
            action=action,
            force=action == SessionControlAction.TERMINATE,
        )
        try:
            result = client.execute_control(request)
            outcome = "✅" if result.success else "❌"
            self._result_text.object = f"{outcome} {action.value}: {result.message or ''}"
        except Exception as e:
            logger.warning(f"Control {action.value} failed: {e}")
            self._result_text.object = f"❌ {action.value} failed: {e}"
        self._refresh()

    # -- lifecycle --------------------------------------------------------

    def _replace_client(self) -> MonitoringClient:
        if self._client is not None:
            self._client.close()
        self._client = MonitoringClient(self._project_input.value.strip(), server_url=self._server_url)
        return self._client

    def _start(self, event) -> None:
        client = self._replace_client()
        try:
            client.start_monitoring()
            self._start_btn.disabled = True
            self._stop_btn.disabled = False
        except Exception as e:
            logger.warning(f"Failed to start monitoring: {e}")
        self._refresh()

    def _stop(self, event) -> None:
        if self._client is None:
            return
        try:
            self._client.stop_monitoring()
            self._start_btn.disabled = False
            self._stop_btn.disabled = True
            if self._perspective is not None:
                self._perspective.object = sessions_to_frame(None)
        except Exception as e:
            logger.warning(f"Failed to stop monitoring: {e}")
        self._set_pending(None)
        self._refresh()

    def _attach(self) -> None:
        """Pick up monitoring that is already running for the project."""
        project_id = self._project_input.value.strip()
        if not project_id:
            return
        client = self._replace_client()
        if client.check_status():
            self._start_btn.disabled = True
            self._stop_btn.disabled = False
        self._refresh()

    def _dismiss_error(self, event) -> None:
        if self._client:
            self._client.clear_error()
        self._refresh()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __panel__(self):
        self._perspective = self._create_perspective()
        self._attach()

        # Re-render every 2 seconds from the client's local snapshot
        refresh_callback = pn.state.add_periodic_callback(
            self._refresh,
            period=REFRESH_PERIOD_MS,
        )

        # Clean up callback and polling when session disconnects
        def cleanup(session_context):
            refresh_callback.stop()
            self.close()

        pn.state.on_session_destroyed(cleanup)

        header = pn.Row(
            pn.pane.Markdown("## Session Monitor"),
            pn.Spacer(),
            self._status_text,
            sizing_mode="stretch_width",
        )
        toolbar = pn.Row(self._project_input, self._start_btn, self._stop_btn)
        controls = pn.Column(
            pn.Row(*self._control_buttons.values()),
            pn.Row(self._confirm_text, self._confirm_btn, self._cancel_btn),
            self._result_text,
        )

        return pn.Column(
            header,
            toolbar,
            pn.Row(self._error_banner, self._dismiss_btn, sizing_mode="stretch_width"),
            self._summary,
            self._perspective,
            pn.layout.Divider(),
            self._detail,
            controls,
            sizing_mode="stretch_width",
        )


if __name__.startswith("bokeh"):
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(process)d] %(name)s - %(message)s",
    )
    pn.extension("perspective")

    # Create and serve the dashboard
    dashboard = MonitorDashboard(project_id=pn.state.session_args.get("project", [b""])[0].decode())
    template = pn.template.BootstrapTemplate(
        title="Session Monitor",
        main=[dashboard],
    )
    template.servable()
