"""
Dash application for live temperature monitoring.
"""

import logging
from typing import Any, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output, State

from ..monitor import ConnectionState, MonitorSnapshot, TemperatureMonitor
from .plots import create_temperature_chart

logger = logging.getLogger(__name__)

PANEL_STYLE = {
    "display": "inline-block",
    "verticalAlign": "top",
    "padding": "10px",
    "border": "1px solid #ddd",
    "borderRadius": "5px",
    "margin": "5px",
}


def _button_style(background: str, disabled: bool) -> dict:
    return {
        "marginRight": "10px",
        "padding": "8px 16px",
        "backgroundColor": "#6c757d" if disabled else background,
        "color": "white",
        "border": "none",
        "borderRadius": "4px",
        "cursor": "not-allowed" if disabled else "pointer",
        "opacity": "0.6" if disabled else "1.0",
    }


def describe_connection(snapshot: MonitorSnapshot) -> Tuple[str, str]:
    """Return the status text and its color for the connection panel."""
    if not snapshot.adapter_available:
        return "⚠️ Bluetooth not available", "red"
    if snapshot.connection_state is ConnectionState.CONNECTED:
        return "🟢 Connected", "green"
    if snapshot.connection_state is ConnectionState.CONNECTING:
        return "🟡 Connecting...", "orange"
    return "🔴 Disconnected", "red"


class ThermometerDashboard:
    """Web front end for a :class:`TemperatureMonitor`.

    The page polls the monitor's state snapshot on a ``dcc.Interval`` and sends
    button clicks to the monitor as commands. The dashboard never touches the
    transport or the history directly; it only reads snapshots, so a slow
    browser cannot stall the read loop.

    Attributes:
        monitor: Controller whose state is displayed.
        update_interval: UI refresh interval in milliseconds.
        app: Dash web application instance.
    """

    def __init__(self, monitor: TemperatureMonitor, update_rate: int = 2):
        """Create the Dash app.

        Args:
            monitor: Controller to display and command.
            update_rate: UI refresh rate in frames per second. The ESP32 sends
                about one record per second, so a low rate is enough.
        """
        self.monitor = monitor
        self.update_interval = 1000 // max(update_rate, 1)

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        self.app.layout = html.Div(
            [
                html.H1("ESP32 Temperature Monitor", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.Div(
                            [
                                html.H3("Connection Status"),
                                html.Div(
                                    id="connection-status", children="Initializing..."
                                ),
                                html.Div(id="connection-details", children=""),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                        html.Div(
                            [
                                html.H3("Devices"),
                                html.Button(
                                    "Scan for devices",
                                    id="scan-btn",
                                    style=_button_style("#007bff", False),
                                ),
                                dcc.Dropdown(
                                    id="device-dropdown",
                                    options=[],
                                    placeholder="Select a paired device",
                                    style={"margin": "10px 0", "fontSize": "12px"},
                                ),
                                html.Button(
                                    "Connect",
                                    id="connect-btn",
                                    style=_button_style("#28a745", False),
                                ),
                                html.Button(
                                    "Disconnect",
                                    id="disconnect-btn",
                                    disabled=True,
                                    style=_button_style("#dc3545", True),
                                ),
                            ],
                            style={**PANEL_STYLE, "width": "35%"},
                        ),
                        html.Div(
                            [
                                html.H3("Latest Reading"),
                                html.Div(
                                    id="latest-status",
                                    children="No data",
                                    style={"fontSize": "18px", "fontWeight": "bold"},
                                ),
                                html.Div(id="history-stats", children=""),
                            ],
                            style={**PANEL_STYLE, "width": "30%"},
                        ),
                    ],
                    style={"margin": "20px", "display": "flex", "gap": "10px"},
                ),
                html.Div(
                    [
                        dcc.Graph(
                            id="temperature-chart",
                            config={"displayModeBar": False},
                            style={"height": "450px"},
                        ),
                    ]
                ),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
                # Hidden divs receiving command callback results
                html.Div(id="scan-state-store", style={"display": "none"}),
                html.Div(id="connect-state-store", style={"display": "none"}),
                html.Div(id="disconnect-state-store", style={"display": "none"}),
            ]
        )

    def render(self, snapshot: MonitorSnapshot) -> Tuple[Any, ...]:
        """Build every refreshed component value from one snapshot."""
        status_text, status_color = describe_connection(snapshot)
        connection_status = html.Span(
            status_text,
            style={"color": status_color, "fontWeight": "bold", "fontSize": "16px"},
        )

        connected = snapshot.connection_state is not ConnectionState.DISCONNECTED
        if snapshot.connected_address and connected:
            details = f"🔵 Device: {snapshot.connected_address}"
        else:
            details = "Select a device and press Connect"
        connection_details = html.P(details, style={"margin": "5px 0", "fontSize": "14px"})

        history = snapshot.history
        if history:
            values = [s.value for s in history]
            history_stats = html.Div(
                [
                    html.P(
                        f"Points: {len(history)}/{self.monitor.ingestor.history.max_size}",
                        style={"margin": "2px 0", "fontSize": "12px"},
                    ),
                    html.P(
                        f"Min/Max: {min(values):.1f}°C / {max(values):.1f}°C",
                        style={"margin": "2px 0", "fontSize": "12px"},
                    ),
                ]
            )
        else:
            history_stats = html.P(
                "Waiting for temperature data",
                style={"margin": "2px 0", "fontSize": "12px", "color": "#666"},
            )

        device_options = [
            {"label": device.label, "value": device.address}
            for device in snapshot.available_devices
        ]

        busy = snapshot.connection_state is ConnectionState.CONNECTING
        scan_disabled = snapshot.is_scanning or not snapshot.adapter_available
        connect_disabled = busy or not snapshot.adapter_available
        disconnect_disabled = snapshot.connection_state is ConnectionState.DISCONNECTED

        return (
            create_temperature_chart(history),
            connection_status,
            connection_details,
            snapshot.latest_status or "No data",
            history_stats,
            device_options,
            "Scanning..." if snapshot.is_scanning else "Scan for devices",
            scan_disabled,
            _button_style("#007bff", scan_disabled),
            connect_disabled,
            _button_style("#28a745", connect_disabled),
            disconnect_disabled,
            _button_style("#dc3545", disconnect_disabled),
        )

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("temperature-chart", "figure"),
                Output("connection-status", "children"),
                Output("connection-details", "children"),
                Output("latest-status", "children"),
                Output("history-stats", "children"),
                Output("device-dropdown", "options"),
                Output("scan-btn", "children"),
                Output("scan-btn", "disabled"),
                Output("scan-btn", "style"),
                Output("connect-btn", "disabled"),
                Output("connect-btn", "style"),
                Output("disconnect-btn", "disabled"),
                Output("disconnect-btn", "style"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_view(n_intervals: int) -> Tuple[Any, ...]:
            snapshot = self.monitor.state.snapshot
            if n_intervals % 60 == 0:
                logger.debug(
                    f"🔍 UI Debug: state={snapshot.connection_state.value}, "
                    f"history={len(snapshot.history)}"
                )
            return self.render(snapshot)

        @self.app.callback(  # type: ignore
            Output("scan-state-store", "children"),
            [Input("scan-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def scan_devices(n_clicks: Optional[int]):  # type: ignore
            if n_clicks and not self.monitor.state.snapshot.is_scanning:
                self.monitor.scan()
                logger.info("🔍 Scan requested")
                return "scanning"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("connect-state-store", "children"),
            [Input("connect-btn", "n_clicks")],
            [State("device-dropdown", "value")],
            prevent_initial_call=True,
        )
        def connect_device(n_clicks: Optional[int], address: Optional[str]):  # type: ignore
            if n_clicks and address:
                self.monitor.connect(address)
                logger.info(f"🔄 Connect requested: {address}")
                return "connecting"
            return "idle"

        @self.app.callback(  # type: ignore
            Output("disconnect-state-store", "children"),
            [Input("disconnect-btn", "n_clicks")],
            prevent_initial_call=True,
        )
        def disconnect_device(n_clicks: Optional[int]):  # type: ignore
            if n_clicks:
                self.monitor.disconnect()
                logger.info("🛑 Disconnect requested")
                return "disconnected"
            return "idle"

    def run(
        self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False
    ) -> None:
        """Serve the dashboard until interrupted, then shut the monitor down."""
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.monitor.shutdown()


def create_app(monitor: TemperatureMonitor, **kwargs: int) -> ThermometerDashboard:
    """Factory function to create a dashboard.

    Args:
        monitor: Controller to display and command
        **kwargs: Additional arguments for ThermometerDashboard

    Returns:
        ThermometerDashboard instance
    """
    return ThermometerDashboard(monitor=monitor, **kwargs)
