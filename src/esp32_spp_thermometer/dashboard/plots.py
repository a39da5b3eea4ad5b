"""
Temperature chart for the dashboard.
"""

from typing import Sequence

import plotly.graph_objects as go  # type: ignore

from ..spp_receiver import TemperatureSample

# Calibration range of the ESP32 thermistor (T_LOW/T_HIGH in the firmware)
CALIBRATION_LOW_C = 25.0
CALIBRATION_HIGH_C = 100.0
GRID_LINES = 5


def compute_y_range(values: Sequence[float]) -> tuple[float, float]:
    """Return the y-axis range for a set of temperatures.

    The range always covers the board's calibration range and adds 10% of the
    data span as padding on both sides. A span under 1°C counts as 1°C.
    """
    low, high = min(values), max(values)
    span = max(high - low, 1.0)
    return (
        min(CALIBRATION_LOW_C, low - span * 0.1),
        max(CALIBRATION_HIGH_C, high + span * 0.1),
    )


def create_temperature_chart(
    history: Sequence[TemperatureSample], title: str = "Temperature"
) -> go.Figure:
    """Create the scrolling temperature chart."""
    fig = go.Figure()

    if not history:
        fig.add_annotation(
            x=0.5,
            y=0.5,
            text="No temperature data available",
            showarrow=False,
            xref="paper",
            yref="paper",
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            title=title,
            xaxis_title="Time (seconds)",
            yaxis_title="Temperature (°C)",
            height=400,
        )
        return fig

    # Calculate relative timestamps
    timestamps = [(s.timestamp - history[0].timestamp) / 1000.0 for s in history]
    values = [s.value for s in history]

    fig.add_trace(
        go.Scatter(
            x=timestamps,
            y=values,
            mode="lines+markers",
            name="Temperature",
            line=dict(color="orange", width=2),
            marker=dict(size=6),
            hovertemplate="%{y:.1f}°C<extra></extra>",
        )
    )

    y_low, y_high = compute_y_range(values)
    step = (y_high - y_low) / GRID_LINES
    tick_values = [y_low + step * i for i in range(GRID_LINES + 1)]

    fig.update_layout(
        title=title,
        xaxis_title="Time (seconds)",
        yaxis_title="Temperature (°C)",
        showlegend=False,
        height=400,
        margin=dict(l=60, r=20, t=50, b=50),
    )
    if len(timestamps) > 1:
        fig.update_xaxes(range=[timestamps[0], timestamps[-1]])
    fig.update_yaxes(
        range=[y_low, y_high],
        tickvals=tick_values,
        ticktext=[f"{v:.1f}°C" for v in tick_values],
        gridcolor="rgba(128, 128, 128, 0.3)",
    )

    return fig
