"""
Web dashboard for live ESP32 temperature data.
"""

from .app import ThermometerDashboard, create_app

__all__ = ["ThermometerDashboard", "create_app"]
