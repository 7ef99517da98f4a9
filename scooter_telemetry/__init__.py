"""
Scooter Telemetry

Decoding, calibration and polling of BLE scooter controller telemetry.
"""

__version__ = "0.1.0"
