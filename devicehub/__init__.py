"""HTTP backend for flashing ESP32 boards and serving climate readings."""

__version__ = "0.1.0"
