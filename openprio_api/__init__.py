"""HTTP API that issues MQTT credentials and topic permissions to devices and vehicles."""

__version__ = "0.1.0"