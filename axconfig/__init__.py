"""Configuration and download toolkit for AX3/AX6 accelerometer loggers."""

__version__ = "0.1.0"
