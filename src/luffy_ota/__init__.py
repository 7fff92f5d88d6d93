"""
Luffy OTA - over-the-air update engine for Luffy vehicle services.

This package discovers new releases of the gateway, media and launcher
services, installs eligible Debian packages with backup and rollback, and
tracks per-service health and version state.
"""

__version__ = "0.1.0"
