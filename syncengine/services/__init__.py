"""
Service layer.
Builds the sync components once and hands them to the routers.
"""

from .container import SyncServices, build_services, get_services

__all__ = ["SyncServices", "build_services", "get_services"]
