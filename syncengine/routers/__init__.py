"""API routers for all endpoints."""

from syncengine.routers import connection, schedules, sync, webhooks

__all__ = ["connection", "schedules", "sync", "webhooks"]
