"""MCP tools for the glucose change-feed source.

Status, enable/disable, read-back of stored readings, retention, and the
ingestion audit trail. Enable/disable flips the persisted flag and drives the
lifecycle controller; every call is audit-logged.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from bgsource.core.audit.logger import AuditLogger
    from bgsource.core.storage.repository import GlucoseRepository
    from bgsource.domains.glucose.lifecycle import DataSourceFeatureFlag, LifecycleController

logger = logging.getLogger(__name__)

MAX_READINGS = 1000


def register_glucose_source_tools(
    mcp: FastMCP,
    controller: LifecycleController,
    flag: DataSourceFeatureFlag,
    repository: GlucoseRepository,
    audit_logger: AuditLogger,
    *,
    source_tag: str,
) -> None:
    """Register glucose source tools on the MCP server."""

    @mcp.tool
    async def glucose_source_status(ctx: Context) -> str:
        """Report whether the glucose source is enabled and listening, plus running totals."""
        status = controller.status()
        latest = repository.get_latest_reading(source_tag)
        status["source_tag"] = source_tag
        status["readings_stored"] = repository.count_readings(source_tag)
        status["latest_reading"] = latest.to_dict() if latest else None
        audit_logger.log_tool_call("glucose_source_status")
        return json.dumps(status)

    @mcp.tool
    async def enable_glucose_source(ctx: Context) -> str:
        """Enable the glucose source and start listening for new readings."""
        flag.set_enabled(True)
        try:
            running = await controller.on_enable()
        except Exception as exc:
            logger.error("Could not start glucose listener: %s", exc)
            audit_logger.log_tool_call(
                "enable_glucose_source", status="failure", error_type=type(exc).__name__
            )
            return json.dumps({
                "status": "error",
                "enabled": True,
                "message": f"Listener failed to start: {exc}",
            })
        audit_logger.log_tool_call("enable_glucose_source")
        return json.dumps({
            "status": "enabled",
            "running": running,
            "state": controller.status()["state"],
        })

    @mcp.tool
    async def disable_glucose_source(ctx: Context) -> str:
        """Disable the glucose source and close the live subscription."""
        flag.set_enabled(False)
        await controller.on_disable()
        audit_logger.log_tool_call("disable_glucose_source")
        return json.dumps({
            "status": "disabled",
            "running": controller.is_running,
            "state": controller.status()["state"],
        })

    @mcp.tool
    async def recent_glucose_readings(
        ctx: Context,
        minutes: int = 180,
        limit: int = 100,
    ) -> str:
        """Return stored glucose readings from the last N minutes, newest first.

        Args:
            minutes: Look-back window in minutes (default: 180).
            limit: Maximum readings to return (default: 100, max 1000).
        """
        if minutes < 1:
            return json.dumps({"status": "error", "message": "minutes must be at least 1."})
        limit = max(1, min(limit, MAX_READINGS))
        since_ms = int(time.time() * 1000) - minutes * 60_000
        readings = repository.get_readings(since_ms=since_ms, source_tag=source_tag, limit=limit)
        audit_logger.log_tool_call("recent_glucose_readings", {"minutes": minutes, "limit": limit})
        return json.dumps({
            "status": "ok",
            "count": len(readings),
            "readings": [r.to_dict() for r in readings],
        })

    @mcp.tool
    async def purge_old_glucose_readings(
        ctx: Context,
        older_than_days: int = 90,
    ) -> str:
        """Delete stored glucose readings older than a number of days.

        Args:
            older_than_days: Delete readings older than this many days (default: 90).
        """
        if older_than_days < 1:
            return json.dumps({
                "status": "error",
                "message": "older_than_days must be at least 1.",
            })

        start_time = time.monotonic()
        count = repository.purge_before_days(older_than_days)
        elapsed_ms = (time.monotonic() - start_time) * 1000

        if count > 0:
            audit_logger.log_data_delete(tool_name="purge_old_glucose_readings", count=count)

        return json.dumps({
            "status": "purged",
            "readings_deleted": count,
            "older_than_days": older_than_days,
            "duration_ms": round(elapsed_ms, 1),
        })

    @mcp.tool
    async def ingestion_audit_summary(
        ctx: Context,
        since: str = "",
        recent: int = 20,
    ) -> str:
        """Summarise the ingestion audit trail.

        The trail holds no glucose values or document ids, only hashed
        references, counts and error types.

        Args:
            since: ISO 8601 lower bound (optional).
            recent: Number of most recent events to include (default: 20).
        """
        recent = max(0, min(recent, 200))
        summary = audit_logger.summary(since=since or None)
        summary["recent_events"] = (
            audit_logger.get_events(since=since or None, limit=recent) if recent else []
        )
        summary["status"] = "ok"
        return json.dumps(summary, default=str)
