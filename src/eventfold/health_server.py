"""
Health check HTTP server for liveness and readiness probes.

Reports database reachability, per-log consumer lag and unresolved gaps.
"""

import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, jsonify

from eventfold.kernel.logging import get_logger

logger = get_logger(__name__)

app = Flask(__name__)

# Set by initialize_health_server()
_db_path: Path | None = None
_pipeline: Any = None


def initialize_health_server(db_path: str | Path, pipeline: Any = None) -> None:
    """
    Initialize the health server with a database path and pipeline.

    Args:
        db_path: Path to SQLite database
        pipeline: Optional Pipeline for lag and gap reporting
    """
    global _db_path, _pipeline
    _db_path = Path(db_path)
    _pipeline = pipeline
    logger.info("Health server initialized", db_path=str(_db_path))


def _not_ready(reason: str, status: int = 503, **extra: Any) -> tuple[Any, int]:
    return jsonify({"status": "not_ready", "reason": reason, **extra}), status


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """Liveness probe - the process is running."""
    return jsonify({"status": "alive", "service": "eventfold"}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness probe - the database is reachable and initialized.

    Returns:
        200 when ready, 503 otherwise
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return _not_ready("database_path_not_initialized")

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return _not_ready("database_file_not_found", db_path=str(_db_path))

    try:
        conn = sqlite3.connect(str(_db_path), timeout=1.0)
        try:
            entry_count = conn.execute("SELECT COUNT(*) FROM log_entries").fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return _not_ready("database_operational_error", error=str(e))

    logger.debug("Readiness check passed", entry_count=entry_count)
    return jsonify({"status": "ready", "database": "accessible", "entry_count": entry_count}), 200


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """
    Detailed health - database, lag and unresolved gaps.

    Any unresolved gap degrades the service: affected entities have halted.
    """
    health_data: dict[str, Any] = {"status": "healthy", "service": "eventfold"}

    if _db_path and _db_path.exists():
        try:
            conn = sqlite3.connect(str(_db_path), timeout=1.0)
            try:
                page_count = conn.execute("PRAGMA page_count").fetchone()[0]
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            finally:
                conn.close()
            health_data["database"] = {
                "status": "healthy",
                "path": str(_db_path),
                "size_mb": round(page_count * page_size / (1024 * 1024), 2),
            }
        except sqlite3.Error as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    if _pipeline is not None and health_data["status"] == "healthy":
        status = _pipeline.status()
        health_data["pipeline"] = status
        if status["unresolved_gaps"]:
            health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(host: str = "127.0.0.1", port: int = 8080, debug: bool = False) -> None:
    """Run the health check server (blocking)."""
    logger.info("Starting health check server", host=host, port=port)
    app.run(host=host, port=port, debug=debug)
