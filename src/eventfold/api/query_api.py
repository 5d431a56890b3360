"""
Query REST API

Read-only access to the read store:

    GET /<base>        -> live entries of a resource type
    GET /<base>/<id>   -> one live entry (404 when missing or deleted)

Never touches the command or event log.
"""

from typing import Any

from flask import Flask, jsonify

from eventfold.kernel.errors import EntryNotFound, SchemaNotFound
from eventfold.kernel.read_store import ReadStoreEntry
from eventfold.pipeline import Pipeline

UNSUPPORTED = "Unsupported method or URL pattern"


def entry_to_json(entry: ReadStoreEntry) -> dict[str, Any]:
    return {
        "resourceType": entry.resource_type,
        "resourceId": entry.resource_id,
        "version": entry.version,
        "state": entry.state,
    }


def create_query_app(pipeline: Pipeline) -> Flask:
    """Build the query API for a pipeline"""
    app = Flask(__name__)

    @app.route("/<base>", methods=["GET"])
    @app.route("/<base>/", methods=["GET"])
    def list_resources(base: str) -> tuple[Any, int]:
        try:
            entries = pipeline.list(base)
        except SchemaNotFound:
            return UNSUPPORTED, 400
        return jsonify([entry_to_json(entry) for entry in entries]), 200

    @app.route("/<base>/<resource_id>", methods=["GET"])
    @app.route("/<base>/<resource_id>/", methods=["GET"])
    def get_resource(base: str, resource_id: str) -> tuple[Any, int]:
        try:
            entry = pipeline.get(base, resource_id)
        except SchemaNotFound:
            return UNSUPPORTED, 400
        except EntryNotFound as e:
            return str(e), 404
        if entry.deleted:
            return f"{base} {resource_id} was deleted", 404
        return jsonify(entry_to_json(entry)), 200

    @app.errorhandler(404)
    @app.errorhandler(405)
    def unsupported(error: Exception) -> tuple[str, int]:
        return UNSUPPORTED, 400

    return app
