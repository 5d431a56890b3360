"""
Command REST API

Translates REST requests into commands on the command log:

    POST   /<base>        -> create<Name>
    PUT    /<base>/<id>   -> update<Name>
    DELETE /<base>/<id>   -> delete<Name>

Bodies are checked against the schema before logging so malformed
requests fail fast with 400. Acceptance is asynchronous: 202 means the
command is durably logged, not that it was accepted by the validator.
"""

from typing import Any

from flask import Flask, jsonify, request

from eventfold.kernel.errors import SchemaInvalid, SchemaNotFound
from eventfold.kernel.logging import get_logger
from eventfold.pipeline import Pipeline

logger = get_logger(__name__)

UNSUPPORTED = "Unsupported method or URL pattern"


def _read_body(allow_empty: bool) -> dict[str, Any]:
    if not request.get_data():
        if allow_empty:
            return {}
        raise SchemaInvalid("Request body is required")
    body = request.get_json(force=True, silent=True)
    if not isinstance(body, dict):
        raise SchemaInvalid("Request body must be a JSON object")
    return body


def create_command_app(pipeline: Pipeline) -> Flask:
    """
    Build the command API for a pipeline

    Args:
        pipeline: Pipeline whose gateway receives the commands

    Returns:
        Flask application
    """
    app = Flask(__name__)

    def _handle(verb: str, base: str, resource_id: str | None) -> tuple[Any, int]:
        try:
            content_type = pipeline.schemas.content_type(base)
        except SchemaNotFound:
            return UNSUPPORTED, 400

        try:
            body = _read_body(allow_empty=verb == "delete")
            pipeline.schemas.check_body(base, body, verb)
        except SchemaInvalid as e:
            logger.info("Command request refused", verb=verb, resource_type=base, reason=e.reason)
            return e.reason, 400

        command = pipeline.submit(
            verb + content_type.name,
            body,
            resource_id=resource_id,
            user=request.headers.get("X-User"),
        )
        return (
            jsonify(
                {
                    "commandId": command.id,
                    "commandType": command.type,
                    "resourceId": command.target_id,
                }
            ),
            202,
        )

    @app.route("/<base>", methods=["POST"])
    @app.route("/<base>/", methods=["POST"])
    def create_resource(base: str) -> tuple[Any, int]:
        return _handle("create", base, None)

    @app.route("/<base>/<resource_id>", methods=["PUT"])
    @app.route("/<base>/<resource_id>/", methods=["PUT"])
    def update_resource(base: str, resource_id: str) -> tuple[Any, int]:
        return _handle("update", base, resource_id)

    @app.route("/<base>/<resource_id>", methods=["DELETE"])
    @app.route("/<base>/<resource_id>/", methods=["DELETE"])
    def delete_resource(base: str, resource_id: str) -> tuple[Any, int]:
        return _handle("delete", base, resource_id)

    @app.errorhandler(404)
    @app.errorhandler(405)
    def unsupported(error: Exception) -> tuple[str, int]:
        return UNSUPPORTED, 400

    return app
