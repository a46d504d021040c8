"""Flask HTTP surface for uploads, status polling, confirmation, trimming, and admin sweeps."""

from __future__ import annotations

import hmac
from typing import Any

from flask import Flask, Response, abort, jsonify, request

from closet_ingest.errors import (
    InvalidTransitionError,
    ItemNotFoundError,
    StagingObjectMissingError,
    TrimError,
    UploadRejectedError,
)
from closet_ingest.metadata import MetadataExtractor
from closet_ingest.object_store import content_type_for
from closet_ingest.runtime import Runtime, build_runtime
from closet_ingest.trimmer import TRIM_OUTPUT_CONTENT_TYPE, trim_image
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "webui"})

RUNTIME_CONFIG_KEY = "CLOSET_INGEST_RUNTIME"

app = Flask(__name__)


def _runtime() -> Runtime:
    runtime = app.config.get(RUNTIME_CONFIG_KEY)
    if runtime is None:
        runtime = build_runtime()
        app.config[RUNTIME_CONFIG_KEY] = runtime
    return runtime


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _error(message: str, status: int) -> tuple[Response, int]:
    return jsonify({"error": message}), status


@app.errorhandler(ItemNotFoundError)
def _handle_not_found(exc: ItemNotFoundError) -> tuple[Response, int]:
    return _error(str(exc), 404)


@app.errorhandler(StagingObjectMissingError)
def _handle_staging_missing(exc: StagingObjectMissingError) -> tuple[Response, int]:
    LOGGER.error("staging_object_missing", extra={"key": exc.key})
    return _error(str(exc), 404)


@app.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(exc: InvalidTransitionError) -> tuple[Response, int]:
    return _error(str(exc), 409)


@app.errorhandler(UploadRejectedError)
def _handle_upload_rejected(exc: UploadRejectedError) -> tuple[Response, int]:
    return _error(str(exc), 400)


@app.errorhandler(ValueError)
def _handle_value_error(exc: ValueError) -> tuple[Response, int]:
    return _error(str(exc), 400)


@app.route("/health")
def health() -> Any:
    return jsonify({"status": "ok"})


@app.route("/api/uploads", methods=["POST"])
def upload_item() -> Any:
    """Stage an uploaded image and return its item id without waiting on processing."""

    image = request.files.get("image")
    owner_id = request.form.get("owner_id", "").strip()
    if image is None:
        return _error("No image provided", 400)

    runtime = _runtime()
    with runtime.repository() as repository:
        staged = runtime.stager(repository).stage(
            image.read(),
            owner_id,
            phash=request.form.get("phash") or None,
            content_type=image.mimetype,
        )
    return jsonify({"success": True, "item_id": staged.item_id, "status": "pending"}), 202


@app.route("/api/items/<item_id>/status")
def item_status(item_id: str) -> Any:
    runtime = _runtime()
    with runtime.repository() as repository:
        return jsonify(runtime.catalog(repository).get_item_status(item_id))


@app.route("/api/items")
def list_items() -> Any:
    owner_id = request.args.get("owner", "").strip()
    if not owner_id:
        return _error("owner is required", 400)

    runtime = _runtime()
    with runtime.repository() as repository:
        items = runtime.catalog(repository).list_completed_items(owner_id)
    return jsonify({"items": items, "count": len(items)})


@app.route("/api/items/<item_id>/confirm", methods=["POST"])
def confirm_item(item_id: str) -> Any:
    """Promote a processed item; remaining body fields are user edits applied on save."""

    body = _json_body()
    owner_id = str(body.pop("owner_id", "") or "").strip()
    if not owner_id:
        return _error("owner_id is required", 400)

    runtime = _runtime()
    with runtime.repository() as repository:
        item = runtime.catalog(repository).confirm_item(item_id, owner_id, body)
    return jsonify({"success": True, "item": item})


@app.route("/api/check-duplicate", methods=["POST"])
def check_duplicate() -> Any:
    body = _json_body()
    owner_id = str(body.get("owner_id") or "").strip()
    phash = str(body.get("phash") or "").strip()
    if not owner_id or not phash:
        return _error("owner_id and phash are required", 400)

    runtime = _runtime()
    with runtime.repository() as repository:
        match = runtime.catalog(repository).check_duplicate(owner_id, phash)
    if match is None:
        return jsonify({"is_duplicate": False, "match": None})
    return jsonify({"is_duplicate": True, "match": match.to_dict()})


@app.route("/api/analyze", methods=["POST"])
def analyze_image() -> Any:
    """Run interactive metadata extraction; nothing is persisted."""

    image = request.files.get("image")
    if image is None:
        return _error("No image provided", 400)
    data = image.read()
    if not data:
        return _error("Image is empty", 400)

    runtime = _runtime()
    cfg = runtime.settings.inference
    extractor = MetadataExtractor(
        runtime.inference,
        cfg.model,
        attempts=cfg.interactive_attempts,
        retry_backoff=cfg.retry_backoff,
        fallback_description_chars=cfg.fallback_description_chars,
    )
    metadata = extractor.extract(data)
    return jsonify({"success": True, "metadata": metadata.to_dict()})


@app.route("/trim", methods=["POST"])
def trim() -> Any:
    """Trim compute unit: alpha-channel image in, cropped WebP out."""

    data = request.get_data()
    if not data:
        return _error("No image provided", 400)
    try:
        trimmed = trim_image(data, _runtime().settings.trim)
    except TrimError as exc:
        LOGGER.warning("trim_request_rejected", extra={"error": str(exc), "bytes": len(data)})
        return _error(str(exc), 400)
    return Response(trimmed, mimetype=TRIM_OUTPUT_CONTENT_TYPE)


@app.route("/images/<path:key>")
def serve_image(key: str) -> Any:
    try:
        data = _runtime().store.get(key)
    except ValueError:
        abort(404)
    if data is None:
        abort(404)
    response = Response(data, mimetype=content_type_for(key))
    response.headers["Cache-Control"] = "private, max-age=300"
    return response


def _require_admin() -> None:
    expected = _runtime().settings.admin.key
    provided = request.args.get("key") or request.headers.get("X-Admin-Key") or ""
    if not expected or not hmac.compare_digest(provided, expected):
        LOGGER.warning("admin_unauthorized", extra={"path": request.path})
        abort(401)


@app.route("/admin/cleanup", methods=["POST"])
def admin_cleanup() -> Any:
    _require_admin()
    runtime = _runtime()
    with runtime.repository() as repository:
        report = runtime.sweeper(repository).sweep()
    return jsonify({"success": True, "message": report.summary(), "report": report.to_dict()})


@app.route("/admin/cleanup-all", methods=["POST"])
def admin_cleanup_all() -> Any:
    _require_admin()
    runtime = _runtime()
    with runtime.repository() as repository:
        report = runtime.sweeper(repository).full_reset()
    return jsonify({"success": True, "message": report.summary(), "report": report.to_dict()})


@app.route("/admin/list")
def admin_list() -> Any:
    _require_admin()
    runtime = _runtime()
    storage = runtime.settings.storage
    staging = [obj.key for obj in runtime.store.list(storage.staging_prefix.rstrip("/") + "/")]
    permanent = [obj.key for obj in runtime.store.list(storage.permanent_prefix.rstrip("/") + "/")]
    return jsonify(
        {
            "staging": staging,
            "items": permanent,
            "counts": {"staging": len(staging), "items": len(permanent)},
        }
    )


__all__ = ["RUNTIME_CONFIG_KEY", "app"]
