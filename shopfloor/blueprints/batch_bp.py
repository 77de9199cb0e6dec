"""
Batch Blueprint.

Endpoints:
    GET  /api/v1/batches/<id>                           detail
    PUT  /api/v1/batches/<id>/status                    body: status, current_station_id
    POST /api/v1/batches/merge-request                  body: order_no, source_batch_ids, target_station_id
    POST /api/v1/batches/merge-request/<id>/approve     admin
    POST /api/v1/batches/merge-request/<id>/reject      admin; body: reason
"""

from flask import Blueprint, jsonify, request

from shopfloor.core.exceptions import ValidationError
from shopfloor.services import batch_service
from shopfloor.utils.helpers import caller_from

batch_bp = Blueprint("batch", __name__, url_prefix="/api/v1/batches")


@batch_bp.route("/<int:batch_id>", methods=["GET"])
def get_batch(batch_id):
    return jsonify(batch_service.get_batch(batch_id).to_dict())


@batch_bp.route("/<int:batch_id>/status", methods=["PUT"])
def update_status(batch_id):
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        raise ValidationError("status is required")
    batch = batch_service.update_batch_status(batch_id, data["status"], data.get("current_station_id"))
    return jsonify(batch.to_dict())


@batch_bp.route("/merge-request", methods=["POST"])
def request_merge():
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("order_no", "source_batch_ids", "target_station_id") if not data.get(k)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    try:
        target_station_id = int(data["target_station_id"])
    except (TypeError, ValueError):
        raise ValidationError("target_station_id must be an integer")
    mr = batch_service.request_merge(
        data["order_no"],
        data["source_batch_ids"],
        target_station_id,
        caller_from(data, "requester_id", "caller_id"),
        notes=data.get("notes"),
    )
    return jsonify({"merge_request_id": mr.id, "merge_request": mr.to_dict()}), 201


@batch_bp.route("/merge-request/<int:merge_request_id>/approve", methods=["POST"])
def approve_merge(merge_request_id):
    data = request.get_json(silent=True) or {}
    approver = caller_from(data, "approver_id", "caller_id")
    return jsonify(batch_service.approve_merge(merge_request_id, approver, data.get("notes")))


@batch_bp.route("/merge-request/<int:merge_request_id>/reject", methods=["POST"])
def reject_merge(merge_request_id):
    data = request.get_json(silent=True) or {}
    approver = caller_from(data, "approver_id", "caller_id")
    mr = batch_service.reject_merge(merge_request_id, approver, data.get("reason"))
    return jsonify(mr.to_dict())
