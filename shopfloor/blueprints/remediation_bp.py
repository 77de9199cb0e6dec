"""
Remediation (Rework) Blueprint.

Endpoints:
    POST /api/v1/rework                        create from an inspection result
    GET  /api/v1/rework/pending                awaiting approval, newest first
    GET  /api/v1/rework/<id>                   detail with roadmap and progress
    POST /api/v1/rework/<id>/approve           admin; synthesizes the child order
    POST /api/v1/rework/<id>/reject            admin; body: reason
    POST /api/v1/rework/<id>/merge-approve     admin; folds units back into the parent
"""

from flask import Blueprint, jsonify, request

from shopfloor.core.exceptions import ValidationError
from shopfloor.services import remediation_service
from shopfloor.utils.helpers import caller_from

remediation_bp = Blueprint("remediation", __name__, url_prefix="/api/v1/rework")


@remediation_bp.route("", methods=["POST"])
def create_remediation():
    data = request.get_json(silent=True) or {}
    if not data.get("order_no"):
        raise ValidationError("order_no is required")
    result = remediation_service.create_remediation(
        data["order_no"],
        inspection_ref=data.get("inspection_ref"),
        pass_qty=data.get("pass_qty", 0),
        fail_qty=data.get("fail_qty", 0),
        requester_id=caller_from(data, "requester_id", "caller_id"),
        severity=data.get("severity"),
        failed_task_ref=data.get("failed_task_ref"),
        failed_station_id=data.get("failed_station_id"),
        roadmap=data.get("roadmap"),
        reason=data.get("reason"),
        notes=data.get("notes"),
    )
    return jsonify(result), 201


@remediation_bp.route("/pending", methods=["GET"])
def list_pending():
    items = remediation_service.list_pending()
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})


@remediation_bp.route("/<int:remediation_id>", methods=["GET"])
def get_remediation(remediation_id):
    ro = remediation_service.get_remediation(remediation_id)
    result = ro.to_dict()
    result["progress"] = remediation_service.get_progress(remediation_id)
    return jsonify(result)


@remediation_bp.route("/<int:remediation_id>/approve", methods=["POST"])
def approve(remediation_id):
    data = request.get_json(silent=True) or {}
    approver = caller_from(data, "approver_id", "caller_id")
    return jsonify(remediation_service.approve_remediation(remediation_id, approver))


@remediation_bp.route("/<int:remediation_id>/reject", methods=["POST"])
def reject(remediation_id):
    data = request.get_json(silent=True) or {}
    approver = caller_from(data, "approver_id", "caller_id")
    return jsonify(remediation_service.reject_remediation(remediation_id, approver, data.get("reason")))


@remediation_bp.route("/<int:remediation_id>/merge-approve", methods=["POST"])
def merge_approve(remediation_id):
    data = request.get_json(silent=True) or {}
    approver = caller_from(data, "approver_id", "caller_id")
    return jsonify(remediation_service.merge_approve_remediation(remediation_id, approver))
