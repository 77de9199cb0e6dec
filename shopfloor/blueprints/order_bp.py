"""
Order Routing Blueprint.

Endpoints:
    POST   /api/v1/orders                       create
    GET    /api/v1/orders/<no>                  detail (with flow)
    DELETE /api/v1/orders/<no>                  delete (cascades to owned entities)
    PUT    /api/v1/orders/<no>/routing          (re)establish FlowSteps
    GET    /api/v1/orders/<no>/flow             ordered FlowSteps
    POST   /api/v1/orders/<no>/assignments      assign a technician to a step
    GET    /api/v1/orders/<no>/batches          batches of the order
    GET    /api/v1/orders/<no>/remediations     remediation orders raised on it
"""

from flask import Blueprint, jsonify, request

from shopfloor.core.exceptions import ValidationError
from shopfloor.services import batch_service, remediation_service, routing_service

order_bp = Blueprint("order", __name__, url_prefix="/api/v1/orders")


@order_bp.route("", methods=["POST"])
def create_order():
    data = request.get_json(silent=True) or {}
    order = routing_service.create_order(data)
    if data.get("stations"):
        routing_service.save_routing(order.order_no, data["stations"], data.get("caller_id"))
    return jsonify(order.to_dict(include_flow=True)), 201


@order_bp.route("/<order_no>", methods=["GET"])
def get_order(order_no):
    return jsonify(routing_service.get_order(order_no).to_dict(include_flow=True))


@order_bp.route("/<order_no>", methods=["DELETE"])
def delete_order(order_no):
    routing_service.delete_order(order_no)
    return jsonify({"message": f"Order {order_no} deleted"}), 200


@order_bp.route("/<order_no>/routing", methods=["PUT"])
def save_routing(order_no):
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get("stations"), list):
        raise ValidationError("stations must be a list")
    steps = routing_service.save_routing(order_no, data["stations"], data.get("caller_id"))
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)})


@order_bp.route("/<order_no>/flow", methods=["GET"])
def list_flow(order_no):
    steps = routing_service.list_flow(order_no)
    return jsonify({"items": [s.to_dict() for s in steps], "total": len(steps)})


@order_bp.route("/<order_no>/assignments", methods=["POST"])
def assign_technician(order_no):
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("station_id", "step_order", "technician_id") if data.get(k) is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    try:
        station_id = int(data["station_id"])
        step_order = int(data["step_order"])
        technician_id = int(data["technician_id"])
    except (TypeError, ValueError):
        raise ValidationError("station_id, step_order and technician_id must be integers")
    assignment = routing_service.assign_technician(
        order_no,
        station_id,
        step_order,
        technician_id,
        assigned_by=data.get("caller_id"),
        assignment_type=data.get("assignment_type", "primary"),
    )
    return jsonify(assignment.to_dict()), 201


@order_bp.route("/<order_no>/batches", methods=["GET"])
def list_batches(order_no):
    items = batch_service.list_batches(order_no)
    return jsonify({"items": [b.to_dict() for b in items], "total": len(items)})


@order_bp.route("/<order_no>/remediations", methods=["GET"])
def list_remediations(order_no):
    items = remediation_service.list_for_order(order_no)
    return jsonify({"items": [r.to_dict() for r in items], "total": len(items)})
