"""
Production Blueprint - step transitions on the shop floor.

Endpoints:
    POST /api/v1/production/<no>/update-flow    body: action=start|complete, station_id, step_order, caller_id
    POST /api/v1/production/<no>/reset          body: caller_id (top admin)
    GET  /api/v1/production/<no>/sessions       ``?technician_id=``
    GET  /api/v1/production/technicians/<id>/summary
"""

from flask import Blueprint, jsonify, request

from shopfloor.core.exceptions import ValidationError
from shopfloor.services import flow_service, routing_service, work_session_service
from shopfloor.utils.helpers import caller_from

production_bp = Blueprint("production", __name__, url_prefix="/api/v1/production")

_ACTIONS = {
    "start": flow_service.start_step,
    "complete": flow_service.complete_step,
}


@production_bp.route("/<order_no>/update-flow", methods=["POST"])
def update_flow(order_no):
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    if action not in _ACTIONS:
        raise ValidationError("action must be 'start' or 'complete'", details={"action": action})
    try:
        station_id = int(data["station_id"])
        step_order = int(data["step_order"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("station_id and step_order are required integers")

    result = _ACTIONS[action](order_no, station_id, step_order, caller_from(data))
    return jsonify(result)


@production_bp.route("/<order_no>/reset", methods=["POST"])
def reset(order_no):
    data = request.get_json(silent=True) or {}
    return jsonify(flow_service.reset_order(order_no, caller_from(data)))


@production_bp.route("/<order_no>/sessions", methods=["GET"])
def list_sessions(order_no):
    order = routing_service.get_order(order_no)
    technician_id = request.args.get("technician_id", type=int)
    items = work_session_service.list_sessions(order.id, technician_id)
    return jsonify({"items": [s.to_dict() for s in items], "total": len(items)})


@production_bp.route("/technicians/<int:technician_id>/summary", methods=["GET"])
def technician_summary(technician_id):
    return jsonify(work_session_service.technician_summary(technician_id))
