"""
Station Catalog Blueprint.

Endpoints:
    GET  /api/v1/stations          list (``?active_only=1``)
    POST /api/v1/stations          create (returns the existing station when the name is taken)
    GET  /api/v1/stations/<id>     detail
"""

from flask import Blueprint, jsonify, request

from shopfloor.services import station_catalog

station_bp = Blueprint("station", __name__, url_prefix="/api/v1/stations")


@station_bp.route("", methods=["GET"])
def list_stations():
    active_only = request.args.get("active_only", "").lower() in ("1", "true", "yes")
    items = station_catalog.list_stations(active_only=active_only)
    return jsonify({"items": [s.to_dict() for s in items], "total": len(items)})


@station_bp.route("", methods=["POST"])
def create_station():
    data = request.get_json(silent=True) or {}
    station, existed = station_catalog.create_station(data)
    body = {"station": station.to_dict(), "existed": existed}
    return jsonify(body), 200 if existed else 201


@station_bp.route("/<int:station_id>", methods=["GET"])
def get_station(station_id):
    return jsonify(station_catalog.get_station(station_id).to_dict())
