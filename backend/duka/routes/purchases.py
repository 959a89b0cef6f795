# Overview: Flask API routes for purchase orders and receiving.

"""Purchase order API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor, require_role
from ..errors import DukaError
from ..services import purchase_service
from ..validation import optional_datetime_arg, page_params, pagination_dict, require_int, require_object


purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")

PURCHASE_WRITERS = ("admin", "manager", "inventory_clerk")


@purchases_bp.post("/")
@require_actor
@require_role(*PURCHASE_WRITERS)
def create_purchase_route():
    """
    Create a purchase order. Stock is not affected until items are received.

    Available to: admin, manager, inventory_clerk
    """
    try:
        purchase = purchase_service.create_purchase(g.actor.id, request.get_json(silent=True))
        return jsonify({"purchase": purchase.to_dict(include_items=True)}), 201
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create purchase")
        return jsonify({"error": "Internal server error"}), 500


@purchases_bp.get("/")
@require_actor
def list_purchases_route():
    try:
        page, limit = page_params(request.args)
        status = request.args.get("status")
        if status and status not in purchase_service.VALID_STATUSES:
            return jsonify({"error": f"Invalid status filter: {status}"}), 400

        purchases, total = purchase_service.list_purchases(
            status=status,
            supplier_id=require_int(request.args, "supplier_id", minimum=1, default=None),
            payment_status=request.args.get("payment_status"),
            start_date=optional_datetime_arg(request.args, "start_date"),
            end_date=optional_datetime_arg(request.args, "end_date"),
            limit=limit,
            offset=(page - 1) * limit,
        )
        return jsonify({
            "purchases": [purchase.to_dict() for purchase in purchases],
            "pagination": pagination_dict(page, limit, total),
        }), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code


@purchases_bp.get("/<int:purchase_id>")
@require_actor
def get_purchase_route(purchase_id: int):
    try:
        purchase = purchase_service.get_purchase(purchase_id)
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    return jsonify({"purchase": purchase.to_dict(include_items=True)}), 200


@purchases_bp.patch("/<int:purchase_id>")
@require_actor
@require_role(*PURCHASE_WRITERS)
def update_purchase_route(purchase_id: int):
    """Edit expected_date / notes on an open purchase."""
    try:
        purchase = purchase_service.update_purchase(purchase_id, request.get_json(silent=True))
        return jsonify({"purchase": purchase.to_dict(include_items=True)}), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update purchase")
        return jsonify({"error": "Internal server error"}), 500


@purchases_bp.patch("/<int:purchase_id>/status")
@require_actor
@require_role(*PURCHASE_WRITERS)
def update_purchase_status_route(purchase_id: int):
    try:
        data = require_object(request.get_json(silent=True))
        status = data.get("status")
        if not status:
            return jsonify({"error": "status required"}), 400

        purchase = purchase_service.update_purchase_status(purchase_id, status, g.actor.id)
        return jsonify({"purchase": purchase.to_dict(include_items=True)}), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update purchase status")
        return jsonify({"error": "Internal server error"}), 500


@purchases_bp.post("/<int:purchase_id>/receive")
@require_actor
@require_role(*PURCHASE_WRITERS)
def receive_items_route(purchase_id: int):
    """
    Receive items against a purchase.

    Body: {"items": [{"purchase_item_id": 1, "quantity_received": 5}, ...]}
    """
    try:
        data = require_object(request.get_json(silent=True))
        purchase = purchase_service.receive_items(purchase_id, g.actor.id, data.get("items"))
        return jsonify({"purchase": purchase.to_dict(include_items=True)}), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive purchase items")
        return jsonify({"error": "Internal server error"}), 500
