# Overview: Flask API routes for sales; parses input and returns JSON responses.

"""Sales API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor, require_role
from ..errors import DukaError
from ..services import sales_service
from ..validation import optional_datetime_arg, page_params, pagination_dict, require_int, require_object


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@require_actor
def create_sale_route():
    """
    Create a sale: validates the cart, allocates SAL-YYYYMMDD-NNNN, stores
    the lines and takes stock, all or nothing.

    Available to: any authenticated actor
    """
    try:
        sale = sales_service.create_sale(g.actor.id, request.get_json(silent=True))
        return jsonify({"sale": sale.to_dict(include_items=True)}), 201
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
@require_actor
def list_sales_route():
    try:
        page, limit = page_params(request.args)
        status = request.args.get("status")
        if status and status not in sales_service.VALID_STATUSES:
            return jsonify({"error": f"Invalid status filter: {status}"}), 400

        sales, total = sales_service.list_sales(
            status=status,
            customer_id=require_int(request.args, "customer_id", minimum=1, default=None),
            cashier_id=require_int(request.args, "cashier_id", minimum=1, default=None),
            payment_method=request.args.get("payment_method"),
            start_date=optional_datetime_arg(request.args, "start_date"),
            end_date=optional_datetime_arg(request.args, "end_date"),
            limit=limit,
            offset=(page - 1) * limit,
        )
        return jsonify({
            "sales": [sale.to_dict() for sale in sales],
            "pagination": pagination_dict(page, limit, total),
        }), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    return jsonify({"sale": sale.to_dict(include_items=True)}), 200


@sales_bp.patch("/<int:sale_id>/status")
@require_actor
@require_role("admin", "manager", "cashier")
def update_sale_status_route(sale_id: int):
    """
    Move a sale to a new status.

    Available to: admin, manager, cashier
    """
    try:
        data = require_object(request.get_json(silent=True))
        status = data.get("status")
        if not status:
            return jsonify({"error": "status required"}), 400

        sale = sales_service.update_sale_status(sale_id, status, g.actor.id)
        return jsonify({"sale": sale.to_dict(include_items=True)}), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update sale status")
        return jsonify({"error": "Internal server error"}), 500
