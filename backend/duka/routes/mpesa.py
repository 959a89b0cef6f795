# Overview: Flask API routes for M-Pesa STK push payments and the gateway callback.

"""M-Pesa API routes"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor, require_role
from ..errors import DukaError, ValidationError
from ..services import mpesa_service
from ..validation import optional_datetime_arg, page_params, pagination_dict, require_int


mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")


def _ack(result_code: int, description: str):
    # Daraja only checks the body; the status code is always 200
    return jsonify({"ResultCode": result_code, "ResultDesc": description}), 200


@mpesa_bp.post("/stkpush")
@require_actor
def stk_push_route():
    """
    Start an STK push payment.

    Body: {phone_number, amount, account_reference, transaction_desc, sale_id?}
    """
    try:
        txn = mpesa_service.initiate_stk_push(g.actor.id, request.get_json(silent=True))
        return jsonify({
            "message": "STK push initiated successfully",
            "transaction": txn.to_dict(),
        }), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to initiate STK push")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.post("/callback")
def callback_route():
    """Gateway callback. Unauthenticated; always acknowledged with HTTP 200."""
    try:
        mpesa_service.handle_callback(request.get_json(silent=True))
        return _ack(0, "Callback processed successfully")
    except ValidationError as e:
        current_app.logger.warning("Rejected M-Pesa callback: %s", e.message)
        return _ack(1, "Callback rejected")
    except Exception:
        current_app.logger.exception("M-Pesa callback processing failed")
        return _ack(1, "Callback processing failed")


@mpesa_bp.get("/query/<checkout_request_id>")
@require_actor
def query_route(checkout_request_id: str):
    try:
        txn = mpesa_service.query_status(checkout_request_id)
        return jsonify({"transaction": txn.to_dict()}), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to query STK push status")
        return jsonify({"error": "Internal server error"}), 500


@mpesa_bp.get("/transactions")
@require_actor
@require_role("admin", "manager", "accountant")
def list_transactions_route():
    try:
        page, limit = page_params(request.args)
        status = request.args.get("status")
        if status and status not in mpesa_service.TXN_STATUSES:
            return jsonify({"error": f"Invalid status filter: {status}"}), 400

        rows, total = mpesa_service.list_transactions(
            status=status,
            sale_id=require_int(request.args, "sale_id", minimum=1, default=None),
            phone_number=request.args.get("phone_number"),
            start_date=optional_datetime_arg(request.args, "start_date"),
            end_date=optional_datetime_arg(request.args, "end_date"),
            limit=limit,
            offset=(page - 1) * limit,
        )
        return jsonify({
            "transactions": [txn.to_dict() for txn in rows],
            "pagination": pagination_dict(page, limit, total),
        }), 200
    except DukaError as e:
        return jsonify(e.to_dict()), e.status_code
