from flask import Flask, request, jsonify
from werkzeug.exceptions import HTTPException
from flask_cors import CORS
from monetization import MonetizationEngine
from monetization.errors import AuthorizationError, MonetizationError, ValidationError
from monetization import output
import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(engine: MonetizationEngine = None) -> Flask:
    """Build the Flask app around a monetization engine."""
    app = Flask(__name__)

    # Enable CORS for all routes
    CORS(app)

    engine = engine or MonetizationEngine.from_env()
    validator = engine.validator

    def current_user_id() -> str:
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            raise AuthorizationError("Authentication required")
        return user_id

    def require_admin(user_id: str) -> None:
        user = engine.store.require("accounts", user_id, "User")
        if not user.is_admin:
            raise AuthorizationError("Admin access required")

    def json_body() -> dict:
        data = request.get_json(force=True, silent=True)
        if not data:
            raise ValidationError("No input data provided")
        return data

    @app.errorhandler(MonetizationError)
    def handle_engine_error(e):
        logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description, "status": "failed"}), e.code
        logger.error(f"Unexpected error: {str(e)}", exc_info=True)
        return jsonify({"error": "An unexpected error occurred", "status": "failed"}), 500

    @app.route("/api", methods=["GET"])
    def api_info():
        """API information endpoint"""
        return jsonify({
            "status": "ok",
            "message": "Marketplace Monetization Engine API",
            "version": "1.0",
            "endpoints": {
                "billing_automation": "/billing/automation [GET, POST]",
                "leads": "/leads [GET, POST, PUT]",
                "lead": "/leads/<id> [GET, PUT]",
                "commission": "/commission [GET, POST, PUT]",
                "payouts": "/payouts [GET, POST]",
                "health": "/health [GET]"
            }
        }), 200

    @app.route("/health", methods=["GET"])
    def health():
        """Health check for monitoring"""
        return jsonify({"status": "healthy"}), 200

    # -------------------------------------------------------------------------
    # Billing automation
    # -------------------------------------------------------------------------

    @app.route("/billing/automation", methods=["POST"])
    def run_billing_task():
        """Trigger a billing task (admin)"""
        user_id = current_user_id()
        require_admin(user_id)
        task_type, execute_now = validator.task_request(json_body())

        logger.info(f"Billing task {task_type.value} triggered by {user_id}")
        report = engine.scheduler.run(task_type, execute_now=execute_now)
        return jsonify({"success": True, "results": output.report_to_dict(report)}), 200

    @app.route("/billing/automation", methods=["GET"])
    def billing_status():
        """Billing snapshot for the caller, plus upcoming tasks for admins"""
        user_id = current_user_id()
        user = engine.store.require("accounts", user_id, "User")
        snapshot = engine.scheduler.billing_snapshot(user_id)

        body = {
            "userBilling": {
                "pendingCommissions": [output.commission_to_dict(c) for c in snapshot["pendingCommissions"]],
                "subscription": output.subscription_to_dict(snapshot["subscription"]),
                "creditBalance": snapshot["creditBalance"],
                "needsCreditTopup": snapshot["needsCreditTopup"],
            }
        }
        if user.is_admin:
            upcoming = engine.scheduler.upcoming_tasks()
            body["upcomingTasks"] = {
                name: {"count": info["count"], "nextRun": output.iso(info["nextRun"])}
                for name, info in upcoming.items()
            }
            body["billingConfig"] = engine.config.to_dict()
        return jsonify(body), 200

    # -------------------------------------------------------------------------
    # Leads
    # -------------------------------------------------------------------------

    @app.route("/leads", methods=["POST"])
    def create_lead():
        """Create a lead from a buyer inquiry"""
        buyer_id = current_user_id()
        data = validator.lead_request(json_body())
        lead = engine.leads.create_lead(data["listing_id"], buyer_id, data["contact"], data["message"])
        return jsonify({
            "success": True,
            "lead": {"id": lead.id, "qualityScore": lead.quality_score, "price": lead.price},
        }), 201

    @app.route("/leads", methods=["GET"])
    def list_leads():
        """Seller's leads, contact details hidden until purchased"""
        seller_id = current_user_id()
        result = engine.leads.list_for_seller(seller_id, request.args.get("status"))
        return jsonify({
            "leads": [output.lead_to_dict(l, engine.leads.reveals_contact(l)) for l in result["leads"]],
            "credits": result["credits"],
        }), 200

    @app.route("/leads", methods=["PUT"])
    def purchase_lead():
        """Purchase a lead with credits or card"""
        seller_id = current_user_id()
        data = validator.purchase_request(json_body())
        lead = engine.leads.purchase(data["lead_id"], seller_id, data["use_credits"], data["payment_ref"])
        return jsonify({"success": True, "lead": output.lead_to_dict(lead, reveal_contact=True)}), 200

    @app.route("/leads/<lead_id>", methods=["GET"])
    def get_lead(lead_id):
        viewer_id = current_user_id()
        lead = engine.leads.view(lead_id, viewer_id)
        return jsonify({"lead": output.lead_to_dict(lead, engine.leads.reveals_contact(lead))}), 200

    @app.route("/leads/<lead_id>", methods=["PUT"])
    def update_lead(lead_id):
        """Advance a lead: contacted, converted, not_interested, invalid"""
        actor_id = current_user_id()
        data = validator.lead_action(json_body())
        lead = engine.leads.apply_action(lead_id, actor_id, data["action"], data["notes"])

        body = {"success": True, "lead": output.lead_to_dict(lead, reveal_contact=True)}
        if data["action"] == "converted":
            body["stats"] = engine.leads.conversion_stats(lead.seller_id)
        return jsonify(body), 200

    # -------------------------------------------------------------------------
    # Commissions
    # -------------------------------------------------------------------------

    @app.route("/commission", methods=["POST"])
    def mark_sold():
        """Mark a listing sold and create its commission"""
        seller_id = current_user_id()
        data = validator.sale_request(json_body())
        commission = engine.commissions.record_sale(
            data["listing_id"], seller_id, data["sold_price"], data["buyer_info"]
        )
        return jsonify({"success": True, "commission": output.commission_to_dict(commission)}), 201

    @app.route("/commission", methods=["GET"])
    def commission_summary():
        seller_id = current_user_id()
        summary = engine.commissions.summary(seller_id)
        return jsonify({
            "commissions": [output.commission_to_dict(c) for c in summary["commissions"]],
            "summary": {
                "totalOwed": summary["totalOwed"],
                "totalPaid": summary["totalPaid"],
                "overdueCount": summary["overdueCount"],
            },
            "ledger": output.ledger_to_dict(summary["seller"]),
        }), 200

    @app.route("/commission", methods=["PUT"])
    def update_commission():
        """Admin: mark paid, dispute or cancel a commission"""
        admin_id = current_user_id()
        data = validator.commission_action(json_body())
        commission = engine.commissions.apply_action(
            data["commission_id"], admin_id, data["action"], data["payment_ref"], data["notes"]
        )
        return jsonify({"success": True, "commission": output.commission_to_dict(commission)}), 200

    # -------------------------------------------------------------------------
    # Payouts
    # -------------------------------------------------------------------------

    @app.route("/payouts", methods=["POST"])
    def run_payouts():
        """Admin: settle due commissions"""
        admin_id = current_user_id()
        require_admin(admin_id)
        commission_ids = validator.payout_request(request.get_json(force=True, silent=True))
        run = engine.payouts.run(commission_ids)
        return jsonify({"success": True, **output.payout_run_to_dict(run)}), 200

    @app.route("/payouts", methods=["GET"])
    def pending_payouts():
        seller_id = current_user_id()
        pending = engine.payouts.pending_for(seller_id)
        summary = dict(pending["summary"])
        summary["nextPayoutDate"] = output.iso(summary["nextPayoutDate"])
        return jsonify({
            "pendingCommissions": [output.commission_to_dict(c) for c in pending["commissions"]],
            "summary": summary,
        }), 200

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=False)
