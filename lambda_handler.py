"""
AWS Lambda handler for the Marketplace Monetization Engine.

This is the production entry point for scheduled billing runs and the
API Gateway surface. For local development, use main.py (Flask app) instead.
"""

import base64
import json
import logging
import os

from monetization import MonetizationEngine
from monetization import output
from monetization.errors import AuthorizationError, MonetizationError, ValidationError

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Environment (dev, staging, prod)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "dev")

# Initialize engine (reused across warm invocations)
engine = MonetizationEngine.from_env()

# CORS headers for API Gateway
CORS_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,Authorization,X-User-Id",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}


def _response(status_code, body):
    return {"statusCode": status_code, "headers": CORS_HEADERS, "body": json.dumps(body)}


def lambda_handler(event, context):
    """
    Main Lambda entry point.

    Handles:
    - Scheduled events (EventBridge) carrying {taskType, executeNow}
    - GET /health
    - GET /api
    - GET|POST /billing/automation
    - OPTIONS (CORS preflight)
    """
    # Scheduled trigger: the event itself is the task request
    if "taskType" in event:
        return handle_scheduled(event)

    # Handle CORS preflight
    http_method = event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method", "")
    if http_method == "OPTIONS":
        return {"statusCode": 200, "headers": CORS_HEADERS, "body": ""}

    # Get path (supports both REST API and HTTP API formats)
    path = event.get("path") or event.get("rawPath", "")

    # Route to appropriate handler
    if path == "/health" and http_method == "GET":
        return handle_health()
    elif path == "/api" and http_method == "GET":
        return handle_api_info()
    elif path == "/billing/automation" and http_method == "POST":
        return handle_billing_task(event)
    elif path == "/billing/automation" and http_method == "GET":
        return handle_billing_status(event)
    else:
        return _response(404, {"error": "Not found", "path": path})


def handle_health():
    """Health check endpoint."""
    return _response(200, {"status": "healthy", "environment": ENVIRONMENT})


def handle_api_info():
    """API information endpoint."""
    return _response(200, {
        "status": "ok",
        "message": "Marketplace Monetization Engine API",
        "version": "1.0",
        "environment": ENVIRONMENT,
        "runtime": "AWS Lambda",
        "endpoints": {"billing_automation": "/billing/automation [GET, POST]", "health": "/health [GET]"},
    })


def handle_scheduled(event):
    """Run a billing task from a scheduled trigger. Returns the report itself."""
    try:
        task_type, execute_now = engine.validator.task_request(event)
    except ValidationError as e:
        logger.error(f"Invalid scheduled event: {e.message}")
        return {"success": False, **e.to_dict()}

    logger.info(f"Scheduled billing task: {task_type.value}")
    report = engine.scheduler.run(task_type, execute_now=execute_now)
    return {"success": True, "results": output.report_to_dict(report)}


def _user_id(event):
    headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}
    user_id = headers.get("x-user-id")
    if not user_id:
        raise AuthorizationError("Authentication required")
    return user_id


def _parse_body(event):
    body = event.get("body", "")
    if isinstance(body, str):
        if not body:
            raise ValidationError("No input data provided")
        # Handle base64 encoded body (API Gateway)
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode("utf-8")
        return json.loads(body)
    return body


def handle_billing_task(event):
    """Trigger a billing task through API Gateway (admin)."""
    try:
        user_id = _user_id(event)
        user = engine.store.require("accounts", user_id, "User")
        if not user.is_admin:
            raise AuthorizationError("Admin access required")

        task_type, execute_now = engine.validator.task_request(_parse_body(event))
        logger.info(f"Billing task {task_type.value} triggered by {user_id}")
        report = engine.scheduler.run(task_type, execute_now=execute_now)
        return _response(200, {"success": True, "results": output.report_to_dict(report)})

    except json.JSONDecodeError as e:
        logger.error(f"JSON parse error: {str(e)}")
        return _response(400, {"error": f"Invalid JSON: {str(e)}", "status": "failed"})

    except MonetizationError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return _response(e.status_code, e.to_dict())

    except Exception as e:
        # Unexpected errors - log details but return generic message to avoid information disclosure
        logger.error(f"Unexpected billing error: {str(e)}", exc_info=True)
        return _response(500, {"error": "An unexpected error occurred during processing", "status": "failed"})


def handle_billing_status(event):
    """Billing snapshot for the caller; upcoming task counts for admins."""
    try:
        user_id = _user_id(event)
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
            body["upcomingTasks"] = {
                name: {"count": info["count"], "nextRun": output.iso(info["nextRun"])}
                for name, info in engine.scheduler.upcoming_tasks().items()
            }
        return _response(200, body)

    except MonetizationError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return _response(e.status_code, e.to_dict())
