from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db.models import ProtectedError
from rest_framework import status
from rest_framework.exceptions import APIException, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


# -----------------------------
# Billing error taxonomy
# -----------------------------
class BillingError(APIException):
    """
    Base for every error the billing core raises on purpose.

    Rendered as `{"error": <message>, "field"?: <name>, ...extra}` by
    `api_exception_handler`, so views can simply let these propagate.
    """
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"
    default_code = "billing_error"

    def __init__(self, detail: Optional[str] = None, *, field: Optional[str] = None, **extra: Any):
        super().__init__(detail=detail)
        self.field = field
        self.extra = extra

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": str(self.detail)}
        if self.field:
            body["field"] = self.field
        body.update(self.extra)
        return body


class InvalidRequest(BillingError):
    default_code = "invalid"


class IllegalTransition(BillingError):
    default_detail = "Status change not allowed"
    default_code = "illegal_transition"


class EntityNotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"
    default_code = "not_found"


class ActiveSubscriptionConflict(BillingError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"

    def __init__(self, existing_number: str):
        super().__init__(
            "Customer already has an active subscription",
            existing_subscription_number=existing_number,
        )
        self.existing_number = existing_number


# -----------------------------
# DRF handler
# -----------------------------
def _first_message(errors: Any, prefix: str = "") -> str:
    if isinstance(errors, dict):
        for key, value in errors.items():
            label = "" if key == "non_field_errors" else key
            return _first_message(value, label or prefix)
        return "Invalid input"
    if isinstance(errors, (list, tuple)):
        return _first_message(errors[0], prefix) if errors else "Invalid input"
    return f"{prefix}: {errors}" if prefix else str(errors)


def api_exception_handler(exc, context):
    """
    Every error body is `{"error": "..."}`. Unexpected exceptions become a
    generic 500 and are logged with their traceback, never echoed back.
    """
    if isinstance(exc, BillingError):
        return Response(exc.payload(), status=exc.status_code)

    if isinstance(exc, ProtectedError):
        return Response(
            {"error": "Record is referenced by billing history and cannot be deleted"},
            status=status.HTTP_409_CONFLICT,
        )

    response = exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.error(
            "Unhandled error in %s",
            view.__class__.__name__ if view is not None else "view",
            exc_info=exc,
        )
        return Response({"error": "Internal server error"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if isinstance(exc, ValidationError):
        fields = response.data if isinstance(response.data, dict) else {"non_field_errors": response.data}
        response.data = {"error": _first_message(fields), "fields": fields}
    elif isinstance(response.data, dict) and "detail" in response.data:
        response.data = {"error": str(response.data["detail"])}
    return response
