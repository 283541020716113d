import logging

from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse
from django.utils import timezone

from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

logger = logging.getLogger(__name__)


def healthz(_request):
    return JsonResponse({"ok": True})


def _database_ok() -> bool:
    with connection.cursor() as cur:
        cur.execute("SELECT 1")
        return cur.fetchone() == (1,)


def _cache_ok() -> bool:
    cache.set("core:health", "1", timeout=10)
    return cache.get("core:health") == "1"


def _worker_ok() -> bool:
    from .tasks import ping

    return ping.delay().get(timeout=5) == "pong"


COMPONENT_CHECKS = {
    "db": _database_ok,
    "cache": _cache_ok,
    "celery": _worker_ok,
}


class DeepHealthView(APIView):
    """
    GET /api/v1/core/deep-health/?db=1&cache=1&celery=1

    Runs the requested component checks. Anonymous callers only learn
    whether each component is up; failure details go to the log.
    """
    permission_classes = [AllowAny]

    def get(self, request):
        body = {"ok": True, "time": timezone.now().isoformat()}
        for name, check in COMPONENT_CHECKS.items():
            if request.query_params.get(name) != "1":
                continue
            try:
                healthy = bool(check())
            except Exception:
                logger.warning("Health check %s raised", name, exc_info=True)
                healthy = False
            if not healthy:
                body["ok"] = False
            body[name] = {"ok": healthy}

        code = status.HTTP_200_OK if body["ok"] else status.HTTP_503_SERVICE_UNAVAILABLE
        return Response(body, status=code)
