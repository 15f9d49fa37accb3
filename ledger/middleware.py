import logging
import time

logger = logging.getLogger(__name__)

MAX_LOGGED_BODY = 1000


class BillingRequestLoggingMiddleware:
    """
    Logs each API request and its response with the caller identity and
    idempotency key, so a billing outcome can be traced back to the request
    that caused it. Bodies are only logged at DEBUG level, truncated.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        started = time.monotonic()
        user_id = request.headers.get("X-User-Id", "-")
        idempotency_key = request.headers.get("Idempotency-Key", "-")

        logger.info(
            "API Request: method=%s path=%s user=%s idempotency_key=%s",
            request.method,
            request.get_full_path(),
            user_id,
            idempotency_key,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("API Request body: %s", self._request_body(request))

        response = self.get_response(request)

        elapsed_ms = (time.monotonic() - started) * 1000
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "API Response: method=%s path=%s status=%d elapsed_ms=%.1f",
            request.method,
            request.get_full_path(),
            response.status_code,
            elapsed_ms,
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("API Response body: %s", self._response_body(response))

        return response

    @staticmethod
    def _request_body(request):
        content_type = request.META.get("CONTENT_TYPE", "")
        if "multipart/form-data" in content_type:
            return "<Multipart form data - body not logged>"
        if request.method not in ("POST", "PUT", "PATCH"):
            return ""
        try:
            return request.body.decode("utf-8")[:MAX_LOGGED_BODY]
        except UnicodeDecodeError:
            return "<Could not decode body>"

    @staticmethod
    def _response_body(response):
        response_type = response.get("Content-Type", "")
        if not response_type.startswith(("application/json", "text/")):
            return f"<Content-Type: {response_type}>"
        if getattr(response, "streaming", False):
            return "<Streaming content>"
        try:
            return response.content.decode("utf-8")[:MAX_LOGGED_BODY]
        except UnicodeDecodeError:
            return "<Could not decode content>"
