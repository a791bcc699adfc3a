"""
Payment webhook verification and processing.

Signature: HMAC-SHA512 of the exact raw body keyed by the Paystack secret,
hex-encoded in the x-paystack-signature header, compared in constant time.
An invalid signature is rejected before the body is parsed.

Processing is at-least-once safe: events are deduplicated by `data.id`
in the cache, stale events are dropped, and activation itself is
idempotent on the payment reference.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from planguard.core.cache import MISS, CacheError, CacheKeys, CachePort
from planguard.core.config import settings
from planguard.core.errors import AppError, BadRequestError, ServiceUnavailableError, UnauthorizedError

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    secret = secret or settings.PAYSTACK_SECRET_KEY
    if not secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(raw_body, secret), signature.strip().lower())


def require_valid_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> None:
    """
    Raises:
        UnauthorizedError: Missing or mismatched signature
    """
    if not verify_signature(raw_body, signature, secret):
        logger.warning("webhook.invalid_signature", extra={"has_signature": bool(signature)})
        raise UnauthorizedError("Invalid webhook signature")


def parse_event(raw_body: bytes) -> Dict[str, Any]:
    """
    Raises:
        BadRequestError: Body is not a JSON object with `event` and `data`
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise BadRequestError("Malformed webhook payload")
    if not isinstance(payload, dict) or not payload.get("event") or not isinstance(payload.get("data"), dict):
        raise BadRequestError("Malformed webhook payload")
    return payload


def _event_time(data: Dict[str, Any]) -> Optional[datetime]:
    raw = data.get("created_at") or data.get("createdAt")
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class WebhookProcessor:
    def __init__(self, manager, cache: CachePort):
        self.manager = manager
        self.cache = cache

    def _mark(self, key: str, state: Optional[str], ttl: int = 0) -> None:
        try:
            if state is None:
                self.cache.delete(key)
            else:
                self.cache.set(key, state, ttl)
        except CacheError as exc:
            logger.warning("webhook.dedupe_write_failed", extra={"cache_key": key, "error": str(exc)})

    def _seen(self, key: str) -> Optional[str]:
        try:
            state = self.cache.get(key)
        except CacheError as exc:
            logger.warning("webhook.dedupe_read_failed", extra={"cache_key": key, "error": str(exc)})
            return None
        return None if state is MISS else state

    def process(self, event: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Handle one verified event.

        Returns a small acknowledgement; business failures are logged and
        the dedupe marker dropped so a later redelivery is processed again.
        A gateway outage propagates as ServiceUnavailableError.
        """
        now = now or datetime.now(timezone.utc)
        event_type = event["event"]
        data = event["data"]
        event_id = str(data.get("id") or data.get("reference") or "")

        key = CacheKeys.webhook_event(event_id) if event_id else None
        if key:
            state = self._seen(key)
            if state is not None:
                logger.info("webhook.duplicate", extra={"event_id": event_id, "state": state})
                return {"status": "duplicate", "event_id": event_id}
            self._mark(key, PROCESSING, settings.WEBHOOK_PROCESSING_TTL_SECONDS)

        occurred_at = _event_time(data)
        if occurred_at and now - occurred_at > timedelta(minutes=settings.WEBHOOK_MAX_EVENT_AGE_MINUTES):
            logger.warning("webhook.stale_event", extra={"event_id": event_id, "occurred_at": occurred_at.isoformat()})
            if key:
                self._mark(key, COMPLETED, settings.WEBHOOK_COMPLETED_TTL_SECONDS)
            return {"status": "ignored", "reason": "stale", "event_id": event_id}

        if event_type != "charge.success":
            logger.info("webhook.ignored", extra={"event_id": event_id, "event_type": event_type})
            if key:
                self._mark(key, COMPLETED, settings.WEBHOOK_COMPLETED_TTL_SECONDS)
            return {"status": "ignored", "reason": "unhandled_event", "event_id": event_id}

        reference = data.get("reference")
        if not reference:
            if key:
                self._mark(key, None)
            raise BadRequestError("charge.success event has no reference")

        try:
            self.manager.verify_and_activate(reference)
        except ServiceUnavailableError:
            # 503 makes the provider redeliver later
            if key:
                self._mark(key, None)
            raise
        except AppError as exc:
            logger.error(
                "webhook.activation_failed",
                extra={"event_id": event_id, "reference": reference, "error_code": exc.code, "error": exc.message},
            )
            if key:
                self._mark(key, None)
            return {"status": "failed", "event_id": event_id, "reference": reference}

        if key:
            self._mark(key, COMPLETED, settings.WEBHOOK_COMPLETED_TTL_SECONDS)
        logger.info("webhook.processed", extra={"event_id": event_id, "reference": reference})
        return {"status": "processed", "event_id": event_id, "reference": reference}
