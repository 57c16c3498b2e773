from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from leadboard.core.celery_app import celery_app
from leadboard.core.config import get_settings
from leadboard.metrics import observe_outgoing_delivery


logger = logging.getLogger("leadboard.crm.delivery")


def deliver_envelope(url: str, method: str, envelope: dict[str, Any], *, client: httpx.Client | None = None) -> int:
    """Send one envelope to an outgoing webhook destination and return the status code.

    GET and DELETE carry the envelope as a ``payload`` query parameter; other
    methods send it as the JSON body. Non-2xx answers raise.
    """

    verb = method.upper()
    owns_client = client is None
    http = client or httpx.Client(timeout=get_settings().outgoing_webhook_timeout_seconds)
    try:
        if verb in {"GET", "DELETE"}:
            response = http.request(verb, url, params={"payload": json.dumps(envelope, default=str)})
        else:
            response = http.request(verb, url, json=envelope)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        observe_outgoing_delivery("failed")
        logger.warning(
            "webhook.delivery_failed",
            extra={"event_name": envelope.get("event"), "error": str(exc)[:500]},
        )
        raise
    finally:
        if owns_client:
            http.close()

    observe_outgoing_delivery("delivered")
    logger.info(
        "webhook.delivered",
        extra={"event_name": envelope.get("event"), "status_code": response.status_code},
    )
    return response.status_code


@celery_app.task(name="leadboard.webhooks.deliver")
def deliver_webhook(url: str, method: str, envelope: dict[str, Any]) -> int:
    return deliver_envelope(url, method, envelope)


def celery_dispatcher(url: str, method: str, envelope: dict[str, Any]) -> None:
    deliver_webhook.delay(url, method, envelope)
