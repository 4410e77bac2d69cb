"""Shared httpx helpers for JSON gateway APIs."""

import json
import logging
from typing import Any

import httpx

from posqris.exceptions import GatewayUnavailable, InvalidRequest, UnparseablePayload

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def send(
    client: httpx.Client | None,
    provider: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Send a request and decode the JSON body.

    Without a client, a short-lived one is opened for this request and
    closed again.

    Raises:
        GatewayUnavailable: Transport error, 429, 5xx or a non-JSON body
        InvalidRequest: Any other 4xx
    """
    if client is None:
        with httpx.Client(timeout=DEFAULT_TIMEOUT) as owned:
            return send(owned, provider, method, url, **kwargs)

    try:
        response = client.request(method, url, **kwargs)
    except httpx.RequestError as e:
        logger.warning("%s request failed: %s %s: %s", provider, method, url, e)
        raise GatewayUnavailable(
            f"{provider} request failed", code="transport_error"
        ) from e

    if response.status_code == 429 or response.status_code >= 500:
        logger.warning(
            "%s returned %s for %s %s", provider, response.status_code, method, url
        )
        raise GatewayUnavailable(
            f"{provider} returned {response.status_code}",
            code=str(response.status_code),
        )

    try:
        data = response.json()
    except ValueError as e:
        raise GatewayUnavailable(
            f"{provider} returned a non-JSON body", code="bad_body"
        ) from e

    if response.status_code >= 400:
        logger.info("%s rejected %s %s: %s", provider, method, url, data)
        raise InvalidRequest(
            f"{provider} rejected the request", code=str(response.status_code)
        )

    if not isinstance(data, dict):
        raise GatewayUnavailable(f"{provider} returned an unexpected body", code="bad_body")
    return data


def load_json_body(provider: str, body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise UnparseablePayload(f"Invalid {provider} webhook payload") from e

    if not isinstance(payload, dict):
        raise UnparseablePayload(f"Invalid {provider} webhook payload")
    return payload
