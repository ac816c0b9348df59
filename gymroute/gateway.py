import logging

import requests

from .errors import GatewayError

logger = logging.getLogger(__name__)


class GatewayClient:
    """
    Thin client for the payment gateway REST API.

    Every call carries a bounded timeout. Connection problems, timeouts and
    non-2xx answers all surface as GatewayError so callers fail closed.
    """

    def __init__(self, base_url, key_id, key_secret, timeout=10, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (key_id, key_secret)

    def _request(self, method, path, payload=None):
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"[gateway] {method} {path} connection error: {e}")
            raise GatewayError("Payment gateway unavailable") from e

        if response.status_code >= 400:
            logger.error(f"[gateway] {method} {path} status={response.status_code} body={response.text}")
            raise GatewayError(
                f"Payment gateway rejected request ({response.status_code})",
                gateway_status=response.status_code,
                details=_error_description(response),
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned an unreadable response") from e

    def create_order(self, payload):
        return self._request("POST", "/v1/orders", payload)

    def fetch_payment(self, payment_id):
        return self._request("GET", f"/v1/payments/{payment_id}")

    def fetch_transfers(self, payment_id):
        body = self._request("GET", f"/v1/payments/{payment_id}/transfers")
        return body.get("items", [])

    def create_linked_account(self, payload):
        return self._request("POST", "/v2/accounts", payload)


def _error_description(response):
    try:
        return response.json().get("error", {}).get("description")
    except (ValueError, AttributeError):
        return None


def build_gateway(config):
    factory = config.get("GATEWAY_CLIENT_FACTORY")
    if factory is not None:
        return factory(config)
    return GatewayClient(
        config["GATEWAY_BASE_URL"],
        config["GATEWAY_KEY_ID"],
        config["GATEWAY_KEY_SECRET"],
        timeout=config["GATEWAY_TIMEOUT"],
    )
