"""Outbound collaborators: the WhatsApp messaging gateway and the webhook transport."""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from .exceptions import ConfigurationError, TransportError
from .logging import get_logger

logger = get_logger(__name__)

_SCALAR_TYPES = (str, int, float, bool)


def normalize_phone(phone: Optional[str], country_code: str = "55") -> Optional[str]:
    """Reduce a phone number to digits, prefixing the country code to national numbers.

    Returns None when nothing dialable is left.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 10:
        return None
    if len(digits) in (10, 11) and country_code and not digits.startswith(country_code):
        digits = f"{country_code}{digits}"
    return digits


class MessagingGateway(ABC):
    """Sends text messages to a lead over a named channel (WhatsApp instance)."""

    @abstractmethod
    def send_text(self, channel: str, address: str, text: str) -> bool:
        """Send ``text`` to ``address``. Raises TransportError on failure."""


class EvolutionMessagingGateway(MessagingGateway):
    """Evolution API client: ``POST {base_url}/message/sendText/{instance}``."""

    def __init__(self, base_url: str, api_key: str, timeout: int = 15,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def send_text(self, channel: str, address: str, text: str) -> bool:
        if not self.base_url:
            raise ConfigurationError("Messaging API URL is not configured", config_key="evolution_api_url")

        url = f"{self.base_url}/message/sendText/{channel}"
        try:
            response = self._session.post(
                url,
                headers={
                    "apikey": self.api_key,
                    "Content-Type": "application/json"
                },
                json={"number": address, "text": text},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Message send to {address} via {channel} failed: {str(e)}")
            raise TransportError(f"Message send failed: {str(e)}", url=url)

        if not response.ok:
            raise TransportError(
                f"Messaging API returned HTTP {response.status_code}: {response.text[:200]}",
                url=url,
                status_code=response.status_code,
            )

        logger.debug(f"Message sent to {address} via {channel}")
        return True


class WebhookTransport(ABC):
    """Performs webhook HTTP calls."""

    @abstractmethod
    def request(self, method: str, url: str, payload: Dict[str, Any],
                headers: Dict[str, str], timeout: int) -> int:
        """Send the payload and return the HTTP status code."""


class RequestsWebhookTransport(WebhookTransport):
    """Webhook transport over ``requests``.

    POST sends the payload as a JSON body; GET sends its scalar values as
    query parameters.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def request(self, method: str, url: str, payload: Dict[str, Any],
                headers: Dict[str, str], timeout: int) -> int:
        method = method.upper()
        try:
            if method == "GET":
                params = {
                    key: value for key, value in payload.items()
                    if value is not None and isinstance(value, _SCALAR_TYPES)
                }
                response = self._session.get(url, params=params, headers=headers, timeout=timeout)
            else:
                response = self._session.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json", **headers},
                    timeout=timeout,
                )
        except requests.RequestException as e:
            raise TransportError(f"Webhook request failed: {str(e)}", url=url)

        logger.debug(f"Webhook {method} {url} returned {response.status_code}")
        return response.status_code
