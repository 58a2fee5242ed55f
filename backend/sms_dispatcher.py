"""
SMS Dispatcher — Beem Africa Gateway

Sends alert texts through the Beem Africa SMS API:
  • HTTP Basic auth (API key : secret key)
  • JSON body with sender id, destination and text
  • Success read from the response body ("successful" / code 100),
    not from the status code alone
  • Exactly one attempt per alert — failures are logged, never retried
  • Connection pooling via httpx.AsyncClient

Credentials and destination numbers are never logged.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config import get_settings

logger = logging.getLogger("well_monitor.sms")

# Beem reports an accepted submission with code 100.
BEEM_SUCCESS_CODE = 100


class SmsDispatcher:
    """
    Async SMS sender for the Beem Africa gateway.

    Usage:
        sms = SmsDispatcher(api_key="...", secret_key="...", sender_id="WALEKI", destination="2557...")
        delivered = await sms.send("⚠️ SYSTEM DOWN ...", reference="node-01-offline")
    """

    name = "sms"

    def __init__(
        self,
        api_key: str = "",
        secret_key: str = "",
        sender_id: str = "",
        destination: str = "",
        api_url: str = "",
        timeout_seconds: float = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.sms_api_key
        self._secret_key = secret_key or settings.sms_secret_key
        self._sender_id = sender_id or settings.sms_sender_id
        self._destination = destination or settings.sms_destination
        self._api_url = api_url or settings.sms_api_url
        self._timeout = timeout_seconds or settings.sms_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Metrics
        self._total_sent = 0
        self._total_errors = 0

    @property
    def available(self) -> bool:
        """True when credentials, sender id and destination are all configured."""
        return all([self._api_key, self._secret_key, self._sender_id, self._destination])

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an httpx client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=5.0),
                auth=httpx.BasicAuth(self._api_key, self._secret_key),
                transport=self._transport,
            )
        return self._client

    def build_payload(self, text: str) -> dict:
        return {
            "source_addr": self._sender_id,
            "schedule_time": "",
            "encoding": 0,
            "message": text,
            "recipients": [
                {
                    "recipient_id": 1,
                    "dest_addr": self._destination,
                }
            ],
        }

    async def send(self, text: str, reference: str = "") -> bool:
        """
        Submit one SMS. Single best-effort attempt.

        Args:
            text: Message text
            reference: Identifier used in log lines (e.g. the alert key)

        Returns:
            True if the gateway accepted the message
        """
        if not self.available:
            logger.warning("SMS not configured — skipping %s", reference)
            return False

        try:
            client = await self._get_client()
            response = await client.post(
                self._api_url,
                json=self.build_payload(text),
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException:
            self._total_errors += 1
            logger.error("SMS: timeout for %s", reference)
            return False
        except httpx.HTTPError as e:
            self._total_errors += 1
            logger.error("SMS: HTTP error for %s: %s", reference, type(e).__name__)
            return False

        if self._accepted(response):
            self._total_sent += 1
            logger.info("SMS: delivered %s", reference)
            return True

        self._total_errors += 1
        logger.error("SMS: gateway rejected %s (HTTP %d)", reference, response.status_code)
        return False

    @staticmethod
    def _accepted(response: httpx.Response) -> bool:
        if not 200 <= response.status_code < 300:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        if not isinstance(body, dict):
            return False
        return body.get("successful") is True or body.get("code") == BEEM_SUCCESS_CODE

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @property
    def metrics(self) -> dict:
        return {
            "configured": self.available,
            "total_sent": self._total_sent,
            "total_errors": self._total_errors,
        }
