import logging
import re
from abc import ABC, abstractmethod
from typing import Optional
from xml.sax.saxutils import escape

import httpx

from config import Config, is_twilio_configured
from core.errors import GatewayError
from models import GatewayReceipt

logger = logging.getLogger(__name__)


def format_phone_number(phone_number: str, default_country_code: str = "+91") -> str:
    """Normalise a phone number to E.164 for the telephony provider.

    Numbers already starting with ``+`` are returned unchanged. Otherwise a
    leading trunk ``0`` is replaced by the default country code, bare 10-digit
    numbers get the default country code, and anything else is assumed to
    already carry a country code.
    """
    phone_number = phone_number.strip()
    if phone_number.startswith("+"):
        return phone_number

    digits = re.sub(r"\D", "", phone_number)
    if digits.startswith("0"):
        return f"{default_country_code}{digits[1:]}"
    if len(digits) == 10:
        return f"{default_country_code}{digits}"
    return f"+{digits}"


class NotificationGateway(ABC):
    """Places the call/SMS that alerts one ambulance driver."""

    name = "gateway"

    @abstractmethod
    async def notify(self, contact: str, message: str, callback_phone: Optional[str]) -> GatewayReceipt:
        """Notify ``contact``. Raises GatewayError on failure."""

    async def close(self) -> None:
        return None

    def is_live(self) -> bool:
        """Whether notifications reach a real provider."""
        return False


class LoggingGateway(NotificationGateway):
    """Gateway used when no telephony provider is configured; only logs."""

    name = "log"

    async def notify(self, contact: str, message: str, callback_phone: Optional[str]) -> GatewayReceipt:
        logger.info("Notification to %s (callback %s): %s", contact, callback_phone, message)
        return GatewayReceipt(status="logged", provider=self.name)


class TwilioGateway(NotificationGateway):
    """Sends an SMS and then places a voice call through the Twilio REST API."""

    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str = "",
        base_url: str = "https://api.twilio.com/2010-04-01",
        default_country_code: str = "+91",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = f"{base_url.rstrip('/')}/Accounts/{account_sid}"
        self.default_country_code = default_country_code
        self.timeout = timeout
        self.transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    def is_live(self) -> bool:
        return True

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def notify(self, contact: str, message: str, callback_phone: Optional[str]) -> GatewayReceipt:
        to_number = format_phone_number(contact, self.default_country_code)
        from_number = self.from_number or callback_phone
        if not from_number:
            raise GatewayError("No caller number configured for Twilio")

        # SMS goes first; it is more likely to get through than the call
        sms = await self._post("Messages.json", {
            "To": to_number,
            "From": from_number,
            "Body": message,
        })
        call = await self._post("Calls.json", {
            "To": to_number,
            "From": from_number,
            "Twiml": f"<Response><Say>{escape(message)}</Say></Response>",
        })

        logger.info("Emergency call initiated to %s with SID %s", to_number, call.get("sid"))
        return GatewayReceipt(
            status=call.get("status") or "queued",
            provider=self.name,
            provider_id=call.get("sid"),
            sms_id=sms.get("sid"),
        )

    async def _post(self, path: str, data: dict) -> dict:
        client = await self.get_client()
        try:
            response = await client.post(path, data=data)
        except httpx.TimeoutException as e:
            raise GatewayError(f"Twilio request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Twilio request failed: {e}") from e

        if response.status_code >= 400:
            raise GatewayError(f"Twilio returned {response.status_code}: {_error_detail(response)}")

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError("Twilio returned a non-JSON response") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        return response.json().get("message") or response.text
    except ValueError:
        return response.text


def build_gateway(settings: Config) -> NotificationGateway:
    """Pick the Twilio gateway when credentials are configured, otherwise log only."""
    if is_twilio_configured(settings):
        return TwilioGateway(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            base_url=settings.twilio_api_base,
            default_country_code=settings.default_country_code,
            timeout=settings.notify_timeout_s,
        )

    logger.warning("Twilio credentials not found. Notifications will only be logged.")
    return LoggingGateway()
