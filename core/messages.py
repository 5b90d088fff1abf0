import asyncio
import logging
from typing import Optional

from groq import Groq

from config import Config, get_groq_api_key
from models import GeoPoint

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "EMERGENCY: Patient needs immediate assistance. Please respond ASAP."


class EmergencyMessageComposer:
    """Writes the message read out to ambulance drivers, using Groq when configured."""

    def __init__(self, api_key: str = None, model: str = "llama-3.1-8b-instant", timeout: float = 5.0):
        self.api_key = api_key if api_key is not None else get_groq_api_key()
        self.model = model
        self.timeout = timeout
        self.client = None

        if self.api_key:
            self.client = Groq(api_key=self.api_key)
        else:
            logger.warning("GROQ_API_KEY not found. Emergency messages will use the built-in template.")

    @classmethod
    def from_config(cls, settings: Config) -> "EmergencyMessageComposer":
        return cls(
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            timeout=settings.message_timeout_s,
        )

    def is_available(self) -> bool:
        """Check if Groq API is available."""
        return self.client is not None

    async def compose(self, requester_location: GeoPoint, callback_phone: Optional[str], distance_km: float) -> str:
        """Compose a driver message. Never raises; falls back to the template."""
        if not self.is_available():
            return self.template(requester_location, callback_phone, distance_km)

        try:
            message = await asyncio.wait_for(
                asyncio.to_thread(self._generate, requester_location, callback_phone, distance_km),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Groq message generation timed out after %.1fs", self.timeout)
            return self.template(requester_location, callback_phone, distance_km)
        except Exception as e:
            logger.error("Error generating emergency message: %s", e)
            return self.template(requester_location, callback_phone, distance_km)

        return message or self.template(requester_location, callback_phone, distance_km)

    def _generate(self, requester_location: GeoPoint, callback_phone: Optional[str], distance_km: float) -> str:
        response = self.client.chat.completions.create(
            messages=[
                {"role": "system", "content": self._get_system_prompt()},
                {"role": "user", "content": self._build_prompt(requester_location, callback_phone, distance_km)}
            ],
            model=self.model,
            max_tokens=200,
            temperature=0.2
        )
        return (response.choices[0].message.content or "").strip()

    @staticmethod
    def template(requester_location: GeoPoint, callback_phone: Optional[str], distance_km: float) -> str:
        parts = [
            FALLBACK_MESSAGE,
            f"Location: {requester_location.latitude:.6f}, {requester_location.longitude:.6f}.",
            f"Distance: {distance_km:.2f} km.",
        ]
        if callback_phone:
            parts.append(f"Patient phone: {callback_phone}.")
        return " ".join(parts)

    def _get_system_prompt(self) -> str:
        return (
            "You are an emergency medical dispatcher. Generate a concise emergency message "
            "for an ambulance driver. The message should be brief, clear, and actionable. "
            "Do not include any unnecessary information."
        )

    def _build_prompt(self, requester_location: GeoPoint, callback_phone: Optional[str], distance_km: float) -> str:
        return (
            "Include the following information:\n"
            f"- Patient location: {requester_location.latitude}, {requester_location.longitude}\n"
            f"- Patient phone: {callback_phone or 'not provided'}\n"
            f"- Distance from ambulance: {distance_km:.2f} km"
        )
