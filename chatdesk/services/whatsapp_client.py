from typing import Optional

import httpx

from chatdesk.config import Settings
from chatdesk.logging_config import get_logger

logger = get_logger("whatsapp_client")

MEDIA_TYPES = ("image", "audio", "video", "document")
CAPTIONED_MEDIA_TYPES = ("image", "video", "document")


class WhatsAppAPIError(Exception):
    """Outbound send rejected by (or unreachable at) the Graph API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message if body is None else f"{message}: {body}")


class WhatsAppClient:
    """Minimal WhatsApp Business Cloud API sender."""

    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        *,
        api_version: str = "v18.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: float = 30.0,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, cfg: Settings) -> "WhatsAppClient":
        return cls(
            cfg.whatsapp_access_token,
            cfg.whatsapp_phone_number_id,
            api_version=cfg.whatsapp_api_version,
            base_url=cfg.whatsapp_api_base_url,
            timeout_seconds=cfg.whatsapp_send_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    def build_payload(
        self,
        to: str,
        *,
        text: Optional[str] = None,
        media_type: Optional[str] = None,
        media_ref: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> dict:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to.lstrip("+"),
        }
        if media_type:
            if media_type not in MEDIA_TYPES:
                raise ValueError(f"Unsupported media type: {media_type}")
            if not media_ref:
                raise ValueError("media_ref is required for media messages")
            media = {"link": media_ref} if media_ref.startswith(("http://", "https://")) else {"id": media_ref}
            if caption and media_type in CAPTIONED_MEDIA_TYPES:
                media["caption"] = caption
            payload["type"] = media_type
            payload[media_type] = media
            return payload

        if not text:
            raise ValueError("text is required for text messages")
        payload["type"] = "text"
        payload["text"] = {"preview_url": False, "body": text}
        return payload

    def send(
        self,
        to: str,
        *,
        text: Optional[str] = None,
        media_type: Optional[str] = None,
        media_ref: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> Optional[str]:
        """Send one message. Returns the provider message id; raises WhatsAppAPIError on failure."""
        if not self.is_configured:
            raise WhatsAppAPIError("WhatsApp Business API not configured")

        payload = self.build_payload(to, text=text, media_type=media_type, media_ref=media_ref, caption=caption)
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.messages_url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise WhatsAppAPIError(f"WhatsApp API request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise WhatsAppAPIError(
                f"WhatsApp API error {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        logger.debug(f"WhatsApp send accepted: to={payload['to']}, type={payload['type']}")
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"WhatsApp send accepted without a JSON body: status={response.status_code}")
            return None
        messages = data.get("messages") if isinstance(data, dict) else None
        messages = messages or []
        return messages[0].get("id") if messages else None
