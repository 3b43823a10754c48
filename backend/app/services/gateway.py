from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from backend.app.models import ApiProvider, InstanceRecord
from backend.app.services.http_client import (
    HttpResponse,
    HttpTransport,
    TransportError,
    error_text,
    urllib_transport,
)
from backend.app.settings import Settings
from backend.app.store import GLOBAL_CONFIG_OWNER, InMemoryStore, digits_only

logger = logging.getLogger("zapdesk.gateway")

Sleeper = Callable[[float], None]

UAZAPI_MEDIA_TYPES = {
    "image": "image",
    "audio": "ptt",
    "video": "video",
    "document": "document",
}


class GatewayError(Exception):
    pass


@dataclass(frozen=True)
class SendResult:
    ok: bool
    remote_message_id: Optional[str] = None
    error: Optional[str] = None


def extract_remote_id(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    key = body.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for field in ("id", "messageId", "messageid"):
        if body.get(field):
            return str(body[field])
    return None


class GatewayClient:
    provider: ApiProvider

    def __init__(self, *, base_url: str, transport: HttpTransport, timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _post(self, path: str, payload: dict) -> HttpResponse:
        try:
            return self.transport("POST", f"{self.base_url}{path}", self._headers(), payload, self.timeout)
        except TransportError as exc:
            raise GatewayError(str(exc)) from exc

    def _send(self, path: str, payload: dict) -> SendResult:
        try:
            response = self._post(path, payload)
        except GatewayError as exc:
            logger.warning("gateway_send_failed provider=%s path=%s error=%s", self.provider.value, path, exc)
            return SendResult(ok=False, error=str(exc))
        if not response.ok:
            detail = error_text(response)
            logger.warning(
                "gateway_send_rejected provider=%s path=%s status=%s error=%s",
                self.provider.value,
                path,
                response.status,
                detail,
            )
            return SendResult(ok=False, error=detail)
        return SendResult(ok=True, remote_message_id=extract_remote_id(response.body))

    def send_text(self, number: str, text: str, *, typing_ms: int = 0) -> SendResult:
        raise NotImplementedError

    def send_media(
        self,
        number: str,
        media_type: str,
        url: str,
        *,
        caption: str = "",
        file_name: Optional[str] = None,
        typing_ms: int = 0,
    ) -> SendResult:
        raise NotImplementedError


class EvolutionClient(GatewayClient):
    provider = ApiProvider.evolution

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        instance_name: str,
        transport: HttpTransport,
        timeout: int = 15,
        sleeper: Sleeper = time.sleep,
    ) -> None:
        super().__init__(base_url=base_url, transport=transport, timeout=timeout)
        self.api_key = api_key
        self.instance_name = instance_name
        self.sleeper = sleeper

    def _headers(self) -> dict[str, str]:
        return {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}

    def send_presence(self, number: str, presence: str, delay_ms: int) -> bool:
        """Show typing/recording, then wait. Returns False when every variant was rejected."""
        candidates = (
            ["composing", "typing"]
            if presence == "composing"
            else ["recording", "recording_audio", "recordingAudio"]
        )
        phone = digits_only(number)
        delay_seconds = math.ceil(delay_ms / 1000)
        path = f"/chat/sendPresence/{self.instance_name}"
        for candidate in candidates:
            for payload in (
                {"number": phone, "options": {"delay": delay_ms, "presence": candidate}},
                {"number": phone, "options": {"delay": delay_seconds, "presence": candidate}},
                {"number": phone, "delay": delay_ms, "presence": candidate},
                {"number": phone, "delay": delay_seconds, "presence": candidate},
            ):
                try:
                    response = self._post(path, payload)
                except GatewayError as exc:
                    logger.warning("presence_failed instance=%s error=%s", self.instance_name, exc)
                    return False
                if response.ok:
                    self.sleeper(delay_ms / 1000.0)
                    return True
        logger.warning("presence_rejected instance=%s presence=%s", self.instance_name, presence)
        return False

    def send_text(self, number: str, text: str, *, typing_ms: int = 0) -> SendResult:
        if typing_ms > 0:
            self.send_presence(number, "composing", typing_ms)
        return self._send(
            f"/message/sendText/{self.instance_name}",
            {"number": digits_only(number), "text": text},
        )

    def send_media(
        self,
        number: str,
        media_type: str,
        url: str,
        *,
        caption: str = "",
        file_name: Optional[str] = None,
        typing_ms: int = 0,
    ) -> SendResult:
        phone = digits_only(number)
        if typing_ms > 0:
            self.send_presence(number, "recording" if media_type == "audio" else "composing", typing_ms)
        if media_type == "audio":
            return self._send(
                f"/message/sendWhatsAppAudio/{self.instance_name}",
                {"number": phone, "audio": url},
            )
        payload: dict[str, Any] = {"number": phone, "mediatype": media_type, "media": url}
        if media_type == "document":
            payload["fileName"] = file_name or "documento"
        else:
            payload["caption"] = caption
        return self._send(f"/message/sendMedia/{self.instance_name}", payload)


class UazapiClient(GatewayClient):
    provider = ApiProvider.uazapi

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        transport: HttpTransport,
        timeout: int = 15,
    ) -> None:
        super().__init__(base_url=base_url, transport=transport, timeout=timeout)
        self.token = token

    def _headers(self) -> dict[str, str]:
        return {"token": self.token}

    def send_text(self, number: str, text: str, *, typing_ms: int = 0) -> SendResult:
        payload: dict[str, Any] = {"number": digits_only(number), "text": text}
        if typing_ms > 0:
            payload["delay"] = typing_ms
        return self._send("/send/text", payload)

    def send_media(
        self,
        number: str,
        media_type: str,
        url: str,
        *,
        caption: str = "",
        file_name: Optional[str] = None,
        typing_ms: int = 0,
    ) -> SendResult:
        payload: dict[str, Any] = {
            "number": digits_only(number),
            "type": UAZAPI_MEDIA_TYPES.get(media_type, media_type),
            "file": url,
        }
        if caption and media_type != "audio":
            payload["text"] = caption
        if media_type == "document":
            payload["docName"] = file_name or "documento"
        if typing_ms > 0:
            payload["delay"] = typing_ms
        return self._send("/send/media", payload)

    def create_advanced_campaign(
        self,
        *,
        delay_min: int,
        delay_max: int,
        info: str,
        messages: list[dict[str, Any]],
    ) -> dict:
        response = self._post(
            "/sender/advanced",
            {
                "delayMin": delay_min,
                "delayMax": delay_max,
                "scheduled_for": 1,
                "info": info,
                "messages": messages,
            },
        )
        if not response.ok:
            raise GatewayError(error_text(response))
        return response.json_dict()


class GatewayFactory:
    """Builds the right client for an instance from the configured credentials."""

    def __init__(
        self,
        *,
        store: InMemoryStore,
        settings: Settings,
        transport: HttpTransport = urllib_transport,
        sleeper: Sleeper = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self.transport = transport
        self.sleeper = sleeper

    def resolve_config(self, user_id: str) -> tuple[str, str, str]:
        """Return (evolution base url, evolution api key, uazapi base url)."""
        base_url = self.settings.evolution_base_url
        api_key = self.settings.evolution_api_key
        uazapi_base_url = self.settings.uazapi_base_url
        for owner in (GLOBAL_CONFIG_OWNER, user_id):
            config = self.store.get_gateway_config(owner)
            if not config:
                continue
            base_url = config.base_url or base_url
            api_key = config.api_key or api_key
            uazapi_base_url = config.uazapi_base_url or uazapi_base_url
        return base_url, api_key, uazapi_base_url

    def for_instance(self, instance: InstanceRecord) -> GatewayClient:
        base_url, api_key, uazapi_base_url = self.resolve_config(instance.user_id)
        if instance.api_provider == ApiProvider.uazapi:
            if not instance.api_token:
                raise GatewayError(f"instance {instance.instance_name} has no uazapi token")
            return UazapiClient(
                base_url=uazapi_base_url,
                token=instance.api_token,
                transport=self.transport,
                timeout=self.settings.gateway_timeout_seconds,
            )
        if not api_key:
            raise GatewayError("evolution api key is not configured")
        return EvolutionClient(
            base_url=base_url,
            api_key=api_key,
            instance_name=instance.instance_name,
            transport=self.transport,
            timeout=self.settings.gateway_timeout_seconds,
            sleeper=self.sleeper,
        )
