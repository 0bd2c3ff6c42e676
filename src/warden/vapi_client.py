"""
Vapi voice provider.

Places outbound confirmation calls through the Vapi REST API and maps
Vapi call records onto ``CallStatus``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from .errors import ConfigurationError, VoiceProviderError
from .voice import CallState, CallStatus, VoicePurpose

logger = logging.getLogger(__name__)

VAPI_BASE_URL = "https://api.vapi.ai"

VAPI_API_KEY_ENV = "VAPI_API_KEY"
VAPI_ASSISTANT_ID_ENV = "VAPI_ASSISTANT_ID"
VAPI_PHONE_NUMBER_ID_ENV = "VAPI_PHONE_NUMBER_ID"
WARDEN_APPROVER_PHONE_ENV = "WARDEN_APPROVER_PHONE"

_RINGING = {"queued", "scheduled", "ringing"}
_ACTIVE = {"in-progress", "forwarding"}
# endedReason values that mean the conversation happened.
_CONVERSATION_ENDED = {
    "customer-ended-call",
    "assistant-ended-call",
    "assistant-said-end-call-phrase",
    "exceeded-max-duration",
}


class VapiVoiceProvider:
    """VoiceProvider backed by Vapi outbound phone calls."""

    def __init__(
        self,
        api_key: str,
        assistant_id: str,
        phone_number_id: str,
        customer_number: str,
        base_url: str = VAPI_BASE_URL,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            raise ConfigurationError("Vapi API key is required")
        self.assistant_id = assistant_id
        self.phone_number_id = phone_number_id
        self.customer_number = customer_number
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None, **kwargs) -> "VapiVoiceProvider":
        env = os.environ if env is None else env
        missing = [
            name
            for name in (
                VAPI_API_KEY_ENV,
                VAPI_ASSISTANT_ID_ENV,
                VAPI_PHONE_NUMBER_ID_ENV,
                WARDEN_APPROVER_PHONE_ENV,
            )
            if not env.get(name)
        ]
        if missing:
            raise ConfigurationError(f"Vapi voice provider needs: {', '.join(missing)}")
        return cls(
            api_key=env[VAPI_API_KEY_ENV],
            assistant_id=env[VAPI_ASSISTANT_ID_ENV],
            phone_number_id=env[VAPI_PHONE_NUMBER_ID_ENV],
            customer_number=env[WARDEN_APPROVER_PHONE_ENV],
            **kwargs,
        )

    def request_call(self, purpose: VoicePurpose, context: dict[str, Any]) -> str:
        script = context.get("script") or {}
        first_message = " ".join(
            part for part in (script.get("greeting"), script.get("message")) if part
        )
        body = {
            "assistantId": self.assistant_id,
            "phoneNumberId": self.phone_number_id,
            "customer": {"number": self.customer_number},
            "assistantOverrides": {
                "firstMessage": first_message or None,
                "variableValues": _flat(context),
            },
            "metadata": {"purpose": VoicePurpose(purpose).value, **_flat(context)},
        }
        data = self._request("POST", "/call", json=body)
        handle = data.get("id")
        if not handle:
            raise VoiceProviderError("Vapi did not return a call id")
        logger.info("Vapi call %s requested for %s", handle, VoicePurpose(purpose).value)
        return handle

    def get_status(self, call_handle: str) -> CallStatus:
        return call_status_from_vapi(self._request("GET", f"/call/{call_handle}"))

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, headers=self._headers, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise VoiceProviderError(
                f"Vapi {method} {path} failed ({e.response.status_code}): {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise VoiceProviderError(f"Vapi {method} {path} failed: {e}") from e
        except ValueError as e:
            raise VoiceProviderError(f"Vapi {method} {path} returned invalid JSON") from e

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def call_status_from_vapi(data: dict[str, Any]) -> CallStatus:
    """Map a Vapi call object to the provider-neutral ``CallStatus``."""
    status = data.get("status")
    if status in _RINGING:
        return CallStatus(state=CallState.RINGING)
    if status in _ACTIVE:
        return CallStatus(state=CallState.ACTIVE)
    if status != "ended":
        raise VoiceProviderError(f"Unknown Vapi call status: {status!r}")

    ended_reason = data.get("endedReason") or "unknown"
    if ended_reason not in _CONVERSATION_ENDED:
        return CallStatus(state=CallState.FAILED, reason=ended_reason)

    analysis = data.get("analysis") or {}
    return CallStatus(
        state=CallState.COMPLETED,
        transcript=data.get("transcript") or (data.get("artifact") or {}).get("transcript"),
        duration_seconds=data.get("durationSeconds"),
        approved=_verdict(analysis),
        reason=ended_reason,
    )


def _verdict(analysis: dict[str, Any]) -> Optional[bool]:
    structured = analysis.get("structuredData") or {}
    if isinstance(structured.get("approved"), bool):
        return structured["approved"]
    success = analysis.get("successEvaluation")
    if isinstance(success, bool):
        return success
    if isinstance(success, str) and success.lower() in ("true", "false"):
        return success.lower() == "true"
    return None


def _flat(context: dict[str, Any]) -> dict[str, str]:
    return {k: str(v) for k, v in context.items() if k != "script" and v is not None}
