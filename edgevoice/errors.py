"""Gateway error taxonomy and the OpenAI-style error envelope."""
from __future__ import annotations

from typing import Any, Optional


class GatewayError(Exception):
    status_code: int = 500
    error_type: str = "api_error"
    code: str = "gateway_error"

    def __init__(self, message: str, *, param: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.param = param

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": self.param,
                "code": self.code,
            }
        }


class AuthFetchError(GatewayError):
    """Credential endpoint call failed (network, timeout, non-2xx or unusable body)."""

    code = "edge_auth_error"

    def __init__(self, message: str, *, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamSynthesisError(GatewayError):
    code = "edge_tts_error"

    def __init__(self, upstream_status: Optional[int], body: str = "", *, message: Optional[str] = None):
        if message is None:
            message = f"Edge TTS API error: {upstream_status} {body}".rstrip()
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


class MalformedRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class InvalidApiKeyError(GatewayError):
    status_code = 401
    error_type = "invalid_request_error"
    code = "invalid_api_key"

    def __init__(self, message: str = "Invalid API key. Use 'Authorization: Bearer your-api-key' header"):
        super().__init__(message)


class SigningError(GatewayError):
    code = "signing_error"
