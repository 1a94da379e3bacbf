from pydantic_settings import BaseSettings
from pydantic import BaseModel, field_validator
from typing import Any
import os
import re
import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")

CREDENTIAL_ENDPOINT = "https://dev.microsofttranslator.com/apps/endpoint?api-version=1.0"


def _resolve_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)), value
        )
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(v) for v in value]
    return value


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8844
    log_level: str = "info"
    api_key: str = ""

    @field_validator("api_key")
    @classmethod
    def _drop_unresolved_key(cls, v: str) -> str:
        # "${EDGEVOICE_API_KEY}" left as-is means the variable was not set
        stripped = v.strip()
        if stripped.startswith("${") and stripped.endswith("}"):
            return ""
        return stripped


class UpstreamConfig(BaseModel):
    endpoint_url: str = CREDENTIAL_ENDPOINT
    tts_url_template: str = "https://{region}.tts.speech.microsoft.com/cognitiveservices/v1"
    timeout: float = 30.0
    refresh_margin: int = 300
    user_agent: str = "okhttp/4.5.0"
    accept_language: str = "zh-Hans"
    client_version: str = "4.0.530a 5fe1dc6c"
    user_id: str = "0f04d16a175c411e"
    home_region: str = "zh-Hans-CN"


class SynthesisConfig(BaseModel):
    default_voice: str = "zh-CN-XiaoxiaoNeural"
    default_format: str = "mp3"
    language: str = "zh-CN"
    style: str = "general"
    style_degree: str = "1.0"
    role: str = "default"
    pitch: int = 0
    volume: str = "50"


class Settings(BaseSettings):
    model_config = {"extra": "allow", "env_prefix": "EDGEVOICE_", "env_nested_delimiter": "__"}

    server: ServerConfig = ServerConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    synthesis: SynthesisConfig = SynthesisConfig()
    voice_mapping: dict[str, str] = {}

    @classmethod
    def from_yaml(cls, path: str = "edgevoice.yaml") -> "Settings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data = _resolve_env_vars(data)
        return cls(**data)
