"""Configuration loading and Pydantic models for sigv4auth."""

from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from sigv4auth.models import SigningKeyKind
from sigv4auth.parser import MAX_PRESIGNED_EXPIRES
from sigv4auth.verifier import VerifierSettings


class ServerConfig(BaseModel):
    """Server binding and runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 9000
    log_level: str = "INFO"
    log_format: str = "text"
    shutdown_timeout: int = 30


class CredentialConfig(BaseModel):
    """A statically configured access key."""

    access_key: str
    secret_key: str
    session_token: str | None = None


class AuthConfig(BaseModel):
    """SigV4 verification configuration."""

    enabled: bool = True
    service: str = "s3"
    region: str = "us-east-1"
    allowed_clock_skew_seconds: int | None = 300
    allow_unsigned_payload: bool = False
    allow_presigned: bool = False
    max_presigned_expires: int = MAX_PRESIGNED_EXPIRES
    resolver_timeout_seconds: float | None = 5.0
    signing_key_kind: SigningKeyKind = SigningKeyKind.SIGNING
    normalize_uri_path: bool = True
    credentials: list[CredentialConfig] = Field(default_factory=list)
    skip_paths: list[str] = Field(default_factory=lambda: ["/health", "/healthz", "/metrics"])

    def to_settings(self) -> VerifierSettings:
        """Build the verifier settings described by this section."""
        skew = self.allowed_clock_skew_seconds
        return VerifierSettings(
            service=self.service,
            region=self.region,
            allowed_clock_skew=timedelta(seconds=skew) if skew is not None else None,
            allow_unsigned_payload=self.allow_unsigned_payload,
            allow_presigned=self.allow_presigned,
            max_presigned_expires=self.max_presigned_expires,
            signing_key_kind=self.signing_key_kind,
            normalize_uri_path=self.normalize_uri_path,
            resolver_timeout=self.resolver_timeout_seconds,
        )


class ObservabilityConfig(BaseModel):
    """Metrics and health check configuration."""

    metrics: bool = True
    health_check: bool = True


class SigV4AuthConfig(BaseModel):
    """Top-level sigv4auth configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_server(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the server section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "host": data.get("host", "0.0.0.0"),
        "port": data.get("port", 9000),
        "log_level": data.get("log_level", "INFO"),
        "log_format": data.get("log_format", "text"),
        "shutdown_timeout": data.get("shutdown_timeout", 30),
    }


def _parse_auth(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the auth section from YAML data.

    Handles nested structures: auth.presigned.enabled -> allow_presigned,
    auth.presigned.max_expires -> max_presigned_expires. Keys that are not
    present fall back to the model defaults.
    """
    if data is None:
        return {}
    result: dict[str, Any] = {}
    for key in (
        "enabled",
        "service",
        "region",
        "allowed_clock_skew_seconds",
        "allow_unsigned_payload",
        "resolver_timeout_seconds",
        "signing_key_kind",
        "normalize_uri_path",
        "skip_paths",
    ):
        if key in data:
            result[key] = data[key]

    presigned_section = data.get("presigned")
    if isinstance(presigned_section, dict):
        if "enabled" in presigned_section:
            result["allow_presigned"] = presigned_section["enabled"]
        if "max_expires" in presigned_section:
            result["max_presigned_expires"] = presigned_section["max_expires"]

    credentials = data.get("credentials")
    if isinstance(credentials, list):
        result["credentials"] = [CredentialConfig(**cred) for cred in credentials]
    return result


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {
        "metrics": data.get("metrics", True),
        "health_check": data.get("health_check", True),
    }


def load_config(path: Path) -> SigV4AuthConfig:
    """Load a SigV4AuthConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated SigV4AuthConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If a value has the wrong type.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return SigV4AuthConfig(
        server=ServerConfig(**_parse_server(raw.get("server"))),
        auth=AuthConfig(**_parse_auth(raw.get("auth"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
