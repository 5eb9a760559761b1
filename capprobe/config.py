from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Sequence

import boto3
from botocore.config import Config

from capprobe.errors import EnvironmentMissing


DEFAULT_REGION = "us-east-1"

# A probe observes a single call; retrying would only hide throttling and
# reorder the log, so botocore gets exactly one attempt.
BOTO3_CONFIG = Config(
    retries={"max_attempts": 1, "mode": "standard"},
)


def default_region(environ=None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION") or DEFAULT_REGION


@dataclass
class ProbeConfig:
    regions: list[str] = field(default_factory=list)
    profile: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    session_token: Optional[str] = None
    destructive_mode: bool = False
    output_dir: str = "."
    verbose: bool = False
    show_progress: bool = True

    def __post_init__(self) -> None:
        if not self.regions:
            self.regions = [default_region()]

    @property
    def region(self) -> str:
        return self.regions[0]

    @property
    def profile_label(self) -> str:
        if self.access_key_id:
            return "credentials"
        return self.profile or os.environ.get("AWS_PROFILE") or "default"


def validate_credential_args(profile, access_key_id, secret_access_key) -> Optional[str]:
    """Return an error message when the credential flags are inconsistent."""
    if access_key_id and not secret_access_key:
        return "--secret-access-key is required when using --access-key-id"
    if not access_key_id and secret_access_key:
        return "--access-key-id is required when using --secret-access-key"
    if profile and access_key_id:
        return "Provide either --profile OR credentials (--access-key-id), not both"
    return None


def build_session(config: ProbeConfig) -> boto3.Session:
    if config.access_key_id and config.secret_access_key:
        return boto3.Session(
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            aws_session_token=config.session_token,
            region_name=config.region,
        )
    if config.profile:
        return boto3.Session(profile_name=config.profile, region_name=config.region)
    # Default credential chain (env vars, shared config, instance metadata...)
    return boto3.Session(region_name=config.region)


def check_environment(session: boto3.Session, required_services: Sequence[str]) -> None:
    available = set(session.get_available_services())
    missing = [s for s in required_services if s not in available]
    if missing:
        raise EnvironmentMissing(missing)
