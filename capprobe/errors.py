from __future__ import annotations

from typing import Iterable


class CapProbeError(Exception):
    """Base class for errors raised by the probing tools."""


class EnvironmentMissing(CapProbeError):
    """The local SDK cannot talk to a service the tool needs."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(
            "botocore has no service model for: "
            + ", ".join(self.missing)
            + ". Upgrade boto3/botocore (pip install -U boto3)."
        )


class AuthFailure(CapProbeError):
    """The caller identity could not be resolved."""


class OptionalFeatureUnavailable(CapProbeError):
    """A best-effort data source is not available in this account/region."""
