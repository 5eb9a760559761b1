from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from capprobe.config import BOTO3_CONFIG
from capprobe.errors import AuthFailure


KIND_USER = "user"
KIND_ROLE = "role"
KIND_UNKNOWN = "unknown"


@dataclass(frozen=True)
class Principal:
    account_id: str
    arn: str
    kind: str
    name: str
    simulation_arn: Optional[str] = None

    @classmethod
    def unknown(cls) -> "Principal":
        return cls(account_id="unknown", arn="unknown", kind=KIND_UNKNOWN, name="")

    @property
    def is_known(self) -> bool:
        return self.kind != KIND_UNKNOWN

    def to_dict(self) -> dict:
        return asdict(self)


def _partition(arn: str) -> str:
    parts = arn.split(":", 2)
    return parts[1] if len(parts) > 2 and parts[1] else "aws"


def parse_principal_arn(arn: str, account_id: Optional[str] = None) -> Principal:
    """
    Classify a caller ARN.

    - `arn:aws:iam::123:user/path/alice`            -> user `alice`
    - `arn:aws:sts::123:assumed-role/Deploy/sess`   -> role `Deploy`, simulated as
      `arn:aws:iam::123:role/Deploy` (the session part is dropped)
    - `arn:aws:iam::123:role/path/Deploy`           -> role `Deploy`
    - anything else (root, federated-user, ...)     -> unknown
    """
    arn = arn or ""
    parts = arn.split(":", 5)
    if account_id is None:
        account_id = parts[4] if len(parts) > 4 and parts[4] else "unknown"
    resource = parts[5] if len(parts) > 5 else ""
    service = parts[2] if len(parts) > 2 else ""

    if service == "iam" and resource.startswith("user/"):
        return Principal(account_id, arn, KIND_USER, resource.rsplit("/", 1)[-1], arn)

    if service == "sts" and resource.startswith("assumed-role/"):
        role_name = resource[len("assumed-role/"):].split("/", 1)[0]
        if role_name:
            sim_arn = f"arn:{_partition(arn)}:iam::{account_id}:role/{role_name}"
            return Principal(account_id, arn, KIND_ROLE, role_name, sim_arn)

    if service == "iam" and resource.startswith("role/"):
        return Principal(account_id, arn, KIND_ROLE, resource.rsplit("/", 1)[-1], arn)

    return Principal(account_id, arn, KIND_UNKNOWN, "", None)


def get_caller_identity(session) -> dict:
    try:
        sts = session.client("sts", config=BOTO3_CONFIG)
        return sts.get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise AuthFailure(f"Cannot get caller identity: {e}") from e


def resolve_identity(session) -> tuple[Principal, dict]:
    """Call `sts:GetCallerIdentity` once. Returns the principal and the raw response."""
    response = get_caller_identity(session)
    account_id = response.get("Account")
    arn = response.get("Arn")
    if not account_id or not arn:
        raise AuthFailure("GetCallerIdentity returned no Account/Arn")
    return parse_principal_arn(arn, account_id), response
