from __future__ import annotations

import io
import os
import re
import secrets
import zipfile
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional

import yaml


DRY_RUN_NATIVE = "native"
DRY_RUN_SIMULATE = "simulate"
DRY_RUN_MODES = (DRY_RUN_NATIVE, DRY_RUN_SIMULATE)

_PLACEHOLDER_RE = re.compile(r"\{([a-z0-9_]+)\}")

LAMBDA_SOURCE = "def handler(event, context):\n    return 1\n"


def _rules_dir() -> str:
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), "rules")


def _load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML mapping in {path}")
    return data


def _str_tuple(data: dict, key: str) -> tuple[str, ...]:
    items = data.get(key) or []
    if not isinstance(items, list):
        raise ValueError(f"classification.{key} must be a list")
    return tuple(str(x) for x in items if str(x).strip())


@dataclass(frozen=True)
class ClassificationRules:
    """Error codes first, text phrases as fallback. Matching is case-sensitive."""

    dry_run_codes: tuple[str, ...] = ()
    dry_run_phrases: tuple[str, ...] = ()
    denial_codes: tuple[str, ...] = ()
    denial_phrases: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "ClassificationRules":
        if not isinstance(data, dict):
            raise ValueError("classification must be a mapping")
        return cls(
            dry_run_codes=_str_tuple(data, "dry_run_codes"),
            dry_run_phrases=_str_tuple(data, "dry_run_phrases"),
            denial_codes=_str_tuple(data, "denial_codes"),
            denial_phrases=_str_tuple(data, "denial_phrases"),
        )


@dataclass(frozen=True)
class ProbeSpec:
    service: str
    operation: str
    description: str
    method: str
    client: str
    params: dict = field(default_factory=dict)
    mutating: bool = False
    dry_run: Optional[str] = None
    action: Optional[str] = None
    section: str = ""

    @property
    def key(self) -> str:
        return f"{self.service}_{self.operation}"

    @property
    def invocation(self) -> dict:
        return {
            "client": self.client,
            "method": self.method,
            "params": self.params,
            "mutating": self.mutating,
            "dry_run": self.dry_run,
            "action": self.action,
        }


@dataclass(frozen=True)
class Catalog:
    rules: ClassificationRules
    specs: tuple[ProbeSpec, ...]

    def __len__(self) -> int:
        return len(self.specs)

    def __iter__(self):
        return iter(self.specs)

    @property
    def services(self) -> list[str]:
        return list(dict.fromkeys(s.service for s in self.specs))

    @property
    def clients(self) -> list[str]:
        return list(dict.fromkeys(s.client for s in self.specs))

    def only_services(self, services: Optional[Iterable[str]]) -> "Catalog":
        if not services:
            return self
        wanted = {s.strip().lower() for s in services if s and s.strip()}
        return replace(self, specs=tuple(s for s in self.specs if s.service in wanted))


def _parse_probe(raw: Any, section: str) -> ProbeSpec:
    if not isinstance(raw, dict):
        raise ValueError(f"Probe entry in section '{section}' must be a mapping")
    missing = [k for k in ("service", "operation", "description", "method") if not raw.get(k)]
    if missing:
        raise ValueError(f"Probe in section '{section}' is missing: {', '.join(missing)}")

    name = f"{raw['service']}:{raw['operation']}"
    params = raw.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError(f"{name}: params must be a mapping")

    mutating = bool(raw.get("mutating", False))
    dry_run = raw.get("dry_run")
    action = raw.get("action")
    if dry_run is not None and dry_run not in DRY_RUN_MODES:
        raise ValueError(f"{name}: unknown dry_run mode '{dry_run}' (expected one of {', '.join(DRY_RUN_MODES)})")
    if mutating and dry_run is None:
        raise ValueError(f"{name}: mutating probes must declare a dry_run mode")
    if dry_run == DRY_RUN_SIMULATE and not action:
        raise ValueError(f"{name}: dry_run 'simulate' needs an IAM action")

    return ProbeSpec(
        service=str(raw["service"]),
        operation=str(raw["operation"]),
        description=str(raw["description"]),
        method=str(raw["method"]),
        client=str(raw.get("client") or raw["service"]),
        params=params,
        mutating=mutating,
        dry_run=dry_run,
        action=action,
        section=section,
    )


def load_catalog(path: Optional[str] = None) -> Catalog:
    path = path or os.path.join(_rules_dir(), "aws_probes.yaml")
    data = _load_yaml(path)
    if "classification" not in data:
        raise ValueError(f"{path}: missing 'classification' table")
    rules = ClassificationRules.from_dict(data["classification"])

    sections = data.get("sections")
    if not isinstance(sections, list) or not sections:
        raise ValueError(f"{path}: 'sections' must be a non-empty list")

    specs: list[ProbeSpec] = []
    for section in sections:
        if not isinstance(section, dict):
            raise ValueError(f"{path}: every section must be a mapping")
        name = str(section.get("name") or "")
        for raw in section.get("probes") or []:
            specs.append(_parse_probe(raw, name))
    return Catalog(rules=rules, specs=tuple(specs))


def load_report_rules(path: Optional[str] = None) -> dict:
    path = path or os.path.join(_rules_dir(), "access_report.yaml")
    data = _load_yaml(path)
    for key in ("simulation_actions", "quota_services"):
        if not isinstance(data.get(key), list) or not data[key]:
            raise ValueError(f"{path}: '{key}' must be a non-empty list")
    data.setdefault("cloudtrail", {})
    return data


def build_lambda_zip() -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("index.py", LAMBDA_SOURCE)
    return buf.getvalue()


def s3_bucket_configuration(region: str) -> Optional[dict]:
    # us-east-1 rejects an explicit LocationConstraint.
    if not region or region == "us-east-1":
        return None
    return {"LocationConstraint": region}


def render_context(*, timestamp: str, account_id: str, region: str, suffix: Optional[str] = None) -> dict:
    return {
        "timestamp": timestamp,
        "account_id": account_id,
        "region": region,
        "suffix": suffix or secrets.token_hex(3),
        "lambda_zip": build_lambda_zip(),
        "s3_bucket_configuration": s3_bucket_configuration(region),
    }


def render_params(value: Any, context: dict) -> Any:
    """
    Substitute `{name}` placeholders in request parameters.

    A string that is exactly one placeholder takes the context value as-is
    (bytes, dicts, None). Mapping entries that render to None are dropped.
    Unknown `{...}` text (JSON templates) is left alone.
    """
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            rendered = render_params(v, context)
            if rendered is not None:
                out[k] = rendered
        return out
    if isinstance(value, list):
        return [render_params(v, context) for v in value]
    if isinstance(value, str):
        whole = _PLACEHOLDER_RE.fullmatch(value)
        if whole and whole.group(1) in context:
            return context[whole.group(1)]
        return _PLACEHOLDER_RE.sub(
            lambda m: str(context[m.group(1)]) if m.group(1) in context else m.group(0),
            value,
        )
    return value
