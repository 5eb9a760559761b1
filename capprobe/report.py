from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional


SCHEMA_VERSION = 1
TOOL_NAME = "AWS Capability Probe"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def run_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def atomic_write_json(path: str, obj: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=False, default=str)
        f.write("\n")
    os.replace(tmp_path, path)


def append_jsonl(path: str, obj: Any) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(obj, default=str, ensure_ascii=False))
        f.write("\n")


def write_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        if text and not text.endswith("\n"):
            f.write("\n")


def append_text(path: str, text: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)
        if text and not text.endswith("\n"):
            f.write("\n")


def create_bundle(parent: str, prefix: str, timestamp: Optional[str] = None) -> str:
    """
    Create a fresh `<prefix>_<timestamp>` directory under `parent`.

    Two runs within the same second get `..._1`, `..._2`, ... so an existing
    bundle is never reused or overwritten.
    """
    timestamp = timestamp or run_timestamp()
    os.makedirs(parent, exist_ok=True)
    base = os.path.join(parent, f"{prefix}_{timestamp}")
    path = base
    n = 0
    while True:
        try:
            os.mkdir(path)
            return path
        except FileExistsError:
            n += 1
            path = f"{base}_{n}"


def build_report(
    *,
    kind: str,
    run_id: str,
    identity: dict,
    tests: list[dict],
    summary: dict,
    errors: Optional[list[dict]] = None,
    extra: Optional[dict] = None,
) -> dict:
    report = {
        "tool": TOOL_NAME,
        "schema_version": SCHEMA_VERSION,
        "kind": kind,
        "timestamp": run_id,
        "generated_at": utc_now_iso(),
        "account_id": identity.get("account_id") or "unknown",
        "caller_arn": identity.get("arn") or "unknown",
        "tests": tests,
        "summary": summary,
    }
    if extra:
        report.update(extra)
    if errors:
        report["errors"] = errors
    return report
