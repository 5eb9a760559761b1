from __future__ import annotations

from typing import Any, Optional


def normalize_simulation(response: Optional[dict]) -> list[dict[str, Any]]:
    """Compact `{action, decision, matched_statements}` rows from a SimulatePrincipalPolicy response."""
    out: list[dict[str, Any]] = []
    if not isinstance(response, dict):
        return out
    for item in response.get("EvaluationResults") or []:
        if not isinstance(item, dict):
            continue
        action = item.get("EvalActionName")
        if not isinstance(action, str) or not action:
            continue
        matched = item.get("MatchedStatements")
        out.append(
            {
                "action": action,
                "decision": item.get("EvalDecision") or "unknown",
                "matched_statements": len(matched) if isinstance(matched, list) else 0,
            }
        )
    return out


def decision_counts(rows: list[dict[str, Any]]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for row in rows:
        decision = row.get("decision") or "unknown"
        counts[decision] = counts.get(decision, 0) + 1
    return counts


def normalize_quotas(payload: Optional[dict]) -> list[dict[str, Any]]:
    """Flatten a ListServiceQuotas payload to `{code, name, value, adjustable}` rows."""
    out: list[dict[str, Any]] = []
    if not isinstance(payload, dict):
        return out
    for quota in payload.get("Quotas") or []:
        if not isinstance(quota, dict):
            continue
        out.append(
            {
                "code": quota.get("QuotaCode"),
                "name": quota.get("QuotaName"),
                "value": quota.get("Value"),
                "adjustable": bool(quota.get("Adjustable", False)),
            }
        )
    return out


def merge_pages(pages, list_keys) -> dict[str, Any]:
    """Merge paginator pages into one document, concatenating the listed keys."""
    merged: dict[str, Any] = {k: [] for k in list_keys}
    for page in pages:
        if not isinstance(page, dict):
            continue
        for key, value in page.items():
            if key in ("ResponseMetadata", "IsTruncated", "Marker", "NextToken"):
                continue
            if key in merged and isinstance(value, list):
                merged[key].extend(value)
            else:
                merged[key] = value
    return merged
