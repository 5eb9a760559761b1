from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from capprobe.prober import Outcome, ProbeResult


RECOMMENDATIONS = """\
AWS Capability Test - Recommendations
======================================

Based on the test results, here are key findings:

1. EC2 CAPABILITIES:
   - If EC2 RunInstances is ALLOWED: You can launch EC2 instances
   - If EC2 DescribeInstances is ALLOWED: You can monitor existing instances
   - If both are DENIED: You have no EC2 access

2. S3 CAPABILITIES:
   - If S3 CreateBucket is ALLOWED: You can create new S3 buckets
   - If S3 ListBuckets is ALLOWED: You can see existing buckets
   - If S3 GetObject/PutObject are tested separately, they show data access

3. SERVERLESS CAPABILITIES:
   - Lambda CreateFunction: Shows if you can deploy serverless functions
   - API Gateway access: Shows if you can create APIs

4. DATABASE CAPABILITIES:
   - RDS CreateDBInstance: Shows if you can create databases
   - DynamoDB CreateTable: Shows if you can create NoSQL tables

5. CONTAINER CAPABILITIES:
   - ECS/EKS/ECR permissions show container deployment abilities

WHAT YOU CAN DO WITH ALLOWED PERMISSIONS:
- Any operation marked as "✓ ALLOWED" can be executed
- Dry-run and simulated successes indicate the actual operation would work
- Focus on services where you have both read and write permissions

NEXT STEPS:
1. For allowed operations, re-run with --destructive to confirm for real
2. For critical denied operations, request specific IAM permissions
3. Use allowed read operations to audit existing resources
"""


@dataclass
class ProbeSummary:
    allowed: list[ProbeResult] = field(default_factory=list)
    denied: list[ProbeResult] = field(default_factory=list)
    errors: list[ProbeResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.allowed) + len(self.denied) + len(self.errors)

    @property
    def allowed_count(self) -> int:
        return len(self.allowed)

    @property
    def denied_count(self) -> int:
        return len(self.denied)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def counts(self) -> dict:
        return {
            "total": self.total,
            "allowed": self.allowed_count,
            "denied": self.denied_count,
            "errors": self.error_count,
        }


def summarize(results: Iterable[ProbeResult]) -> ProbeSummary:
    summary = ProbeSummary()
    for r in results:
        if r.outcome is Outcome.ALLOWED:
            summary.allowed.append(r)
        elif r.outcome is Outcome.DENIED:
            summary.denied.append(r)
        else:
            summary.errors.append(r)
    return summary


def render_summary(summary: ProbeSummary) -> str:
    lines = [
        f"Total tests run: {summary.total}",
        f"✓ Allowed operations: {summary.allowed_count}",
        f"✗ Denied operations: {summary.denied_count}",
        f"⚠ Errored operations: {summary.error_count}",
        "",
        "=== ALLOWED OPERATIONS ===",
    ]
    lines += [f"  ✓ {r.service}:{r.operation} - {r.description}" for r in summary.allowed]
    lines += ["", "=== DENIED OPERATIONS ==="]
    lines += [f"  ✗ {r.service}:{r.operation} - {r.description}" for r in summary.denied]
    if summary.errors:
        lines += ["", "=== ERRORED OPERATIONS ==="]
        lines += [f"  ⚠ {r.service}:{r.operation} - {r.description}: {r.raw_error}" for r in summary.errors]
    return "\n".join(lines) + "\n"
