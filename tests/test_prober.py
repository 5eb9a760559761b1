"""Tests for the capability prober: ordering, non-committal mode and captures."""

import json
import os

import pytest
from botocore.exceptions import EndpointConnectionError

from capprobe.catalog import Catalog, ProbeSpec, load_catalog
from capprobe.config import ProbeConfig
from capprobe.console import Console
from capprobe.identity import Principal, parse_principal_arn
from capprobe.prober import CapabilityProber, Outcome


ALICE = parse_principal_arn("arn:aws:iam::123456789012:user/alice")


def _spec(service, operation, **kwargs):
    kwargs.setdefault("description", f"{service} {operation}")
    kwargs.setdefault("method", operation)
    kwargs.setdefault("client", service)
    kwargs.setdefault("section", service.upper())
    return ProbeSpec(service=service, operation=operation, **kwargs)


@pytest.fixture()
def rules():
    return load_catalog().rules


@pytest.fixture()
def small_catalog(rules):
    return Catalog(
        rules=rules,
        specs=(
            _spec("s3", "list_buckets"),
            _spec(
                "ec2",
                "run_instances",
                params={"ImageId": "ami-1", "MinCount": 1, "MaxCount": 1},
                mutating=True,
                dry_run="native",
                action="ec2:RunInstances",
            ),
            _spec(
                "sqs",
                "create_queue",
                params={"QueueName": "probe-{timestamp}"},
                mutating=True,
                dry_run="simulate",
                action="sqs:CreateQueue",
            ),
            _spec("eks", "list_clusters", params={"maxResults": 1}),
            _spec("lambda", "list_functions"),
        ),
    )


def _prober(session, catalog, config, principal=ALICE, bundle_dir=None):
    return CapabilityProber(
        session,
        catalog,
        config,
        principal,
        run_id="20260101-000000",
        bundle_dir=bundle_dir,
        console=Console(),
    )


def _wire_default_responses(session, client_error, decision="allowed"):
    session.client("s3").list_buckets.return_value = {"Buckets": []}
    session.client("ec2").run_instances.side_effect = client_error(
        "DryRunOperation", "Request would have succeeded, but DryRun flag is set.", "RunInstances"
    )
    session.client("iam").simulate_principal_policy.return_value = {
        "EvaluationResults": [{"EvalActionName": "sqs:CreateQueue", "EvalDecision": decision}]
    }
    session.client("eks").list_clusters.side_effect = EndpointConnectionError(endpoint_url="https://eks.us-west-2.amazonaws.com")
    session.client("lambda").list_functions.side_effect = client_error(
        "AccessDeniedException",
        "User: arn:aws:iam::123456789012:user/alice is not authorized to perform: lambda:ListFunctions",
        "ListFunctions",
    )


class TestNonCommittalDefault:

    def test_native_probe_gets_dry_run_flag(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error)
        _prober(session, small_catalog, config).run()

        kwargs = session.clients["ec2"].run_instances.call_args.kwargs
        assert kwargs["DryRun"] is True
        assert kwargs["ImageId"] == "ami-1"

    def test_simulated_probe_never_calls_the_api(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error)
        _prober(session, small_catalog, config).run()

        assert "sqs" not in session.clients
        session.clients["iam"].simulate_principal_policy.assert_called_once_with(
            PolicySourceArn="arn:aws:iam::123456789012:user/alice",
            ActionNames=["sqs:CreateQueue"],
        )

    def test_default_catalog_issues_no_mutating_call(self, session, config, client_error) -> None:
        catalog = load_catalog()
        session.client("iam").simulate_principal_policy.return_value = {
            "EvaluationResults": [{"EvalDecision": "implicitDeny"}]
        }
        _prober(session, catalog, config).run()

        for spec in catalog:
            if not spec.mutating:
                continue
            method = getattr(session.client(spec.client), spec.method)
            if spec.dry_run == "native":
                for call in method.call_args_list:
                    assert call.kwargs.get("DryRun") is True, spec.key
            else:
                method.assert_not_called()

    def test_destructive_mode_calls_for_real(self, session, small_catalog, client_error) -> None:
        _wire_default_responses(session, client_error)
        session.client("ec2").run_instances.side_effect = None
        session.client("ec2").run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        session.client("sqs").create_queue.return_value = {"QueueUrl": "https://sqs/q"}
        config = ProbeConfig(regions=["us-west-2"], destructive_mode=True, show_progress=False)

        results = _prober(session, small_catalog, config).run()

        assert "DryRun" not in session.clients["ec2"].run_instances.call_args.kwargs
        session.clients["sqs"].create_queue.assert_called_once_with(QueueName="probe-20260101-000000")
        session.clients["iam"].simulate_principal_policy.assert_not_called()
        assert [r.outcome for r in results][:3] == [Outcome.ALLOWED] * 3


class TestOutcomes:

    def test_results_follow_declaration_order(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error)
        results = _prober(session, small_catalog, config).run()

        assert len(results) == len(small_catalog)
        assert [(r.service, r.operation) for r in results] == [(s.service, s.operation) for s in small_catalog]
        assert [r.outcome for r in results] == [
            Outcome.ALLOWED,
            Outcome.ALLOWED,
            Outcome.ALLOWED,
            Outcome.ERROR,
            Outcome.DENIED,
        ]
        assert results[1].via_dry_run
        assert results[3].raw_error.startswith("Could not connect to the endpoint URL")

    def test_simulated_denial(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error, decision="explicitDeny")
        results = _prober(session, small_catalog, config).run()

        assert results[2].outcome is Outcome.DENIED
        assert "explicitDeny" in results[2].raw_error

    def test_simulation_needs_a_known_principal(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error)
        results = _prober(session, small_catalog, config, principal=Principal.unknown()).run()

        assert results[2].outcome is Outcome.ERROR
        session.clients["iam"].simulate_principal_policy.assert_not_called()

    def test_failed_simulation_is_an_error_not_a_denial(self, session, small_catalog, config, client_error) -> None:
        _wire_default_responses(session, client_error)
        session.client("iam").simulate_principal_policy.side_effect = client_error(
            "AccessDenied", "not authorized to perform: iam:SimulatePrincipalPolicy", "SimulatePrincipalPolicy"
        )
        results = _prober(session, small_catalog, config).run()

        assert results[2].outcome is Outcome.ERROR
        assert results[2].raw_error.startswith("Cannot simulate sqs:CreateQueue")

    def test_templated_params_reach_the_client(self, session, config, rules) -> None:
        catalog = Catalog(
            rules=rules,
            specs=(_spec("s3", "head_bucket", params={"Bucket": "logs-{account_id}"}),),
        )
        _prober(session, catalog, config).run()
        session.clients["s3"].head_bucket.assert_called_once_with(Bucket="logs-123456789012")


class TestCaptures:

    def test_log_and_raw_files(self, session, small_catalog, config, client_error, tmp_path) -> None:
        _wire_default_responses(session, client_error)
        bundle = tmp_path / "bundle"
        bundle.mkdir()
        _prober(session, small_catalog, config, bundle_dir=str(bundle)).run()

        lines = (bundle / "test_log.jsonl").read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines]
        assert len(records) == len(small_catalog)
        assert records[0] == {
            "service": "s3",
            "operation": "list_buckets",
            "description": "s3 list_buckets",
            "success": True,
            "outcome": "ALLOWED",
            "error": "",
        }
        assert records[4]["success"] is False
        assert records[4]["outcome"] == "DENIED"

        for spec in small_catalog:
            assert os.path.exists(bundle / f"{spec.key}_output.txt")
            assert os.path.exists(bundle / f"{spec.key}_error.txt")
        assert "Buckets" in (bundle / "s3_list_buckets_output.txt").read_text(encoding="utf-8")
        assert "DryRunOperation" in (bundle / "ec2_run_instances_error.txt").read_text(encoding="utf-8")

    def test_section_headers_are_appended_to_the_running_summary(self, session, small_catalog, config, client_error, tmp_path) -> None:
        _wire_default_responses(session, client_error)
        bundle = tmp_path / "bundle"
        bundle.mkdir()
        _prober(session, small_catalog, config, bundle_dir=str(bundle)).run()

        lines = (bundle / "summary.txt").read_text(encoding="utf-8").splitlines()
        assert lines == ["=== S3 ===", "=== EC2 ===", "=== SQS ===", "=== EKS ===", "=== LAMBDA ==="]
