"""Tests for the probe catalog loader and request templating."""

import io
import textwrap
import zipfile

import pytest

from capprobe.catalog import (
    DRY_RUN_MODES,
    build_lambda_zip,
    load_catalog,
    load_report_rules,
    render_context,
    render_params,
    s3_bucket_configuration,
)


def _write_catalog(tmp_path, probes_yaml):
    body = textwrap.dedent("""\
        classification:
          dry_run_codes: [DryRunOperation]
          denial_codes: [AccessDenied]
        sections:
          - name: Test
            probes:
        """) + textwrap.indent(textwrap.dedent(probes_yaml), "      ")
    path = tmp_path / "probes.yaml"
    path.write_text(body, encoding="utf-8")
    return str(path)


class TestDefaultCatalog:

    def test_loads_in_declared_order(self) -> None:
        catalog = load_catalog()
        keys = [s.key for s in catalog]
        assert keys[0] == "ec2_describe_instances"
        assert keys[-1] == "ssm_get_parameter"
        assert len(keys) == len(set(keys))

    def test_every_mutating_probe_is_non_committal(self) -> None:
        catalog = load_catalog()
        mutating = [s for s in catalog if s.mutating]
        assert mutating
        for spec in mutating:
            assert spec.dry_run in DRY_RUN_MODES, spec.key
            assert spec.action, spec.key

    def test_create_operations_are_marked_mutating(self) -> None:
        for spec in load_catalog():
            if spec.method.startswith(("create_", "run_", "allocate_")):
                assert spec.mutating, spec.key

    def test_only_services_keeps_order(self) -> None:
        catalog = load_catalog().only_services(["sqs", "ec2"])
        services = [s.service for s in catalog]
        assert set(services) == {"ec2", "sqs"}
        assert services.index("sqs") > services.index("ec2")

    def test_only_services_none_is_identity(self) -> None:
        catalog = load_catalog()
        assert catalog.only_services(None) is catalog


class TestCatalogValidation:

    def test_mutating_without_dry_run_is_rejected(self, tmp_path) -> None:
        path = _write_catalog(tmp_path, """\
            - service: sqs
              operation: create_queue
              description: Create queue
              method: create_queue
              mutating: true
            """)
        with pytest.raises(ValueError, match="must declare a dry_run mode"):
            load_catalog(path)

    def test_simulate_needs_action(self, tmp_path) -> None:
        path = _write_catalog(tmp_path, """\
            - service: sqs
              operation: create_queue
              description: Create queue
              method: create_queue
              mutating: true
              dry_run: simulate
            """)
        with pytest.raises(ValueError, match="needs an IAM action"):
            load_catalog(path)

    def test_unknown_dry_run_mode(self, tmp_path) -> None:
        path = _write_catalog(tmp_path, """\
            - service: ec2
              operation: run_instances
              description: Launch
              method: run_instances
              mutating: true
              dry_run: maybe
            """)
        with pytest.raises(ValueError, match="unknown dry_run mode"):
            load_catalog(path)

    def test_missing_fields(self, tmp_path) -> None:
        path = _write_catalog(tmp_path, """\
            - service: ec2
              operation: describe_vpcs
            """)
        with pytest.raises(ValueError, match="missing: description, method"):
            load_catalog(path)

    def test_not_a_mapping(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid YAML mapping"):
            load_catalog(str(path))

    def test_client_defaults_to_service(self, tmp_path) -> None:
        path = _write_catalog(tmp_path, """\
            - service: ec2
              operation: describe_vpcs
              description: List VPCs
              method: describe_vpcs
            """)
        spec = next(iter(load_catalog(path)))
        assert spec.client == "ec2"
        assert spec.invocation["method"] == "describe_vpcs"
        assert spec.section == "Test"


class TestRenderParams:

    def test_substitutes_placeholders(self) -> None:
        ctx = {"timestamp": "20260101-000000", "account_id": "123456789012"}
        out = render_params({"Name": "probe-{timestamp}", "Role": "arn:aws:iam::{account_id}:role/x"}, ctx)
        assert out == {"Name": "probe-20260101-000000", "Role": "arn:aws:iam::123456789012:role/x"}

    def test_whole_value_keeps_type(self) -> None:
        ctx = {"lambda_zip": b"PK\x03\x04"}
        assert render_params({"Code": {"ZipFile": "{lambda_zip}"}}, ctx) == {"Code": {"ZipFile": b"PK\x03\x04"}}

    def test_none_values_are_dropped(self) -> None:
        ctx = {"s3_bucket_configuration": None}
        assert render_params({"Bucket": "b", "CreateBucketConfiguration": "{s3_bucket_configuration}"}, ctx) == {"Bucket": "b"}

    def test_json_template_untouched(self) -> None:
        body = '{"Resources":{"MyBucket":{"Type":"AWS::S3::Bucket"}}}'
        assert render_params({"TemplateBody": body}, {"timestamp": "x"}) == {"TemplateBody": body}

    def test_lists_and_scalars(self) -> None:
        out = render_params({"Filters": [{"Values": ["{region}"]}], "MaxResults": 5}, {"region": "eu-west-1"})
        assert out == {"Filters": [{"Values": ["eu-west-1"]}], "MaxResults": 5}

    def test_placeholder_names_may_contain_digits(self) -> None:
        ctx = {"s3_bucket_configuration": {"LocationConstraint": "eu-west-1"}}
        assert render_params("{s3_bucket_configuration}", ctx) == {"LocationConstraint": "eu-west-1"}

    @pytest.mark.parametrize(
        ("region", "expected"),
        [
            ("us-west-2", {"LocationConstraint": "us-west-2"}),
            ("us-east-1", None),
        ],
    )
    def test_catalog_create_bucket_params(self, region, expected) -> None:
        spec = next(s for s in load_catalog() if s.key == "s3_create_bucket")
        ctx = render_context(timestamp="20260101-000000", account_id="123456789012", region=region, suffix="abc123")

        params = render_params(spec.params, ctx)

        assert params["Bucket"] == "capprobe-20260101-000000-abc123"
        if expected is None:
            assert "CreateBucketConfiguration" not in params
        else:
            assert params["CreateBucketConfiguration"] == expected

    def test_render_context(self) -> None:
        ctx = render_context(timestamp="t", account_id="1", region="us-east-1", suffix="abc")
        assert ctx["suffix"] == "abc"
        assert ctx["s3_bucket_configuration"] is None


class TestHelpers:

    def test_bucket_configuration(self) -> None:
        assert s3_bucket_configuration("us-east-1") is None
        assert s3_bucket_configuration("eu-west-1") == {"LocationConstraint": "eu-west-1"}

    def test_lambda_zip(self) -> None:
        with zipfile.ZipFile(io.BytesIO(build_lambda_zip())) as zf:
            assert "def handler" in zf.read("index.py").decode()

    def test_report_rules(self) -> None:
        rules = load_report_rules()
        assert len(rules["simulation_actions"]) == 24
        assert "iam:PassRole" in rules["simulation_actions"]
        assert rules["quota_services"][0] == "ec2"
        assert len(rules["quota_services"]) == 13
        assert rules["cloudtrail"]["max_poll_attempts"] == 10
