import os
import sys
import signal
import argparse

from termcolor import colored

from capprobe.aggregate import RECOMMENDATIONS, render_summary, summarize
from capprobe.catalog import load_catalog
from capprobe.config import ProbeConfig, build_session, check_environment, default_region, validate_credential_args
from capprobe.console import Console
from capprobe.errors import AuthFailure, EnvironmentMissing
from capprobe.identity import Principal, resolve_identity
from capprobe.prober import SUMMARY_FILE, CapabilityProber
from capprobe.report import append_text, atomic_write_json, build_report, create_bundle, run_timestamp, write_text


BUNDLE_PREFIX = "aws_capability_test"
BANNER = "================================================"

# Bundle of the run in progress, reported on Ctrl+C
_CURRENT_BUNDLE = None


def signal_handler(signum, frame):
    """Stop on Ctrl+C; whatever was already written stays in the bundle."""
    print(f"\n{colored('[*] ', 'yellow')}Interrupt received.", file=sys.stderr)
    if _CURRENT_BUNDLE:
        print(f"{colored('[*] ', 'yellow')}Partial results kept in {_CURRENT_BUNDLE}", file=sys.stderr)
    sys.exit(130)


def identify(session, bundle, console):
    """Resolve the caller. A failure is logged and the run continues as `unknown`."""
    console.info("Getting caller identity...")
    try:
        principal, response = resolve_identity(session)
    except AuthFailure as e:
        write_text(os.path.join(bundle, "identity_error.txt"), str(e))
        console.error("✗ Cannot get caller identity")
        console.error(str(e))
        return Principal.unknown()

    response.pop("ResponseMetadata", None)
    atomic_write_json(os.path.join(bundle, "identity.json"), response)
    console.line(f"✓ Account: {principal.account_id}", "green")
    console.line(f"✓ Identity: {principal.arn}", "green")
    return principal


def main(config, services=None, catalog_path=None):
    global _CURRENT_BUNDLE

    console = Console(verbose=config.verbose)
    run_id = run_timestamp()
    catalog = load_catalog(catalog_path).only_services(services)
    if not len(catalog):
        console.error(f"No probes left after filtering by service: {', '.join(services or [])}")
        return 1

    session = build_session(config)
    try:
        check_environment(session, ["sts", "iam"] + catalog.clients)
    except EnvironmentMissing as e:
        console.error(str(e))
        return 1

    bundle = create_bundle(config.output_dir, BUNDLE_PREFIX, run_id)
    _CURRENT_BUNDLE = bundle

    console.line(BANNER)
    console.line("AWS Capability Tester - Direct Permission Check")
    console.line(BANNER)
    console.line(f"Output directory: {bundle}")
    console.line(f"Region: {config.region}")
    console.line(f"Mode: {'DESTRUCTIVE' if config.destructive_mode else 'dry-run / simulated for mutating probes'}")
    console.line()

    principal = identify(session, bundle, console)

    prober = CapabilityProber(
        session,
        catalog,
        config,
        principal,
        run_id=run_id,
        bundle_dir=bundle,
        console=console,
    )
    results = prober.run()

    summary = summarize(results)
    summary_text = render_summary(summary)
    append_text(os.path.join(bundle, SUMMARY_FILE), "\nAnalyzing results...\n\n" + summary_text)

    console.line()
    console.line(BANNER)
    console.line("                SUMMARY REPORT                  ")
    console.line(BANNER)
    for line in summary_text.splitlines():
        console.line(line)

    atomic_write_json(
        os.path.join(bundle, "results.json"),
        build_report(
            kind="capability_test",
            run_id=run_id,
            identity=principal.to_dict(),
            tests=[r.to_log_record() for r in results],
            summary=summary.counts(),
            extra={
                "region": config.region,
                "profile": config.profile_label,
                "destructive_mode": config.destructive_mode,
            },
        ),
    )
    write_text(os.path.join(bundle, "recommendations.txt"), RECOMMENDATIONS)

    console.line()
    console.line(BANNER)
    console.line(f"Full results saved to: {bundle}/")
    console.line(f"Summary available at: {os.path.join(bundle, SUMMARY_FILE)}")
    console.line(f"Recommendations saved to: {os.path.join(bundle, 'recommendations.txt')}")
    console.line(BANNER)
    return 0


HELP = "Probe which AWS operations the current credentials can perform, without creating resources by default.\n"


def build_parser():
    parser = argparse.ArgumentParser(description=HELP)
    parser.add_argument("--profile", help="AWS profile to use")
    parser.add_argument("--region", default=None, help="Region to probe (default: $AWS_REGION, $AWS_DEFAULT_REGION or us-east-1)")
    parser.add_argument("--service", nargs="+", help="Only run probes for these services (e.g. ec2 s3)")
    parser.add_argument(
        "--destructive",
        default=False,
        action="store_true",
        help="Issue mutating probes for real. This CREATES resources that you must clean up yourself.",
    )
    parser.add_argument("--output-dir", default=".", help="Directory where the timestamped bundle is created (default: .)")
    parser.add_argument("--no-progress", default=False, action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", default=False, action="store_true", help="Print request details for every probe")

    # AWS credentials arguments
    parser.add_argument("--access-key-id", help="AWS Access Key ID (alternative to profile)")
    parser.add_argument("--secret-access-key", help="AWS Secret Access Key (required with --access-key-id)")
    parser.add_argument("--session-token", help="AWS Session Token (optional, for temporary credentials)")
    return parser


def cli(argv=None):
    args = build_parser().parse_args(argv)

    error = validate_credential_args(args.profile, args.access_key_id, args.secret_access_key)
    if error:
        print(f"{colored('[-] ', 'red')}Error: {error}")
        sys.exit(1)

    services = []
    for item in args.service or []:
        services.extend(p.strip().lower() for p in item.split(",") if p.strip())

    config = ProbeConfig(
        regions=[args.region or default_region()],
        profile=args.profile,
        access_key_id=args.access_key_id,
        secret_access_key=args.secret_access_key,
        session_token=args.session_token,
        destructive_mode=args.destructive,
        output_dir=args.output_dir,
        verbose=args.verbose,
        show_progress=not args.no_progress,
    )

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    sys.exit(main(config, services=services or None))


if __name__ == "__main__":
    cli()
