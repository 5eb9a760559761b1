import os
import sys
import signal
import argparse

from termcolor import colored

from capprobe.config import ProbeConfig, build_session, check_environment, default_region, validate_credential_args
from capprobe.console import Console
from capprobe.errors import AuthFailure, EnvironmentMissing
from capprobe.reporter import AccessLimitsReporter
from capprobe.report import create_bundle, run_timestamp


BUNDLE_PREFIX = "aws_access_report"
REQUIRED_SERVICES = ["sts", "iam", "service-quotas", "cloudtrail"]

# Bundle of the run in progress, reported on Ctrl+C
_CURRENT_BUNDLE = None


def signal_handler(signum, frame):
    """Stop on Ctrl+C; the files written so far stay in the bundle."""
    print(f"\n{colored('[*] ', 'yellow')}Interrupt received.", file=sys.stderr)
    if _CURRENT_BUNDLE:
        print(f"{colored('[*] ', 'yellow')}Partial bundle kept in {_CURRENT_BUNDLE}", file=sys.stderr)
    sys.exit(130)


def main(config, rules=None):
    global _CURRENT_BUNDLE

    console = Console(verbose=config.verbose)
    run_id = run_timestamp()
    session = build_session(config)
    try:
        check_environment(session, REQUIRED_SERVICES)
    except EnvironmentMissing as e:
        console.error(str(e))
        return 1

    bundle = create_bundle(config.output_dir, BUNDLE_PREFIX, run_id)
    _CURRENT_BUNDLE = bundle
    console.attach_log(os.path.join(bundle, "_log.txt"))
    console.info(f"Writing output to: {bundle}")
    console.info(f"Regions: {' '.join(config.regions)}")

    reporter = AccessLimitsReporter(
        session,
        config,
        bundle_dir=bundle,
        run_id=run_id,
        console=console,
        rules=rules,
    )
    try:
        reporter.run()
    except AuthFailure as e:
        console.error(str(e))
        console.error("A caller identity is required for the rest of the report; aborting.")
        return 1

    if reporter.errors:
        console.warn(f"{len(reporter.errors)} non-fatal errors while collecting (see {os.path.join(bundle, '_log.txt')})")
    console.success(f"Bundle created at: {bundle}")
    console.info(f"To archive: tar -czf {bundle}.tar.gz {bundle}")
    return 0


HELP = "Collect a proof bundle of the current AWS principal's policies, simulated permissions and service quotas.\n"


def build_parser():
    parser = argparse.ArgumentParser(description=HELP)
    parser.add_argument("regions", nargs="*", help="Regions for the quota sweep and CloudTrail query (default: $AWS_REGION, $AWS_DEFAULT_REGION or us-east-1)")
    parser.add_argument("--profile", help="AWS profile to use")
    parser.add_argument("--output-dir", default=".", help="Directory where the timestamped bundle is created (default: .)")
    parser.add_argument("--no-progress", default=False, action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", default=False, action="store_true", help="Log every tolerated failure, including missing quotas")

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

    config = ProbeConfig(
        regions=list(args.regions) or [default_region()],
        profile=args.profile,
        access_key_id=args.access_key_id,
        secret_access_key=args.secret_access_key,
        session_token=args.session_token,
        output_dir=args.output_dir,
        verbose=args.verbose,
        show_progress=not args.no_progress,
    )

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    sys.exit(main(config))


if __name__ == "__main__":
    cli()
