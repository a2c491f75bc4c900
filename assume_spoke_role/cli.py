"""
Command-line interface for assume-spoke-role.
"""

import argparse
import logging
import os
import platform
import re
import subprocess
import sys

import boto3
import botocore

from . import __version__
from .core import (
    DEFAULT_RETRIES,
    AssumeRoleFailed,
    ConfigurationError,
    CredentialRequest,
    MissingParameter,
    SubprocessLaunchFailed,
    create_base_session,
    create_client_config,
    credentials_environment,
    get_spoke_credentials,
    validate_request,
)

DESCRIPTION = """\
Assume an IAM hub role, then IAM spoke role, in AWS.

Designate a single AWS account as the "hub account" and the others as "spoke
accounts". Starting from a base credential (an IAM user, an SSO role, an
instance role), assume the hub role in the hub account, then the spoke role
in the spoke account, and run a command with the spoke credentials.
"""

EPILOG = """\
Examples:
  export ASSUME_ROLE_EXTERNAL_ID=this-is-my-robot
  export ASSUME_ROLE_HUB_ACCOUNT=999999999999
  export ASSUME_ROLE_HUB_ROLE=robot-hub-role
  export ASSUME_ROLE_SPOKE_ROLE=robot-spoke-role
  assume-spoke-role run --spoke-account 888888888888 -- aws sts get-caller-identity

  assume-spoke-role run \\
      --hub-account 999999999999 --spoke-account 888888888888 \\
      --hub-role robot-hub-role --spoke-role robot-spoke-role \\
      --external-id this-is-my-robot \\
      -- aws sts get-caller-identity
"""

# request field -> (option dest, flag, environment variable)
OPTION_SOURCES = {
    "hub_account_id": ("hub_account", "--hub-account", "ASSUME_ROLE_HUB_ACCOUNT"),
    "hub_role_name": ("hub_role", "--hub-role", "ASSUME_ROLE_HUB_ROLE"),
    "spoke_account_id": ("spoke_account", "--spoke-account", "ASSUME_ROLE_SPOKE_ACCOUNT"),
    "spoke_role_name": ("spoke_role", "--spoke-role", "ASSUME_ROLE_SPOKE_ROLE"),
    "external_id": ("external_id", "--external-id", "ASSUME_ROLE_EXTERNAL_ID"),
    "session_string": ("session_string", "--session-string", "ASSUME_ROLE_SESSION_STRING"),
}

# Credential values in STS wire logs: XML bodies, JSON bodies, request headers
REDACTED = "********"
CREDENTIAL_PATTERNS = [
    re.compile(r"(<(AccessKeyId|SecretAccessKey|SessionToken)>)[^<]*(</\2>)"),
    re.compile(r'("(AccessKeyId|SecretAccessKey|SessionToken)"\s*:\s*")[^"]*(")'),
    re.compile(r"""(['"]X-Amz-Security-Token['"]:\s*b?['"])()[^'"]*(['"])"""),
]


def split_command(argv):
    """
    Split argv at the first "--" into CLI options and the command to run.

    Returns:
        tuple: (options list, command list or None when there is no "--")
    """
    if "--" not in argv:
        return list(argv), None
    index = argv.index("--")
    return list(argv[:index]), list(argv[index + 1 :])


def build_common_parser():
    """Options accepted both before and after the subcommand name."""
    # SUPPRESS keeps the run subparser from resetting values given at the top level
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-r",
        "--retries",
        type=int,
        default=argparse.SUPPRESS,
        help=f"Number of times the AWS SDK retries a failed API call (default: {DEFAULT_RETRIES})",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Enable verbose logging, including over-the-wire AWS SDK logging. "
        "Credential values in AWS SDK wire logs are redacted",
    )
    return common


def build_parser():
    """Build the argparse parser with the run and version subcommands."""
    common = build_common_parser()
    parser = argparse.ArgumentParser(
        prog="assume-spoke-role",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
    )
    parser.add_argument(
        "--version", action="version", version=f"assume-spoke-role {__version__}"
    )
    subparsers = parser.add_subparsers(dest="command_name")

    run_parser = subparsers.add_parser(
        "run",
        help="Perform the action of assuming roles and running an action",
        usage="%(prog)s [options] -- COMMAND [ARGS ...]",
        description="Perform the action of assuming roles and running an action.\n\n"
        "Use environment variables to store parameter values consistently. "
        "CLI options take precedence over environment variables.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
    )
    # Defaults stay None so resolve_options can tell "not given" from "empty"
    run_parser.add_argument(
        "-e",
        "--external-id",
        default=None,
        help="(ASSUME_ROLE_EXTERNAL_ID) The external ID value that is required by your "
        "hub and spoke policies, if any",
    )
    run_parser.add_argument(
        "-a",
        "--hub-account",
        default=None,
        help="(ASSUME_ROLE_HUB_ACCOUNT) The 12-digit AWS account ID containing the HUB role [required]",
    )
    run_parser.add_argument(
        "-s",
        "--spoke-account",
        default=None,
        help="(ASSUME_ROLE_SPOKE_ACCOUNT) The 12-digit AWS account ID containing the SPOKE role [required]",
    )
    run_parser.add_argument(
        "-H",
        "--hub-role",
        default=None,
        help="(ASSUME_ROLE_HUB_ROLE) The name of the IAM role to assume in the HUB account [required]",
    )
    run_parser.add_argument(
        "-S",
        "--spoke-role",
        default=None,
        help="(ASSUME_ROLE_SPOKE_ROLE) The name of the IAM role to assume in the SPOKE account [required]",
    )
    run_parser.add_argument(
        "-I",
        "--session-string",
        default=None,
        help="(ASSUME_ROLE_SESSION_STRING) A string that will be part of the resulting "
        "User ID in the spoke account",
    )
    run_parser.add_argument(
        "--profile",
        default=None,
        help="AWS profile holding the base credentials (defaults to the standard AWS credential chain)",
    )
    run_parser.add_argument(
        "--region",
        default=None,
        help="AWS region for STS calls (defaults to AWS_REGION / AWS_DEFAULT_REGION)",
    )

    subparsers.add_parser("version", help="Verbose information about the build")
    return parser


def resolve_options(args, environ):
    """
    Resolve the CredentialRequest for one invocation.

    Explicit flags win over environment variables, which win over the
    built-in default (an empty string).

    Args:
        args: argparse.Namespace from the run subcommand
        environ: Environment mapping to read ASSUME_ROLE_* variables from

    Returns:
        CredentialRequest
    """
    values = {}
    for field, (dest, _flag, env_var) in OPTION_SOURCES.items():
        value = getattr(args, dest, None)
        if value is None:
            value = environ.get(env_var, "")
        values[field] = value
    return CredentialRequest(**values)


def redact_credentials(text):
    for pattern in CREDENTIAL_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED + m.group(3), text)
    return text


class RedactCredentialsFilter(logging.Filter):
    """Blank out STS credential values in AWS SDK wire log records."""

    def filter(self, record):
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(verbose):
    if not verbose:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s [%(levelname)s] %(message)s"))
    package_logger = logging.getLogger("assume_spoke_role")
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)

    boto3.set_stream_logger("botocore", logging.DEBUG)
    # Handler filters also see records from botocore.parsers, botocore.endpoint, ...
    logging.getLogger("botocore").handlers[-1].addFilter(RedactCredentialsFilter())


def run_command(credentials, command, environ=None):
    """
    Run a command with the spoke credentials in its environment.

    The child inherits stdin/stdout/stderr and a copy of the parent
    environment with the AWS_* credential variables set.

    Args:
        credentials: Spoke credentials dict
        command: Command and arguments to execute
        environ: Parent environment (defaults to os.environ)

    Returns:
        int: the command's exit status, 128 + N when killed by signal N

    Raises:
        SubprocessLaunchFailed: If the command cannot be started
    """
    env = credentials_environment(credentials, os.environ if environ is None else environ)
    try:
        completed = subprocess.run(command, env=env)
    except OSError as e:
        raise SubprocessLaunchFailed(command, e) from e

    status = completed.returncode
    if status < 0:
        print(f"Error: '{command[0]}' was killed by signal {-status}", file=sys.stderr)
        return 128 - status
    if status != 0:
        print(f"Error: '{command[0]}' exited with status {status}", file=sys.stderr)
    return status


def report_error(summary, details=None):
    print(f"Error: {summary}", file=sys.stderr)
    if details:
        print(f"Details: {details}", file=sys.stderr)


def cmd_run(args, parser):
    """Handle the run subcommand."""
    command = args.command
    if not command:
        parser.error("run requires -- followed by the command to execute")

    configure_logging(getattr(args, "verbose", False))
    request = resolve_options(args, os.environ)

    try:
        validate_request(request)
    except MissingParameter as e:
        _dest, flag, env_var = OPTION_SOURCES[e.field]
        report_error(f"Missing required parameter {flag}")
        print(f"  Set it with {flag} or the {env_var} environment variable.", file=sys.stderr)
        return 1

    try:
        client_config = create_client_config(getattr(args, "retries", DEFAULT_RETRIES))
        session = create_base_session(profile=args.profile, region=args.region)
    except ConfigurationError as e:
        report_error("Could not generate a valid AWS configuration object", e)
        return 1

    try:
        credentials, _spoke_session = get_spoke_credentials(request, session, client_config)
    except AssumeRoleFailed as e:
        report_error("Could not generate valid AWS credentials for the 'spoke' account", e)
        return 1

    try:
        return run_command(credentials, command)
    except SubprocessLaunchFailed as e:
        report_error("Could not run command", e)
        return 1


def cmd_version():
    """Handle the version subcommand."""
    print(
        f"assume-spoke-role {__version__} "
        f"({platform.system().lower()}/{platform.machine().lower()})"
    )
    print(f"  Python:   {platform.python_version()}")
    print(f"  boto3:    {boto3.__version__}")
    print(f"  botocore: {botocore.__version__}")
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    options, command = split_command(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(options)
    args.command = command

    if args.command_name == "run":
        return cmd_run(args, parser)
    if args.command_name == "version":
        return cmd_version()

    parser.print_help(sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
