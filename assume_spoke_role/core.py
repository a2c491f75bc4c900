"""
Core role-chaining functions for assume-spoke-role.
"""

import logging
import time
from collections import namedtuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

logger = logging.getLogger(__name__)

ROLE_ARN_TEMPLATE = "arn:aws:iam::{account_id}:role/{role_name}"
DEFAULT_SESSION_PREFIX = "assume-spoke-role"
DEFAULT_RETRIES = 3

# Checked in this order; the first empty one is reported
REQUIRED_FIELDS = ("hub_account_id", "hub_role_name", "spoke_account_id", "spoke_role_name")

CredentialRequest = namedtuple(
    "CredentialRequest",
    [
        "hub_account_id",
        "hub_role_name",
        "spoke_account_id",
        "spoke_role_name",
        "external_id",
        "session_string",
    ],
    defaults=("", ""),
)


class AssumeSpokeRoleError(Exception):
    """Base class for every error raised by assume-spoke-role."""


class MissingParameter(AssumeSpokeRoleError):
    """A mandatory identifier was not supplied."""

    def __init__(self, field):
        self.field = field
        super().__init__(f"Missing required parameter: {field}")


class ConfigurationError(AssumeSpokeRoleError):
    """The base AWS session or client configuration could not be built."""


class AssumeRoleFailed(AssumeSpokeRoleError):
    """An AssumeRole call was rejected."""

    hop = None

    def __init__(self, role_arn, account_id, cause):
        self.role_arn = role_arn
        self.account_id = account_id
        self.error_code = None
        if isinstance(cause, ClientError):
            self.error_code = cause.response.get("Error", {}).get("Code")
        super().__init__(
            f"Error assuming '{role_arn}' {self.hop} role in account {account_id}: {cause}"
        )


class HubAssumeRoleFailed(AssumeRoleFailed):
    hop = "hub"


class SpokeAssumeRoleFailed(AssumeRoleFailed):
    hop = "spoke"


class SubprocessLaunchFailed(AssumeSpokeRoleError):
    """The command to run with the spoke credentials could not be started."""

    def __init__(self, command, cause):
        self.command = command
        super().__init__(f"Could not start '{command[0] if command else ''}': {cause}")


def role_arn(account_id, role_name):
    """Build the IAM role ARN for a role name in an account."""
    return ROLE_ARN_TEMPLATE.format(account_id=account_id, role_name=role_name)


def validate_request(request):
    """
    Ensure every mandatory identifier of a CredentialRequest is set.

    Raises:
        MissingParameter: naming the first empty field
    """
    for field in REQUIRED_FIELDS:
        if not getattr(request, field):
            raise MissingParameter(field)


def create_client_config(retries=DEFAULT_RETRIES):
    """
    Build the botocore client configuration used for every STS call.

    Retries are handled entirely by botocore's transport retry policy.

    Args:
        retries: Number of retries botocore makes per API call, after the first attempt

    Returns:
        botocore.config.Config
    """
    if retries is None or retries < 0:
        raise ConfigurationError(f"Retry count must be zero or more, got {retries}")
    return Config(retries={"max_attempts": retries, "mode": "standard"})


def create_base_session(profile=None, region=None):
    """
    Create the boto3 session holding the caller's base credentials.

    With no profile, botocore's default credential chain is used (environment
    variables, shared credentials/config files, SSO, instance metadata).

    Args:
        profile: Optional AWS profile name
        region: Optional region name

    Returns:
        boto3.Session with resolvable credentials

    Raises:
        ConfigurationError: If the profile does not exist or no credentials are found
    """
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
        credentials = session.get_credentials()
    except ProfileNotFound as e:
        raise ConfigurationError(f"AWS profile '{profile}' not found") from e
    except BotoCoreError as e:
        raise ConfigurationError(f"Could not load AWS configuration: {e}") from e

    if credentials is None:
        raise ConfigurationError(
            "No AWS credentials found. Export AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY, "
            "use --profile, or run on a host with an instance role"
        )
    return session


def session_from_credentials(credentials, region=None):
    """Create an independent boto3 session from an STS Credentials dict."""
    return boto3.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=region,
    )


def assume_role(session, arn, session_name, external_id="", client_config=None):
    """
    Call STS AssumeRole once with the credentials of a session.

    Args:
        session: boto3.Session whose credentials sign the request
        arn: Role ARN to assume
        session_name: RoleSessionName to send
        external_id: ExternalId to send; omitted entirely when empty
        client_config: Optional botocore Config for the STS client

    Returns:
        dict with AccessKeyId, SecretAccessKey, SessionToken, Expiration
    """
    params = {"RoleArn": arn, "RoleSessionName": session_name}
    if external_id:
        params["ExternalId"] = external_id

    sts_client = session.client("sts", config=client_config)
    response = sts_client.assume_role(**params)
    return response["Credentials"]


def get_spoke_credentials(request, session, client_config=None):
    """
    Assume the hub role, then the spoke role, and return the spoke credentials.

    The hub role is assumed with the base session's credentials. The spoke
    role is assumed with the hub's temporary credentials through a new
    session; the base session is never modified. The spoke session name is
    always "<spoke account>-<session string>", even for an empty session
    string.

    Args:
        request: CredentialRequest describing both hops
        session: boto3.Session holding the base credentials
        client_config: Optional botocore Config (retry policy) for STS clients

    Returns:
        tuple: (credentials dict, boto3.Session scoped to the spoke credentials)

    Raises:
        MissingParameter: Before any STS call, if an identifier is empty
        HubAssumeRoleFailed: If the hub AssumeRole call fails
        SpokeAssumeRoleFailed: If the spoke AssumeRole call fails
    """
    validate_request(request)

    hub_arn = role_arn(request.hub_account_id, request.hub_role_name)
    spoke_arn = role_arn(request.spoke_account_id, request.spoke_role_name)

    hub_session_name = request.session_string
    if not hub_session_name:
        # STS rejects an empty RoleSessionName
        hub_session_name = f"{DEFAULT_SESSION_PREFIX}-{int(time.time())}"
    spoke_session_name = f"{request.spoke_account_id}-{request.session_string}"

    logger.debug("Assuming hub role %s as session %s", hub_arn, hub_session_name)
    try:
        hub_credentials = assume_role(
            session, hub_arn, hub_session_name, request.external_id, client_config
        )
    except (ClientError, BotoCoreError) as e:
        raise HubAssumeRoleFailed(hub_arn, request.hub_account_id, e) from e

    hub_session = session_from_credentials(hub_credentials, session.region_name)

    logger.debug("Assuming spoke role %s as session %s", spoke_arn, spoke_session_name)
    try:
        spoke_credentials = assume_role(
            hub_session, spoke_arn, spoke_session_name, request.external_id, client_config
        )
    except (ClientError, BotoCoreError) as e:
        raise SpokeAssumeRoleFailed(spoke_arn, request.spoke_account_id, e) from e

    logger.debug("Spoke credentials expire at %s", spoke_credentials.get("Expiration"))
    return spoke_credentials, session_from_credentials(spoke_credentials, session.region_name)


def format_expiration(expiration):
    if hasattr(expiration, "isoformat"):
        return expiration.isoformat()
    return str(expiration)


def credentials_environment(credentials, environ):
    """
    Build a child process environment carrying the spoke credentials.

    Args:
        credentials: dict with AccessKeyId, SecretAccessKey, SessionToken, Expiration
        environ: Parent environment mapping; copied, never modified

    Returns:
        dict: environment for the child process
    """
    env = dict(environ)
    env["AWS_ACCESS_KEY_ID"] = credentials["AccessKeyId"]
    env["AWS_SECRET_ACCESS_KEY"] = credentials["SecretAccessKey"]
    # Legacy name still read by older tools
    env["AWS_SECURITY_TOKEN"] = credentials["SessionToken"]
    env["AWS_SESSION_TOKEN"] = credentials["SessionToken"]
    env["AWS_SESSION_EXPIRATION"] = format_expiration(credentials["Expiration"])
    return env
