"""
assume-spoke-role: Assume an IAM hub role, then an IAM spoke role, in AWS.

A Python CLI utility for hub-and-spoke multi-account access. A single inbound
credential assumes a "hub" role in a central account, the hub's temporary
credentials assume a "spoke" role in a target account, and a command is run
with the spoke credentials exported in its environment.

Key features:
- Two-hop AssumeRole chain with optional external ID on both hops
- Session names that record which spoke account was targeted
- Flags with ASSUME_ROLE_* environment variable fallbacks
- No credential caching or files on disk
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from .core import (
    AssumeRoleFailed,
    AssumeSpokeRoleError,
    ConfigurationError,
    CredentialRequest,
    HubAssumeRoleFailed,
    MissingParameter,
    SpokeAssumeRoleFailed,
    SubprocessLaunchFailed,
    create_base_session,
    create_client_config,
    credentials_environment,
    get_spoke_credentials,
    role_arn,
    validate_request,
)

__all__ = [
    # Python API - Most commonly used for programmatic access
    "CredentialRequest",
    "get_spoke_credentials",
    "create_base_session",
    "create_client_config",
    # Helpers
    "role_arn",
    "validate_request",
    "credentials_environment",
    # Errors
    "AssumeSpokeRoleError",
    "MissingParameter",
    "ConfigurationError",
    "AssumeRoleFailed",
    "HubAssumeRoleFailed",
    "SpokeAssumeRoleFailed",
    "SubprocessLaunchFailed",
]
