"""
Credential and option resolution.

Backends read their credentials from fixed environment variables. This is
the only module that consults the environment, and it does so through an
injected mapping so callers (and tests) control exactly what is visible.
Values already present in a location's config are never overwritten.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from backend_location.backends.base import is_empty
from backend_location.exceptions import MissingCredentialError
from backend_location.options import Options

if TYPE_CHECKING:
    from collections.abc import Mapping

    from backend_location.backends.base import BackendConfig
    from backend_location.location import Location

__all__ = ["ENVIRONMENT", "apply_environment", "validate_credentials", "resolve_config"]

logger = logging.getLogger(__name__)

# (environment variable, config field) per scheme; the first non-empty
# variable wins when several map to the same field
ENVIRONMENT: dict[str, tuple[tuple[str, str], ...]] = {
    "s3": (
        ("AWS_ACCESS_KEY_ID", "key_id"),
        ("AWS_SECRET_ACCESS_KEY", "secret"),
        ("AWS_SESSION_TOKEN", "session_token"),
        ("AWS_DEFAULT_REGION", "region"),
    ),
    "gs": (
        ("GOOGLE_PROJECT_ID", "project_id"),
        ("GOOGLE_ACCESS_TOKEN", "access_token"),
    ),
    "azure": (
        ("AZURE_ACCOUNT_NAME", "account_name"),
        ("AZURE_ACCOUNT_KEY", "account_key"),
        ("AZURE_ACCOUNT_SAS", "account_sas"),
        ("AZURE_ENDPOINT_SUFFIX", "endpoint_suffix"),
    ),
    "b2": (
        ("B2_ACCOUNT_ID", "account_id"),
        ("B2_ACCOUNT_KEY", "key"),
    ),
    "swift": (
        ("OS_USERNAME", "user_name"),
        ("OS_PASSWORD", "api_key"),
        ("OS_REGION_NAME", "region"),
        ("OS_AUTH_URL", "auth_url"),
        # keystone v3
        ("OS_USER_ID", "user_id"),
        ("OS_USER_DOMAIN_NAME", "domain"),
        ("OS_USER_DOMAIN_ID", "domain_id"),
        ("OS_PROJECT_NAME", "tenant"),
        ("OS_PROJECT_DOMAIN_NAME", "tenant_domain"),
        ("OS_PROJECT_DOMAIN_ID", "tenant_domain_id"),
        ("OS_TRUST_ID", "trust_id"),
        # keystone v2
        ("OS_TENANT_ID", "tenant_id"),
        ("OS_TENANT_NAME", "tenant"),
        # v1
        ("ST_AUTH", "auth_url"),
        ("ST_USER", "user_name"),
        ("ST_KEY", "api_key"),
        # application credentials
        ("OS_APPLICATION_CREDENTIAL_ID", "application_credential_id"),
        ("OS_APPLICATION_CREDENTIAL_NAME", "application_credential_name"),
        ("OS_APPLICATION_CREDENTIAL_SECRET", "application_credential_secret"),
        # pre-authenticated
        ("OS_STORAGE_URL", "storage_url"),
        ("OS_AUTH_TOKEN", "auth_token"),
        ("SWIFT_DEFAULT_CONTAINER_POLICY", "default_container_policy"),
    ),
}


def apply_environment(scheme: str, config: BackendConfig, environ: Mapping[str, str]) -> None:
    """
    Fill empty config fields from the backend's environment variables, in place.

    Args:
        scheme: Backend scheme selecting the variable table.
        config: Config to fill.
        environ: Environment to read from.
    """
    for variable, field in ENVIRONMENT.get(scheme, ()):
        value = environ.get(variable, "")
        if not value or not is_empty(getattr(config, field)):
            continue

        setattr(config, field, value)
        logger.debug(f"Using ${variable} for {scheme}.{field}")


def validate_credentials(scheme: str, config: BackendConfig) -> None:
    """
    Check that paired credentials are complete.

    Raises:
        MissingCredentialError: Naming the variable of the missing half.
    """
    if scheme == "s3":
        # both empty is fine, the AWS SDK falls back to its own credential chain
        has_key_id = not is_empty(config.key_id)
        has_secret = not is_empty(config.secret)
        if has_key_id and not has_secret:
            raise MissingCredentialError("s3", "Secret", "AWS_SECRET_ACCESS_KEY")
        if has_secret and not has_key_id:
            raise MissingCredentialError("s3", "Key ID", "AWS_ACCESS_KEY_ID")

    elif scheme == "b2":
        if is_empty(config.account_id):
            raise MissingCredentialError("b2", "Account ID", "B2_ACCOUNT_ID")
        if is_empty(config.key):
            raise MissingCredentialError("b2", "Key", "B2_ACCOUNT_KEY")

    elif scheme == "azure":
        if is_empty(config.account_name):
            raise MissingCredentialError("azure", "Account name", "AZURE_ACCOUNT_NAME")
        if is_empty(config.account_key) and is_empty(config.account_sas):
            raise MissingCredentialError("azure", "Account key or SAS", "AZURE_ACCOUNT_KEY")


def resolve_config(
    location: Location,
    options: Options | None = None,
    environ: Mapping[str, str] | None = None,
) -> BackendConfig:
    """
    Build the final backend config for a location.

    The location's config is copied, empty credential fields are filled from
    the environment, paired credentials are checked and finally the
    backend's ``-o`` options are applied.

    Args:
        location: Parsed location; never modified.
        options: All extended options; only those of the location's scheme are used.
        environ: Environment mapping, ``os.environ`` if omitted.

    Returns:
        A new config object.

    Raises:
        MissingCredentialError: If paired credentials are incomplete.
        OptionApplicationError: If an option is unknown or invalid.
    """
    if environ is None:
        environ = os.environ
    opts = (options or Options()).extract(location.scheme)

    config = location.config.model_copy(deep=True)
    apply_environment(location.scheme, config, environ)
    validate_credentials(location.scheme, config)
    opts.apply(location.scheme, config)

    logger.debug(f"Resolved {location.scheme} config: {config!r}")
    return config
