"""Settings loader: environment variables, optional YAML file, explicit overrides."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from crossadmin.core.azure.exceptions import ConfigurationError
from crossadmin.core.validators import is_guid

logger = logging.getLogger(__name__)

ENV_PREFIX = "CROSSADMIN_"
CONFIG_FILE_ENV = "CROSSADMIN_CONFIG"


@dataclass
class ProvisioningConfig:
    """Provisioning configuration container."""
    # Privileged group and directory role
    group_display_name: str = "Delegated Partner Admins"
    group_description: str = "Guests granted delegated administration through an access package"
    directory_role_name: str = "Global Reader"

    # Entitlement management
    catalog_name: str = "Delegated Administration"
    catalog_description: str = "Resources for delegated cross-tenant administration"
    catalog_externally_visible: bool = True
    access_package_name: str = "Delegated Partner Admin Access"
    access_package_description: str = "Auto-assigned membership of the delegated admin group"
    policy_name: str = "Auto-assign tagged partner guests"
    resource_role_name: str = "Member"
    employee_tag: str = "PARTNER-ADMIN"
    membership_rule: str = ""
    assignment_duration: str = ""  # ISO-8601 duration, empty = no expiration

    # Guest invitations
    invite_redirect_url: str = "https://myapps.microsoft.com"
    send_invitation_message: bool = True

    # Retry tuning (fixed attempts, fixed delay)
    retry_count: int = 5
    retry_delay_seconds: float = 10.0
    role_activation_attempts: int = 6
    role_activation_delay_seconds: float = 10.0
    resource_verify_attempts: int = 3
    resource_verify_delay_seconds: float = 5.0
    deployment_poll_attempts: int = 60
    deployment_poll_delay_seconds: float = 10.0
    http_max_retries: int = 3
    http_retry_delay_seconds: float = 5.0
    request_timeout: float = 30.0

    # Lighthouse delegation
    location: str = "westeurope"
    expected_group_name: str = ""
    expected_role_name: str = "Contributor"
    required_subscription_roles: list[str] = field(default_factory=lambda: ["Owner"])

    # Endpoints
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    arm_base_url: str = "https://management.azure.com"
    tenant_id: str = ""

    @property
    def resolved_membership_rule(self) -> str:
        """Membership rule for the auto-assignment policy.

        Defaults to an equality rule on the tag attribute written to guests.
        """
        if self.membership_rule:
            return self.membership_rule
        return f'(user.employeeId -eq "{self.employee_tag}")'

    @property
    def resolved_expected_group_name(self) -> str:
        return self.expected_group_name or self.group_display_name


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Convert a raw env/YAML value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Setting '{name}' must be an integer, got {value!r}") from exc
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Setting '{name}' must be a number, got {value!r}") from exc
    if isinstance(default, list):
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return [item.strip() for item in str(value).split(",") if item.strip()]
    return str(value).strip()


def _defaults() -> dict[str, Any]:
    return {f.name: getattr(ProvisioningConfig(), f.name) for f in fields(ProvisioningConfig)}


def _from_environment(defaults: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for name, default in defaults.items():
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw != "":
            values[name] = _coerce(name, raw, default)
    return values


def _from_file(path: Path, defaults: dict[str, Any]) -> dict[str, Any]:
    if not path.exists() or not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    values = {}
    for key, raw in data.items():
        name = str(key).replace("-", "_")
        if name not in defaults:
            raise ConfigurationError(f"Unknown setting '{key}' in {path}")
        values[name] = _coerce(name, raw, defaults[name])
    return values


def validate_settings(config: ProvisioningConfig) -> None:
    """Check presence and shape of configured values.

    Raises:
        ConfigurationError: On the first invalid value
    """
    for name in ("group_display_name", "directory_role_name", "catalog_name", "access_package_name",
                 "policy_name", "resource_role_name", "location"):
        if not getattr(config, name).strip():
            raise ConfigurationError(f"Setting '{name}' must not be empty")
    for name in ("retry_count", "role_activation_attempts", "resource_verify_attempts", "deployment_poll_attempts"):
        if getattr(config, name) < 1:
            raise ConfigurationError(f"Setting '{name}' must be at least 1")
    for name in ("retry_delay_seconds", "role_activation_delay_seconds", "resource_verify_delay_seconds",
                 "deployment_poll_delay_seconds", "http_retry_delay_seconds"):
        if getattr(config, name) < 0:
            raise ConfigurationError(f"Setting '{name}' must not be negative")
    if config.http_max_retries < 0:
        raise ConfigurationError("Setting 'http_max_retries' must not be negative")
    if config.tenant_id and not is_guid(config.tenant_id):
        raise ConfigurationError(f"Setting 'tenant_id' must be a GUID, got {config.tenant_id!r}")
    if not config.required_subscription_roles:
        raise ConfigurationError("Setting 'required_subscription_roles' must name at least one role")
    if config.assignment_duration and not config.assignment_duration.upper().startswith("P"):
        raise ConfigurationError(
            f"Setting 'assignment_duration' must be an ISO-8601 duration such as P30D, got {config.assignment_duration!r}"
        )


def load_settings(config_file: Optional[str | Path] = None, **overrides: Any) -> ProvisioningConfig:
    """Build a validated configuration.

    Priority (highest first):
    1. Keyword overrides (e.g. CLI flags)
    2. YAML file (``config_file`` or $CROSSADMIN_CONFIG)
    3. Environment variables (CROSSADMIN_<SETTING>)
    4. Dataclass defaults

    Raises:
        ConfigurationError: If the file is missing/invalid or a value fails validation
    """
    defaults = _defaults()
    values = _from_environment(defaults)

    file_ref = config_file or os.environ.get(CONFIG_FILE_ENV)
    if file_ref:
        values.update(_from_file(Path(file_ref), defaults))
        logger.info("[settings] Loaded %s", file_ref)

    for name, raw in overrides.items():
        if raw is None:
            continue
        if name not in defaults:
            raise ConfigurationError(f"Unknown setting '{name}'")
        values[name] = _coerce(name, raw, defaults[name])

    config = ProvisioningConfig(**values)
    validate_settings(config)
    logger.debug(
        "[settings] role=%s; catalog=%s; package=%s; location=%s",
        config.directory_role_name, config.catalog_name, config.access_package_name, config.location,
    )
    return config
