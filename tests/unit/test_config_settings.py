import pytest

from crossadmin.config import settings
from crossadmin.config.settings import ProvisioningConfig, load_settings, validate_settings
from crossadmin.core.azure.exceptions import ConfigurationError


def test_defaults_load_without_environment():
    cfg = load_settings()

    assert cfg.directory_role_name == "Global Reader"
    assert cfg.required_subscription_roles == ["Owner"]
    assert cfg.resource_role_name == "Member"


def test_membership_rule_derived_from_tag():
    cfg = ProvisioningConfig(employee_tag="EU-ADMIN")
    assert cfg.resolved_membership_rule == '(user.employeeId -eq "EU-ADMIN")'


def test_explicit_membership_rule_is_kept_verbatim():
    rule = '(user.department -eq "Partners") and (user.userType -eq "Guest")'
    cfg = ProvisioningConfig(membership_rule=rule)
    assert cfg.resolved_membership_rule == rule


def test_expected_group_defaults_to_group_display_name():
    assert ProvisioningConfig(group_display_name="MSP Ops").resolved_expected_group_name == "MSP Ops"
    assert ProvisioningConfig(expected_group_name="Other").resolved_expected_group_name == "Other"


def test_environment_values_are_coerced(monkeypatch):
    monkeypatch.setenv("CROSSADMIN_RETRY_COUNT", "7")
    monkeypatch.setenv("CROSSADMIN_RETRY_DELAY_SECONDS", "2.5")
    monkeypatch.setenv("CROSSADMIN_SEND_INVITATION_MESSAGE", "false")
    monkeypatch.setenv("CROSSADMIN_REQUIRED_SUBSCRIPTION_ROLES", "Owner, Contributor")

    cfg = load_settings()

    assert cfg.retry_count == 7
    assert cfg.retry_delay_seconds == 2.5
    assert cfg.send_invitation_message is False
    assert cfg.required_subscription_roles == ["Owner", "Contributor"]


def test_file_overrides_environment_and_overrides_win(monkeypatch, tmp_path):
    config_file = tmp_path / "crossadmin.yaml"
    config_file.write_text("location: northeurope\ncatalog-name: From File\nretry_count: 2\n")
    monkeypatch.setenv("CROSSADMIN_LOCATION", "eastus")
    monkeypatch.setenv("CROSSADMIN_RETRY_COUNT", "9")

    cfg = load_settings(config_file, retry_count=4, employee_tag=None)

    assert cfg.location == "northeurope"
    assert cfg.catalog_name == "From File"
    assert cfg.retry_count == 4
    assert cfg.employee_tag == "PARTNER-ADMIN"


def test_config_file_from_environment(monkeypatch, tmp_path):
    config_file = tmp_path / "crossadmin.yaml"
    config_file.write_text("directory_role_name: Security Reader\n")
    monkeypatch.setenv(settings.CONFIG_FILE_ENV, str(config_file))

    assert load_settings().directory_role_name == "Security Reader"


@pytest.mark.parametrize("content, message", [
    ("unknown_key: 1\n", "Unknown setting"),
    ("- a\n- b\n", "must contain a mapping"),
    ("retry_count: [\n", "not valid YAML"),
    ("retry_count: many\n", "must be an integer"),
])
def test_invalid_files_are_rejected(tmp_path, content, message):
    config_file = tmp_path / "bad.yaml"
    config_file.write_text(content)

    with pytest.raises(ConfigurationError, match=message):
        load_settings(config_file)


def test_missing_file_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_settings(tmp_path / "absent.yaml")


def test_unknown_override_is_rejected():
    with pytest.raises(ConfigurationError, match="Unknown setting"):
        load_settings(colour="blue")


@pytest.mark.parametrize("overrides, message", [
    ({"retry_count": 0}, "retry_count"),
    ({"deployment_poll_delay_seconds": -1.0}, "deployment_poll_delay_seconds"),
    ({"tenant_id": "contoso"}, "tenant_id"),
    ({"group_display_name": "  "}, "group_display_name"),
    ({"required_subscription_roles": []}, "required_subscription_roles"),
    ({"assignment_duration": "30 days"}, "assignment_duration"),
])
def test_validation_errors(overrides, message):
    with pytest.raises(ConfigurationError, match=message):
        validate_settings(ProvisioningConfig(**overrides))


def test_valid_tenant_and_duration_are_accepted():
    validate_settings(ProvisioningConfig(
        tenant_id="72f988bf-86f1-41af-91ab-2d7cd011db47",
        assignment_duration="P90D",
    ))
