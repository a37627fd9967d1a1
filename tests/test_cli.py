"""Tests for the extattr command line."""

from __future__ import annotations

import json
from collections.abc import Generator
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner
from graph_mock import FakeCloudDirectory, FakeDirectoryService, make_config, make_device, make_resilience

from extattr.audit import AuditEventType, AuditStore
from extattr.cli import cli
from extattr.config import AuditConfig, ConfigurationError
from extattr.models import AttributeMapping
from extattr.reconciler import Reconciler
from extattr.security import SecretlessViolationError
from extattr.service import OperationsService

LOCATION_MAPPING = AttributeMapping.model_validate(
    {
        "extensionAttribute": "extensionAttribute1",
        "sourceAttribute": "location",
        "dataSource": "Directory",
    }
)


@pytest.fixture(autouse=True)
def no_logging_setup() -> Generator[None, None, None]:
    with patch("extattr.cli.setup_logging"):
        yield


def make_service(audit_dir: Path, devices: list) -> OperationsService:
    config = make_config(audit_dir=audit_dir)
    reconciler = Reconciler(
        config,
        [LOCATION_MAPPING],
        FakeCloudDirectory(devices),
        AuditStore(AuditConfig(directory=audit_dir)),
        directory=FakeDirectoryService({("PC-1", "location"): "Zurich"}),
        resilience=make_resilience(config.resilience),
    )
    return OperationsService(reconciler)


def invoke(service: OperationsService | None, args: list[str], factory=None):
    runner = CliRunner()
    obj = {"service_factory": factory or (lambda: service)}
    return runner.invoke(cli, args, obj=obj)


class TestReconciliationCommands:
    """Tests for run, device, and device-id."""

    def test_version(self) -> None:
        """Test --version."""
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "extattr" in result.output

    def test_run_success(self, audit_dir: Path) -> None:
        """Test a clean run prints stats and exits 0."""
        service = make_service(audit_dir, [make_device("PC-1")])

        result = invoke(service, ["run"])

        assert result.exit_code == 0, result.output
        stats = json.loads(result.stdout)
        assert stats["total_devices"] == 1
        assert stats["failed_count"] == 0

    def test_run_with_failures_exits_1(self, audit_dir: Path) -> None:
        """Test an unresolved mapping fails the run."""
        service = make_service(audit_dir, [make_device("PC-1"), make_device("PC-2")])

        result = invoke(service, ["run"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["failed_count"] == 1

    def test_device(self, audit_dir: Path) -> None:
        """Test reconciling one device by name."""
        service = make_service(audit_dir, [make_device("PC-1")])

        result = invoke(service, ["device", "PC-1"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["device_name"] == "PC-1"
        assert data["mappings"][0]["new_value"] == "Zurich"

    def test_device_not_found(self, audit_dir: Path) -> None:
        """Test an unknown device."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["device", "PC-404"])

        assert result.exit_code == 1
        assert "Device not found: PC-404" in result.stderr

    def test_device_id(self, audit_dir: Path) -> None:
        """Test reconciling one device by object id."""
        service = make_service(audit_dir, [make_device("PC-1")])

        result = invoke(service, ["device-id", "dev-PC-1"])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["device_object_id"] == "dev-PC-1"

    def test_serve(self, audit_dir: Path) -> None:
        """Test serve hands the service to the worker loop and propagates its exit code."""
        service = make_service(audit_dir, [])

        with patch("extattr.cli.serve", new=AsyncMock(return_value=1)) as serve:
            result = invoke(service, ["serve"])

        serve.assert_awaited_once_with(service)
        assert result.exit_code == 1

    def test_operation_value_error_is_not_a_usage_error(self, audit_dir: Path) -> None:
        """Test a ValueError raised while reconciling is not blamed on the arguments."""
        service = make_service(audit_dir, [make_device("PC-1")])
        broken = AsyncMock(side_effect=ValueError("Invalid attribute name: 'bad attr'"))

        with patch.object(service, "process_device_by_name", new=broken):
            result = invoke(service, ["device", "PC-1"])

        assert result.exit_code == 1
        assert isinstance(result.exception, ValueError)
        assert "Invalid value" not in result.stderr
        assert "Usage:" not in result.stderr


class TestStartupFailures:
    """Tests for service construction failures."""

    def test_secretless_violation_exits_2(self) -> None:
        """Test a credential in the environment blocks every command."""

        def factory() -> OperationsService:
            raise SecretlessViolationError("SECURITY VIOLATION: AZURE_CLIENT_SECRET is set.")

        result = invoke(None, ["run"], factory=factory)

        assert result.exit_code == 2
        assert "SECURITY VIOLATION" in result.stderr

    def test_configuration_error_exits_1(self) -> None:
        """Test invalid configuration is reported."""

        def factory() -> OperationsService:
            raise ConfigurationError("Configuration validation failed:\n  - PAGE_SIZE")

        result = invoke(None, ["run"], factory=factory)

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.stderr


class TestAuditCommands:
    """Tests for the audit group."""

    def test_logs(self, audit_dir: Path) -> None:
        """Test audit entries are listed with paging metadata."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "logs", "--event-type", "UserAction", "--page-size", "10"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["page"] == 1
        assert data["page_size"] == 10
        # The query itself is the only user action recorded
        assert data["total"] == 1
        assert data["entries"][0]["event_type"] == "UserAction"

    def test_logs_bad_page(self, audit_dir: Path) -> None:
        """Test an invalid page is a usage error."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "logs", "--page", "0"])

        assert result.exit_code == 2
        assert "--page" in result.stderr

    def test_logs_page_size_out_of_range(self, audit_dir: Path) -> None:
        """Test the page size bound is checked before the query runs."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "logs", "--page-size", "1001"])

        assert result.exit_code == 2
        assert "--page-size" in result.stderr

    def test_logs_unknown_event_type(self, audit_dir: Path) -> None:
        """Test event types are validated by click."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "logs", "--event-type", "Nope"])

        assert result.exit_code == 2

    def test_summary_with_dates(self, audit_dir: Path) -> None:
        """Test the summary window is echoed back in UTC."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "summary", "--from", "2024-01-01", "--to", "2024-01-31"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["from_date"] == "2024-01-01T00:00:00+00:00"
        assert data["total_events"] == 0

    def test_export_to_stdout(self, audit_dir: Path) -> None:
        """Test CSV goes to stdout by default."""
        service = make_service(audit_dir, [])

        result = invoke(service, ["audit", "export", "--event-type", "UserAction"])

        assert result.exit_code == 0, result.output
        assert result.stdout.splitlines()[0].startswith("EventId,Timestamp,EventType")

    def test_export_to_file(self, audit_dir: Path, tmp_path: Path) -> None:
        """Test --output writes the CSV file."""
        service = make_service(audit_dir, [])
        output = tmp_path / "audit.csv"

        result = invoke(service, ["audit", "export", "-o", str(output)])

        assert result.exit_code == 0, result.output
        assert output.read_text(encoding="utf-8").startswith("EventId,")
        assert "Exported audit entries" in result.stderr

    def test_event_types(self) -> None:
        """Test event types are listed without building a service."""
        result = invoke(None, ["audit", "event-types"], factory=lambda: pytest.fail("service built"))

        assert result.exit_code == 0
        values = [item["value"] for item in json.loads(result.stdout)]
        assert values == [e.value for e in AuditEventType]
