"""Integration tests for the full migration flow across organizations."""

import json
from copy import deepcopy
from unittest.mock import AsyncMock, Mock

import pytest

from sonar_migrate.clients import SonarQubeClient
from sonar_migrate.errors import APIError, ConfigurationError, NetworkError
from sonar_migrate.orchestration import MigrationOrchestrator
from sonar_migrate.overrides.csv_store import PROJECTS_CSV, load_directory
from sonar_migrate.results import StepStatus


@pytest.fixture
def source_client():
    """Create a mock SonarQube client that is reachable."""
    client = Mock(spec=SonarQubeClient)
    client.test_connection = AsyncMock(return_value={"status": "UP"})
    client.get_project = AsyncMock(return_value=None)
    client.close = AsyncMock()
    return client


@pytest.fixture
def server_extractor(mock_extractor, sample_snapshot):
    """Extractor serving the sample snapshot as server-wide data."""
    snapshot = deepcopy(sample_snapshot)
    mock_extractor.extract_projects = AsyncMock(return_value=snapshot.projects)
    mock_extractor.extract_bindings = AsyncMock(return_value=snapshot.project_bindings)
    mock_extractor.extract_quality_gates = AsyncMock(return_value=snapshot.quality_gates)
    mock_extractor.extract_quality_profiles = AsyncMock(
        return_value=snapshot.quality_profiles
    )
    mock_extractor.extract_groups = AsyncMock(return_value=snapshot.groups)
    mock_extractor.extract_global_permissions = AsyncMock(
        return_value=snapshot.global_permissions
    )
    mock_extractor.extract_permission_templates = AsyncMock(
        return_value=snapshot.permission_templates
    )
    mock_extractor.extract_portfolios = AsyncMock(return_value=snapshot.portfolios)
    return mock_extractor


@pytest.fixture
def two_org_config(config, org_alpha, org_beta):
    """Configuration migrating into ``alpha`` and ``beta``."""
    config.organizations = [org_alpha, org_beta]
    return config


def make_orchestrator(config, source_client, extractor, report_pipeline, dest_clients):
    return MigrationOrchestrator(
        config,
        report_pipeline=report_pipeline,
        source_client=source_client,
        extractor=extractor,
        dest_client_factory=dest_clients,
    )


def read_report(config):
    path = config.migrate.output_dir / "reports" / "migration-report.json"
    return json.loads(path.read_text())


@pytest.mark.asyncio
class TestMigrationFlow:
    """Test end-to-end migration flow."""

    async def test_successful_migration_across_organizations(
        self,
        two_org_config,
        source_client,
        server_extractor,
        mock_report_pipeline,
        dest_clients,
    ):
        """Test that every project lands in its organization with its resources."""
        orchestrator = make_orchestrator(
            two_org_config,
            source_client,
            server_extractor,
            mock_report_pipeline,
            dest_clients,
        )

        results = await orchestrator.migrate_all()

        assert results.success
        by_project = {p.project_key: p for p in results.projects}
        assert {k: p.org_key for k, p in by_project.items()} == {
            "webapp": "alpha",
            "tools": "alpha",
            "api": "beta",
        }
        assert by_project["webapp"].branches_transferred == ["main", "legacy"]
        assert all(p.status == StepStatus.SUCCESS for p in results.projects)
        assert [o.org_key for o in results.org_results] == ["alpha", "beta"]
        assert results.groups == 4
        assert results.quality_gates == 2
        assert results.quality_profiles == 4
        assert results.portfolios == 2

        alpha = dest_clients.clients["alpha"]
        alpha.add_project_to_portfolio.assert_awaited_once_with("pf-all", "webapp")
        alpha.close.assert_awaited_once()
        source_client.close.assert_not_awaited()

        report = read_report(two_org_config)
        assert report["success"] is True
        assert report["summary"]["projects_total"] == 3
        assert [s["step"] for s in report["server_steps"]][:2] == [
            "Connect to SonarQube",
            "Extract projects",
        ]

    async def test_state_files_written_per_project(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients
    ):
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        await orchestrator.migrate_all()

        state_dir = config.migrate.output_dir / "state"
        assert sorted(p.name for p in state_dir.iterdir()) == [
            ".state.api.json",
            ".state.tools.json",
            ".state.webapp.json",
        ]
        webapp = json.loads((state_dir / ".state.webapp.json").read_text())
        assert webapp["completedBranches"] == ["legacy", "main"]

    async def test_dry_run_writes_mappings_without_destination_calls(
        self, config, source_client, server_extractor, dest_clients
    ):
        """Test that a dry run only extracts and writes the mapping CSVs."""
        config.migrate.dry_run = True
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, None, dest_clients
        )

        results = await orchestrator.migrate_all()

        assert results.dry_run
        assert results.projects == []
        assert dest_clients.clients == {}
        tables = load_directory(config.migrate.output_dir / "mappings")
        assert PROJECTS_CSV in tables
        assert len(tables) == 8
        assert read_report(config)["dry_run"] is True

    async def test_missing_report_pipeline_is_a_configuration_error(
        self, config, source_client, server_extractor, dest_clients
    ):
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, None, dest_clients
        )

        with pytest.raises(ConfigurationError, match="report pipeline"):
            await orchestrator.migrate_all()

    async def test_source_connection_failure_aborts_run(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients
    ):
        """Test that a failing source connection aborts before any migration."""
        source_client.test_connection.side_effect = NetworkError("connection refused")
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        assert not results.success
        assert results.server_steps[0].status == StepStatus.FAILED
        assert results.errors[0]["step"] == "Connect to SonarQube"
        server_extractor.extract_projects.assert_not_awaited()
        assert dest_clients.clients == {}
        assert read_report(config)["success"] is False

    async def test_unreachable_organization_is_isolated(
        self,
        two_org_config,
        source_client,
        server_extractor,
        mock_report_pipeline,
        dest_clients,
        org_beta,
    ):
        """Test that one unreachable organization does not stop the others."""
        dest_clients(org_beta).test_connection.side_effect = APIError("no such org")
        orchestrator = make_orchestrator(
            two_org_config,
            source_client,
            server_extractor,
            mock_report_pipeline,
            dest_clients,
        )

        results = await orchestrator.migrate_all()

        assert sorted(p.project_key for p in results.projects) == ["tools", "webapp"]
        beta = results.org_results[1]
        assert beta.error is not None
        assert beta.steps[0].status == StepStatus.FAILED
        assert {"org": "beta", "error": str(APIError("no such org"))} in results.errors
        dest_clients.clients["beta"].close.assert_awaited_once()
        assert not results.success

    async def test_failed_resource_step_does_not_stop_projects(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        org_alpha,
    ):
        dest_clients(org_alpha).create_group.side_effect = APIError("denied")
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        groups_step = next(s for s in results.org_results[0].steps if s.step == "Groups")
        # sonar-users is skipped, so the step is partial rather than failed
        assert groups_step.status == StepStatus.PARTIAL
        assert dest_clients.clients["alpha"].create_group.await_count == 2
        groups_error = next(e for e in results.errors if e.get("step") == "Groups")
        assert [f["source_id"] for f in groups_error["failures"]] == ["developers", "auditors"]
        assert len(results.projects) == 3
        assert all(p.status == StepStatus.SUCCESS for p in results.projects)

    async def test_legacy_branch_failure_makes_project_partial(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        org_alpha,
    ):
        """Test the webapp scenario where legacy hotspot sync fails."""

        async def search_hotspots(project_key, branch=None):
            if project_key == "webapp" and branch == "legacy":
                raise APIError("hotspots unavailable")
            return []

        dest_clients(org_alpha).search_hotspots.side_effect = search_hotspots
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        webapp = next(p for p in results.projects if p.project_key == "webapp")
        assert webapp.status == StepStatus.PARTIAL
        assert webapp.branches_transferred == ["main", "legacy"]
        assert webapp.step("Upload scanner report [legacy]").status == StepStatus.SUCCESS
        assert results.summary()["projects_partial"] == 1
        assert "webapp" in results.org_results[0].project_keys
        assert results.errors[0]["project"] == "webapp"

    async def test_failed_project_left_out_of_portfolios(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        org_alpha,
    ):
        client = dest_clients(org_alpha)

        async def ensure_project(project_key, name=None):
            if project_key == "webapp":
                raise APIError("quota exceeded")
            return True

        client.ensure_project.side_effect = ensure_project
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        assert results.count(StepStatus.FAILED) == 1
        assert "webapp" not in results.org_results[0].project_keys
        client.add_project_to_portfolio.assert_awaited_once_with("pf-all", "api")

    async def test_project_with_unreadable_branches_fails_alone(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        org_alpha,
    ):
        """Test that a branch listing failure only fails its own project."""
        api = next(
            p for p in server_extractor.extract_projects.return_value if p.key == "api"
        )
        api.branches = []
        api.extraction_error = "Insufficient privileges"
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        by_project = {p.project_key: p for p in results.projects}
        assert by_project["api"].status == StepStatus.FAILED
        assert by_project["api"].steps[0].step == "Discover branches"
        assert by_project["webapp"].status == StepStatus.SUCCESS
        assert by_project["tools"].status == StepStatus.SUCCESS
        assert results.server_steps[1].status == StepStatus.SUCCESS
        created = [c.args[0] for c in dest_clients(org_alpha).ensure_project.await_args_list]
        assert "api" not in created

    async def test_destination_client_failure_is_isolated(
        self,
        two_org_config,
        source_client,
        server_extractor,
        mock_report_pipeline,
        dest_clients,
    ):
        """Test that an organization whose client cannot be built is skipped."""

        def factory(org):
            if org.key == "beta":
                raise ConfigurationError("invalid SonarCloud URL")
            return dest_clients(org)

        orchestrator = make_orchestrator(
            two_org_config,
            source_client,
            server_extractor,
            mock_report_pipeline,
            factory,
        )

        results = await orchestrator.migrate_all()

        assert sorted(p.project_key for p in results.projects) == ["tools", "webapp"]
        beta = results.org_results[1]
        assert beta.steps[0].step == "Connect to SonarCloud"
        assert beta.steps[0].status == StepStatus.FAILED
        assert "invalid SonarCloud URL" in beta.error
        assert "beta" not in dest_clients.clients
        assert read_report(two_org_config)["success"] is False

    async def test_unexpected_error_still_writes_report(
        self, config, source_client, server_extractor, dest_clients
    ):
        """Test that the report is written when the run aborts unexpectedly."""
        config.migrate.dry_run = True
        config.migrate.output_dir.mkdir(parents=True)
        (config.migrate.output_dir / "mappings").write_text("not a directory")
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, None, dest_clients
        )

        with pytest.raises(OSError):
            await orchestrator.migrate_all()

        report = read_report(config)
        assert report["success"] is False
        assert report["end_time"] is not None
        assert report["errors"][-1]["step"] == "Migrate"

    async def test_quality_profile_diff_written(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        org_alpha,
    ):
        """Test the per-organization comparison of active rules."""
        team_java = server_extractor.extract_quality_profiles.return_value[1]
        team_java.key = "sq-team-java"
        source_client.list_active_rules = AsyncMock(
            return_value=[
                {"key": "java:S100", "name": "Method names"},
                {"key": "java:S200", "name": "Dead code", "severity": "MAJOR"},
            ]
        )
        client = dest_clients(org_alpha)
        client.search_quality_profiles.return_value = [
            {"key": "sc-team-java", "language": "java", "name": "Team Java"}
        ]
        client.list_active_rules.return_value = [
            {"key": "java:S100", "name": "Method names"},
            {"key": "java:S300", "name": "New rule"},
        ]
        orchestrator = make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        )

        results = await orchestrator.migrate_all()

        step = next(
            s for s in results.org_results[0].steps if s.step == "Compare quality profiles"
        )
        assert step.status == StepStatus.SUCCESS
        assert step.detail == "1 compared, 1 rules missing, 1 rules added"
        source_client.list_active_rules.assert_awaited_once_with("sq-team-java")
        client.list_active_rules.assert_awaited_once_with("sc-team-java")
        path = (
            config.migrate.output_dir
            / "quality-profiles"
            / "alpha"
            / "quality-profile-diff.json"
        )
        diff = json.loads(path.read_text())
        assert [r["key"] for r in diff["languages"]["java"]["missing_rules"]] == [
            "java:S200"
        ]
        assert diff["languages"]["java"]["added_rules"][0]["name"] == "New rule"


@pytest.mark.asyncio
class TestMappingOverrides:
    """Test runs driven by edited mapping CSVs."""

    async def test_dry_run_output_drives_next_run(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients,
        mock_extractor,
    ):
        """Test excluding a project and a branch through the generated CSVs."""
        config.migrate.dry_run = True
        await make_orchestrator(
            config, source_client, server_extractor, None, dest_clients
        ).migrate_all()

        mappings_dir = config.migrate.output_dir / "mappings"
        projects_csv = mappings_dir / PROJECTS_CSV
        lines = projects_csv.read_text().splitlines()
        edited = [lines[0]] + [
            line.replace("yes,", "no,", 1)
            if line.startswith("yes,api,") or line.startswith("yes,webapp,Webapp,legacy,")
            else line
            for line in lines[1:]
        ]
        projects_csv.write_text("\n".join(edited) + "\n")

        config.migrate.dry_run = False
        config.migrate.mappings_dir = mappings_dir
        results = await make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        ).migrate_all()

        assert sorted(p.project_key for p in results.projects) == ["tools", "webapp"]
        webapp = next(p for p in results.projects if p.project_key == "webapp")
        assert webapp.branches_transferred == ["main"]
        extracted = [c.args[0] for c in mock_extractor.extract_branch.await_args_list]
        assert "legacy" not in extracted

    async def test_unedited_mappings_change_nothing(
        self, config, source_client, server_extractor, mock_report_pipeline, dest_clients
    ):
        config.migrate.dry_run = True
        await make_orchestrator(
            config, source_client, server_extractor, None, dest_clients
        ).migrate_all()

        config.migrate.dry_run = False
        config.migrate.mappings_dir = config.migrate.output_dir / "mappings"
        results = await make_orchestrator(
            config, source_client, server_extractor, mock_report_pipeline, dest_clients
        ).migrate_all()

        assert sorted(p.project_key for p in results.projects) == ["api", "tools", "webapp"]
        assert results.success
