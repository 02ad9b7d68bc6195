"""Integration tests for transferring a project with all of its branches."""

from unittest.mock import AsyncMock, Mock

import pytest

from sonar_migrate.clients import SonarQubeClient
from sonar_migrate.context import RunContext
from sonar_migrate.errors import APIError
from sonar_migrate.models import (
    Binding,
    GroupPermissions,
    Issue,
    NewCodePeriod,
    ProjectConfig,
    ProjectLink,
    ProjectSetting,
)
from sonar_migrate.results import StepStatus
from sonar_migrate.state import StateTracker
from sonar_migrate.transfer import TransferPipeline


@pytest.fixture
def context(config):
    """Run context over the test configuration."""
    return RunContext.from_config(config)


@pytest.fixture
def pipeline(context, mock_extractor, mock_dest_client, mock_report_pipeline, org_alpha):
    """Transfer pipeline wired to mocked collaborators."""
    return TransferPipeline(
        context, mock_extractor, mock_dest_client, mock_report_pipeline, org_alpha
    )


@pytest.fixture
def tracker(context):
    """State tracker of the ``webapp`` project."""
    return context.state_tracker_for("webapp")


def step_names(result):
    return [s.step for s in result.steps]


@pytest.mark.asyncio
class TestTransferProject:
    """Test the per-project transfer flow."""

    async def test_all_branches_transferred(
        self, pipeline, tracker, project_factory, mock_report_pipeline, mock_dest_client
    ):
        """Test a clean transfer of a project with two branches."""
        project = project_factory("webapp", ("main", "develop"))

        result = await pipeline.transfer_project(project, tracker)

        assert result.status == StepStatus.SUCCESS
        assert result.fatal_error is None
        assert result.branches_transferred == ["main", "develop"]
        assert step_names(result) == [
            "Create project",
            "Extract project configuration",
            "Project settings",
            "Project tags",
            "Project links",
            "New code definitions",
            "DevOps binding",
            "Assign quality gate",
            "Assign quality profiles",
            "Project permissions",
            "Extract [main]",
            "Upload scanner report [main]",
            "Sync issues [main]",
            "Sync hotspots [main]",
            "Extract [develop]",
            "Upload scanner report [develop]",
            "Sync issues [develop]",
            "Sync hotspots [develop]",
            "Record sync state",
        ]
        mock_dest_client.ensure_project.assert_awaited_once_with("webapp", "Webapp")
        uploads = [c.args[1] for c in mock_report_pipeline.upload.await_args_list]
        assert [(m["branch"], m["reference_branch"]) for m in uploads] == [
            ("main", "main"),
            ("develop", "main"),
        ]
        assert uploads[0]["organization"] == "alpha"
        assert result.stats.lines_of_code == 15
        assert result.duration_ms is not None

    async def test_state_records_completed_branches_and_history(
        self, pipeline, tracker, context, project_factory
    ):
        project = project_factory("webapp", ("main", "develop"))

        await pipeline.transfer_project(project, tracker)

        reloaded = context.state_tracker_for("webapp")
        reloaded.initialize()
        assert reloaded.is_branch_completed("main")
        assert reloaded.is_branch_completed("develop")
        assert len(reloaded.state.history) == 1
        assert reloaded.state.history[0].lines_of_code == 15

    async def test_destination_main_branch_name_is_used(
        self, pipeline, tracker, project_factory, mock_dest_client, mock_report_pipeline
    ):
        """Test that the main branch is uploaded under the destination's name."""
        mock_dest_client.get_main_branch_name.return_value = "master"

        result = await pipeline.transfer_project(project_factory("api", ("main",)), tracker)

        assert result.branches_transferred == ["master"]
        metadata = mock_report_pipeline.upload.await_args.args[1]
        assert metadata["branch"] == "master"

    async def test_main_branch_failure_fails_project(
        self, pipeline, tracker, project_factory, mock_report_pipeline, mock_extractor
    ):
        """Test that an upload failure of the main branch is fatal."""
        mock_report_pipeline.upload.side_effect = APIError("report rejected")

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "develop")), tracker
        )

        assert result.status == StepStatus.FAILED
        assert "report rejected" in result.fatal_error
        assert result.branches_transferred == []
        assert result.step("Upload scanner report [main]").status == StepStatus.FAILED
        mock_extractor.extract_branch.assert_not_awaited()

    async def test_create_project_failure_fails_project(
        self, pipeline, tracker, project_factory, mock_dest_client, mock_extractor
    ):
        mock_dest_client.ensure_project.side_effect = APIError("forbidden")

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.status == StepStatus.FAILED
        assert step_names(result) == ["Create project"]
        mock_extractor.extract_all.assert_not_awaited()

    async def test_branch_failure_is_isolated(
        self, pipeline, tracker, project_factory, mock_extractor, context
    ):
        """Test that a failing branch does not stop the remaining ones."""
        original = mock_extractor.extract_branch.side_effect

        async def extract_branch(branch_name, base):
            if branch_name == "broken":
                raise APIError("cannot read branch")
            return await original(branch_name, base)

        mock_extractor.extract_branch.side_effect = extract_branch
        project = project_factory("webapp", ("main", "broken", "release"))

        result = await pipeline.transfer_project(project, tracker)

        assert result.status == StepStatus.PARTIAL
        assert result.branches_transferred == ["main", "release"]
        assert result.step("Extract [broken]").status == StepStatus.FAILED
        assert result.step("Upload scanner report [broken]") is None
        assert result.step("Record sync state").status == StepStatus.SUCCESS
        assert not tracker.is_branch_completed("broken")
        assert tracker.is_branch_completed("release")

    async def test_legacy_hotspot_failure_keeps_branch_transferred(
        self, pipeline, tracker, project_factory, mock_dest_client
    ):
        """Test that a metadata failure makes the project partial only."""

        async def search_hotspots(project_key, branch=None):
            if branch == "legacy":
                raise APIError("hotspot search unavailable")
            return []

        mock_dest_client.search_hotspots.side_effect = search_hotspots
        project = project_factory("webapp", ("main", "legacy"))

        result = await pipeline.transfer_project(project, tracker)

        assert result.status == StepStatus.PARTIAL
        assert result.branches_transferred == ["main", "legacy"]
        assert result.step("Upload scanner report [legacy]").status == StepStatus.SUCCESS
        assert result.step("Sync hotspots [legacy]").status == StepStatus.FAILED
        assert result.step("Sync issues [legacy]").status == StepStatus.SUCCESS
        assert tracker.is_branch_completed("main")
        assert not tracker.is_branch_completed("legacy")

    async def test_wait_uses_upload_and_wait(
        self, pipeline, tracker, project_factory, context, mock_report_pipeline
    ):
        context.config.migrate.wait = True

        await pipeline.transfer_project(project_factory("webapp"), tracker)

        mock_report_pipeline.upload_and_wait.assert_awaited_once()
        mock_report_pipeline.upload.assert_not_awaited()

    async def test_disabled_syncs_are_skipped(
        self, pipeline, tracker, project_factory, context, mock_dest_client
    ):
        context.config.migrate.skip_issue_sync = True
        context.config.migrate.skip_hotspot_sync = True

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.status == StepStatus.SUCCESS
        assert result.step("Sync issues [main]").status == StepStatus.SKIPPED
        assert result.step("Sync hotspots [main]").status == StepStatus.SKIPPED
        mock_dest_client.search_issues.assert_not_awaited()

    async def test_connection_check(
        self,
        context,
        mock_extractor,
        mock_dest_client,
        mock_report_pipeline,
        org_alpha,
        tracker,
        project_factory,
    ):
        """Test that a failing connection check fails the project early."""
        source_client = Mock(spec=SonarQubeClient)
        source_client.test_connection = AsyncMock(side_effect=APIError("source down"))
        pipeline = TransferPipeline(
            context,
            mock_extractor,
            mock_dest_client,
            mock_report_pipeline,
            org_alpha,
            source_client=source_client,
        )

        result = await pipeline.transfer_project(
            project_factory("webapp"), tracker, test_connections=True
        )

        assert result.status == StepStatus.FAILED
        assert "source down" in result.fatal_error
        mock_dest_client.ensure_project.assert_not_awaited()


@pytest.mark.asyncio
class TestBranchSelection:
    """Test which branches are transferred."""

    async def test_excluded_branches_are_skipped(
        self, pipeline, tracker, project_factory, context
    ):
        context.config.transfer.exclude_branches = ["tmp"]

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "tmp", "develop")), tracker
        )

        assert result.branches_transferred == ["main", "develop"]

    async def test_branch_include_set_from_overrides(
        self, pipeline, tracker, project_factory, context
    ):
        context.project_branch_includes = {"webapp": {"main", "release"}}

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "legacy", "release")), tracker
        )

        assert result.branches_transferred == ["main", "release"]

    async def test_main_branch_only(self, pipeline, tracker, project_factory, context):
        context.config.transfer.sync_all_branches = False

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "develop")), tracker
        )

        assert result.branches_transferred == ["main"]

    async def test_incremental_resume_skips_completed_branches(
        self, pipeline, context, project_factory, mock_extractor
    ):
        """Test that a rerun transfers only branches not yet completed."""
        context.config.transfer.mode = "incremental"
        previous = context.state_tracker_for("webapp")
        previous.initialize()
        previous.mark_branch_completed("develop")
        previous.save()

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "develop", "release")),
            context.state_tracker_for("webapp"),
        )

        assert result.branches_transferred == ["main", "release"]
        extracted = [c.args[0] for c in mock_extractor.extract_branch.await_args_list]
        assert extracted == ["release"]

    async def test_full_mode_retransfers_completed_branches(
        self, pipeline, context, project_factory
    ):
        previous = context.state_tracker_for("webapp")
        previous.initialize()
        previous.mark_branch_completed("develop")
        previous.save()

        result = await pipeline.transfer_project(
            project_factory("webapp", ("main", "develop")),
            context.state_tracker_for("webapp"),
        )

        assert result.branches_transferred == ["main", "develop"]

    async def test_incremental_issue_sync_skips_processed_issues(
        self, pipeline, context, project_factory, mock_extractor, mock_dest_client
    ):
        context.config.transfer.mode = "incremental"
        previous = context.state_tracker_for("webapp")
        previous.initialize()
        previous.mark_issue_processed("AX-1")
        previous.save()
        original = mock_extractor.extract_all.side_effect

        async def extract_all(project):
            snapshot = await original(project)
            snapshot.issues = [
                Issue(key="AX-1", rule="r", component="webapp:a.py", status="CONFIRMED"),
                Issue(key="AX-2", rule="r", component="webapp:b.py", status="CONFIRMED"),
            ]
            return snapshot

        mock_extractor.extract_all.side_effect = extract_all
        tracker = StateTracker(context.config.migrate.state_file("webapp"))

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.issue_sync.skipped == 1
        assert result.stats.issues_transferred == 2


@pytest.fixture
def project_config():
    """Configuration of ``webapp`` touching every configuration step."""
    return ProjectConfig(
        quality_gate="Strict",
        quality_profiles={"py": "Team Python", "java": "Team Java"},
        permissions=[
            GroupPermissions(name="developers", permissions=["user", "codeviewer"]),
            GroupPermissions(name="sonar-users", permissions=["user"]),
        ],
        settings=[ProjectSetting(key="sonar.exclusions", values=["**/gen/**", "**/vendor/**"])],
        tags=["backend", "team-a"],
        links=[ProjectLink(name="Docs", url="https://docs.example.com")],
        new_code_period=NewCodePeriod(type="NUMBER_OF_DAYS", value="30"),
    )


@pytest.mark.asyncio
class TestProjectConfiguration:
    """Test the configuration steps run after the project is created."""

    async def test_configuration_is_replayed(
        self, pipeline, tracker, project_factory, mock_extractor, mock_dest_client, project_config
    ):
        mock_extractor.extract_project_config.return_value = project_config

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.status == StepStatus.SUCCESS
        mock_extractor.extract_project_config.assert_awaited_once_with("webapp")
        mock_dest_client.assign_quality_gate.assert_awaited_once_with("webapp", "Strict")
        profile_calls = mock_dest_client.add_quality_profile_to_project.await_args_list
        assert [c.args for c in profile_calls] == [
            ("webapp", "java", "Team Java"),
            ("webapp", "py", "Team Python"),
        ]
        assert [
            (c.args, c.kwargs) for c in mock_dest_client.add_group_permission.await_args_list
        ] == [
            (("developers", "user"), {"project_key": "webapp"}),
            (("developers", "codeviewer"), {"project_key": "webapp"}),
        ]
        assert result.step("Project permissions").detail == "2 migrated, 1 skipped, 0 failed"
        assert [c.args for c in mock_dest_client.set_project_setting.await_args_list] == [
            ("webapp", "sonar.exclusions", "**/gen/**,**/vendor/**"),
            ("webapp", "sonar.leak.period", "30"),
        ]
        mock_dest_client.set_project_tags.assert_awaited_once_with(
            "webapp", ["backend", "team-a"]
        )
        mock_dest_client.create_project_link.assert_awaited_once_with(
            "webapp", "Docs", "https://docs.example.com"
        )

    async def test_failed_setting_makes_project_partial(
        self, pipeline, tracker, project_factory, mock_extractor, mock_dest_client, project_config
    ):
        mock_extractor.extract_project_config.return_value = project_config
        mock_dest_client.assign_quality_gate.side_effect = APIError("gate not found")

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.status == StepStatus.PARTIAL
        assert result.step("Assign quality gate").status == StepStatus.FAILED
        assert result.step("Project permissions").status == StepStatus.SUCCESS
        assert result.branches_transferred == ["main"]

    async def test_configuration_read_failure_skips_configuration_steps(
        self, pipeline, tracker, project_factory, mock_extractor, mock_dest_client
    ):
        mock_extractor.extract_project_config.side_effect = APIError("settings unavailable")

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.status == StepStatus.PARTIAL
        assert result.step("Extract project configuration").status == StepStatus.FAILED
        assert result.step("Project settings").status == StepStatus.SKIPPED
        assert result.step("Project permissions").status == StepStatus.SKIPPED
        assert result.step("DevOps binding").status == StepStatus.SUCCESS
        assert result.branches_transferred == ["main"]
        mock_dest_client.set_project_setting.assert_not_awaited()

    async def test_devops_binding_applied(
        self,
        context,
        mock_extractor,
        mock_dest_client,
        mock_report_pipeline,
        org_alpha,
        tracker,
        project_factory,
    ):
        binding = Binding(alm="github", repository="alpha-team/webapp", setting_key="gh")
        pipeline = TransferPipeline(
            context,
            mock_extractor,
            mock_dest_client,
            mock_report_pipeline,
            org_alpha,
            project_bindings={"webapp": binding},
        )

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.step("DevOps binding").detail == "1 migrated, 0 skipped, 0 failed"
        mock_dest_client.set_devops_binding.assert_awaited_once_with("webapp", binding)

    async def test_profile_assignment_disabled(
        self,
        pipeline,
        tracker,
        project_factory,
        context,
        mock_extractor,
        mock_dest_client,
        project_config,
    ):
        context.config.migrate.skip_quality_profile_sync = True
        mock_extractor.extract_project_config.return_value = project_config

        result = await pipeline.transfer_project(project_factory("webapp"), tracker)

        assert result.step("Assign quality profiles").status == StepStatus.SKIPPED
        mock_dest_client.add_quality_profile_to_project.assert_not_awaited()

    async def test_branch_discovery_failure_fails_project(
        self, pipeline, tracker, project_factory, mock_dest_client, mock_extractor
    ):
        """Test that a project whose branches could not be read is not created."""
        project = project_factory("secret", ())
        project.extraction_error = "forbidden"

        result = await pipeline.transfer_project(project, tracker)

        assert result.status == StepStatus.FAILED
        assert "forbidden" in result.fatal_error
        assert step_names(result) == ["Discover branches"]
        mock_dest_client.ensure_project.assert_not_awaited()
        mock_extractor.extract_project_config.assert_not_awaited()
