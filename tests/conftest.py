"""Shared pytest fixtures for the migration tool tests."""

from unittest.mock import AsyncMock, Mock

import pytest

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.config import (
    Config,
    MigrateSettings,
    SourceConfig,
    TargetOrgConfig,
)
from sonar_migrate.models import (
    Binding,
    Branch,
    DefaultTemplate,
    ExtractionSnapshot,
    Group,
    GroupPermissions,
    PermissionTemplate,
    PermissionTemplates,
    Portfolio,
    PortfolioMember,
    Project,
    ProjectConfig,
    ProjectSnapshot,
    QualityGate,
    QualityProfile,
    TemplatePermission,
)


def make_project(key, branches=("main",), name=None):
    """Build a project whose first branch is the main branch."""
    return Project(
        key=key,
        name=name or key.title(),
        branches=[Branch(name=b, is_main=(i == 0)) for i, b in enumerate(branches)],
    )


@pytest.fixture
def project_factory():
    """Factory building projects; the first branch name is the main branch."""
    return make_project


@pytest.fixture
def org_alpha():
    """Destination organization ``alpha``."""
    return TargetOrgConfig(key="alpha", token="alpha-token")


@pytest.fixture
def org_beta():
    """Destination organization ``beta``."""
    return TargetOrgConfig(key="beta", token="beta-token")


@pytest.fixture
def config(tmp_path, org_alpha):
    """Create a test configuration writing into a temporary directory."""
    return Config(
        source=SourceConfig(url="https://sonarqube.example.com", token="sq-token"),
        organizations=[org_alpha],
        migrate=MigrateSettings(output_dir=tmp_path / "output"),
    )


@pytest.fixture
def sample_snapshot():
    """A small server-wide extraction with one of every resource kind."""
    return ExtractionSnapshot(
        projects=[
            make_project("webapp", ("main", "legacy")),
            make_project("api", ("master",)),
            make_project("tools", ()),
        ],
        project_bindings={
            "webapp": Binding(alm="github", repository="alpha-team/webapp"),
            "api": Binding(alm="github", repository="beta-team/api"),
        },
        quality_gates=[
            QualityGate(name="Sonar way", is_built_in=True),
            QualityGate(
                name="Strict",
                is_default=True,
                conditions=[{"metric": "coverage", "op": "LT", "error": "80"}],
            ),
        ],
        quality_profiles=[
            QualityProfile(name="Sonar way", language="java", is_built_in=True),
            QualityProfile(name="Team Java", language="java", backup="<profile/>"),
            QualityProfile(name="Team Java", language="py", backup="<profile/>"),
        ],
        groups=[
            Group(name="sonar-users", default=True),
            Group(name="developers", description="All developers"),
            Group(name="auditors"),
        ],
        global_permissions=[
            GroupPermissions(name="developers", permissions=["scan", "provisioning"]),
            GroupPermissions(name="auditors", permissions=["admin"]),
        ],
        permission_templates=PermissionTemplates(
            templates=[
                PermissionTemplate(
                    id="tpl-1",
                    name="Default template",
                    permissions=[
                        TemplatePermission(key="user", groups=["developers"]),
                        TemplatePermission(key="admin", groups=["auditors"]),
                    ],
                ),
                PermissionTemplate(id="tpl-2", name="Legacy template"),
            ],
            default_templates=[DefaultTemplate(template_id="tpl-2")],
        ),
        portfolios=[
            Portfolio(
                key="pf-all",
                name="Everything",
                projects=[PortfolioMember(key="webapp"), PortfolioMember(key="api")],
            ),
        ],
    )


def make_dest_client(organization="alpha"):
    """Build a mock SonarCloud client with every endpoint as an AsyncMock."""
    client = Mock(spec=SonarCloudClient)
    client.organization = organization
    client.test_connection = AsyncMock()
    client.ensure_project = AsyncMock(return_value=True)
    client.get_main_branch_name = AsyncMock(return_value="main")
    client.set_project_setting = AsyncMock()
    client.set_project_tags = AsyncMock()
    client.create_project_link = AsyncMock()
    client.set_devops_binding = AsyncMock()
    client.create_group = AsyncMock(return_value={"id": "g-1"})
    client.add_group_permission = AsyncMock()
    client.create_permission_template = AsyncMock(return_value={"id": "dest-tpl"})
    client.add_group_to_template = AsyncMock()
    client.set_default_template = AsyncMock()
    client.create_quality_gate = AsyncMock(return_value={"id": "gate-1"})
    client.create_quality_gate_condition = AsyncMock()
    client.set_default_quality_gate = AsyncMock()
    client.assign_quality_gate = AsyncMock()
    client.restore_quality_profile = AsyncMock(return_value={"profile": {"key": "qp-1"}})
    client.set_default_quality_profile = AsyncMock()
    client.add_quality_profile_to_project = AsyncMock()
    client.search_quality_profiles = AsyncMock(return_value=[])
    client.list_active_rules = AsyncMock(return_value=[])
    client.create_portfolio = AsyncMock()
    client.add_project_to_portfolio = AsyncMock()
    client.search_issues = AsyncMock(return_value=[])
    client.transition_issue = AsyncMock()
    client.assign_issue = AsyncMock()
    client.add_issue_comment = AsyncMock()
    client.set_issue_tags = AsyncMock()
    client.search_hotspots = AsyncMock(return_value=[])
    client.change_hotspot_status = AsyncMock()
    client.add_hotspot_comment = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_dest_client():
    """Create a mock SonarCloud client for organization ``alpha``."""
    return make_dest_client()


@pytest.fixture
def dest_clients():
    """Per-organization mock SonarCloud clients, built on first use."""
    clients = {}

    def factory(org):
        if org.key not in clients:
            clients[org.key] = make_dest_client(org.key)
        return clients[org.key]

    factory.clients = clients
    return factory


@pytest.fixture
def mock_report_pipeline():
    """Create a scanner report pipeline that accepts every upload."""
    pipeline = Mock()
    pipeline.build_all = Mock(return_value={"messages": []})
    pipeline.encode_all = Mock(return_value=b"report")
    pipeline.upload = AsyncMock(return_value={"task_id": "task-1"})
    pipeline.upload_and_wait = AsyncMock(return_value={"task_id": "task-1"})
    return pipeline


@pytest.fixture
def mock_extractor():
    """Create an extractor returning a one-file snapshot for every branch."""
    extractor = Mock()

    async def extract_all(project):
        main = project.main_branch
        return ProjectSnapshot(
            project=project,
            branch=main.name if main else "main",
            components=[{"key": f"{project.key}:src/a.py"}],
            sources=[{"key": f"{project.key}:src/a.py", "source": "x = 1"}],
            measures={"ncloc": "10"},
        )

    async def extract_branch(branch_name, base):
        return ProjectSnapshot(
            project=base.project,
            branch=branch_name,
            components=[{"key": f"{base.project.key}:src/a.py"}],
            measures={"ncloc": "5"},
        )

    extractor.extract_all = AsyncMock(side_effect=extract_all)
    extractor.extract_branch = AsyncMock(side_effect=extract_branch)
    extractor.extract_project_config = AsyncMock(return_value=ProjectConfig())
    return extractor


@pytest.fixture
def recorded_sleeps():
    """A fake sleep coroutine that records delays instead of waiting."""
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    fake_sleep.delays = delays
    return fake_sleep
