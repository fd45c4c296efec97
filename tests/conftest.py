"""Test fixtures for flux-template."""

from pathlib import Path
from typing import Any

import pytest
import yaml

from flux_template.manifest import Cluster, NodeProfile, Template

TESTDATA_DIR = Path("tests/testdata/repo")


def _load(path: Path) -> dict[str, Any]:
    return yaml.safe_load(path.read_text())


@pytest.fixture(name="prod")
def prod_fixture() -> Cluster:
    """The cluster enabling only the web template."""
    return Cluster.parse_doc(_load(TESTDATA_DIR / "clusters/prod.yaml"))


@pytest.fixture(name="staging")
def staging_fixture() -> Cluster:
    """The cluster enabling both templates."""
    return Cluster.parse_doc(_load(TESTDATA_DIR / "clusters/staging.yaml"))


@pytest.fixture(name="templates")
def templates_fixture() -> list[Template]:
    """All test templates in declaration order."""
    return [
        Template.parse_doc(_load(TESTDATA_DIR / "templates/web/template.yaml")),
        Template.parse_doc(_load(TESTDATA_DIR / "templates/auth/template.yaml")),
    ]


@pytest.fixture(name="profiles")
def profiles_fixture() -> dict[str, NodeProfile]:
    """Node profiles by name."""
    profile = NodeProfile.parse_doc(_load(TESTDATA_DIR / "nodes/workers.yaml"))
    return {profile.name: profile}
