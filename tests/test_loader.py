"""Tests for the document loader."""

from pathlib import Path

import pytest

from flux_template.exceptions import FluxTemplateException, InputException
from flux_template.loader import (
    DocumentLoader,
    LoadedDocuments,
    LoadOptions,
    load_documents,
)
from flux_template.manifest import Template

TESTDATA_DIR = Path("tests/testdata/repo")


async def test_load_repo() -> None:
    """Test loading every document of a repository."""
    documents = await load_documents([TESTDATA_DIR])
    assert sorted(c.name for c in documents.clusters) == ["prod", "staging"]
    assert sorted(t.name for t in documents.templates) == ["auth", "web"]
    assert list(documents.profiles) == ["workers"]
    assert documents.projects == []
    cluster = documents.get_cluster("prod")
    assert cluster
    assert cluster.nodes == ["workers"]
    assert documents.get_template("web")
    assert documents.get_template("missing") is None


async def test_load_single_file() -> None:
    """Test loading a single file."""
    loader = DocumentLoader()
    documents = await loader.load(
        LoadOptions(path=TESTDATA_DIR / "templates/web/template.yaml")
    )
    assert [t.name for t in documents.templates] == ["web"]
    assert documents.clusters == []


async def test_non_recursive() -> None:
    """Test subdirectories are skipped when not recursive."""
    loader = DocumentLoader()
    documents = await loader.load(
        LoadOptions(path=TESTDATA_DIR / "templates", recursive=False)
    )
    assert documents.templates == []


async def test_skips_kubernetes_manifests(tmp_path: Path) -> None:
    """Test documents outside the API group are ignored."""
    (tmp_path / "resources.yaml").write_text(
        """\
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: config
---
- not
- a mapping
"""
    )
    documents = await load_documents([tmp_path])
    assert documents == LoadedDocuments()


async def test_invalid_document(tmp_path: Path) -> None:
    """Test an invalid flux-template document is an error."""
    (tmp_path / "bad.yaml").write_text(
        """\
apiVersion: flux-template.io/v1
kind: Template
metadata:
  name: bad
"""
    )
    with pytest.raises(InputException, match="bad.yaml"):
        await load_documents([tmp_path])


async def test_invalid_yaml(tmp_path: Path) -> None:
    """Test a file that does not parse."""
    (tmp_path / "broken.yml").write_text("key: [unclosed")
    with pytest.raises(InputException, match="Invalid YAML"):
        await load_documents([tmp_path])


async def test_missing_path(tmp_path: Path) -> None:
    """Test loading a path that does not exist."""
    with pytest.raises(FluxTemplateException, match="does not exist"):
        await load_documents([tmp_path / "missing"])


async def test_duplicate_template(tmp_path: Path) -> None:
    """Test two templates with the same name."""
    template = (TESTDATA_DIR / "templates/web/template.yaml").read_text()
    (tmp_path / "copy.yaml").write_text(template)
    with pytest.raises(InputException, match="Duplicate Template 'web'"):
        await load_documents([TESTDATA_DIR / "templates", tmp_path])


async def test_file_loaded_once() -> None:
    """Test a path given twice is only read once."""
    documents = await load_documents(
        [TESTDATA_DIR / "templates/web", TESTDATA_DIR / "templates/web"]
    )
    assert [t.name for t in documents.templates] == ["web"]


def test_merge_documents() -> None:
    """Test combining loaded documents."""
    first = LoadedDocuments(templates=[Template(name="a")])
    second = LoadedDocuments(templates=[Template(name="b")])
    first.update(second)
    assert [t.name for t in first.templates] == ["a", "b"]
