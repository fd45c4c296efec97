"""Tests for the node id library."""

import pytest

from flux_template.exceptions import InvalidReferenceError
from flux_template.manifest import RawDependency
from flux_template.node_id import NodeID, make_id, parse_dependency, split_id


def test_make_id() -> None:
    """Test building and splitting a NodeID."""
    node_id = make_id("web", "app")
    assert node_id == "web/app"
    assert split_id(node_id) == ("web", "app")


def test_ids_are_distinct() -> None:
    """Test distinct (template, unit) pairs produce distinct ids."""
    ids = {
        make_id(template, unit)
        for template in ("web", "auth", "web-app")
        for unit in ("app", "db", "login")
    }
    assert len(ids) == 9


def test_local_reference() -> None:
    """Test a bare unit name resolves within the owning template."""
    assert parse_dependency("db", "web") == NodeID("web/db")
    assert parse_dependency(" db ", "web") == NodeID("web/db")


def test_qualified_reference() -> None:
    """Test a qualified reference is used verbatim."""
    assert parse_dependency("auth/login", "web") == NodeID("auth/login")


def test_raw_reference() -> None:
    """Test raw references do not resolve to a NodeID."""
    raw = RawDependency(name="infra", namespace="flux-system")
    assert parse_dependency(raw, "web") is None


@pytest.mark.parametrize("ref", ["", "  ", "a/b/c", "/app", "web/"])
def test_invalid_reference(ref: str) -> None:
    """Test malformed references are rejected."""
    with pytest.raises(InvalidReferenceError) as exc_info:
        parse_dependency(ref, "web")
    assert exc_info.value.reference == ref
