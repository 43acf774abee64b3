"""Tests for the path boundary check."""

import os

import pytest

from chatrelay.core.errors import PathRejected
from chatrelay.tools.paths import PathValidator


def test_exact_root_is_accepted(tmp_path):
    validator = PathValidator([tmp_path])
    assert validator.validate(tmp_path) == tmp_path.resolve()


def test_child_path_is_accepted(tmp_path):
    validator = PathValidator([tmp_path])
    assert validator.is_allowed(tmp_path / "a" / "b.txt")


def test_outside_root_is_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    validator = PathValidator([root])
    with pytest.raises(PathRejected):
        validator.validate(tmp_path / "other.txt")
    with pytest.raises(PathRejected):
        validator.validate(root / ".." / "other.txt")


def test_sibling_with_common_prefix_is_rejected(tmp_path):
    work = tmp_path / "work"
    workspace = tmp_path / "workspace"
    work.mkdir()
    workspace.mkdir()
    validator = PathValidator([work])
    assert not validator.is_allowed(workspace / "file.txt")


def test_symlink_escaping_root_is_rejected(tmp_path):
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    root.mkdir()
    outside.mkdir()
    (outside / "secret.txt").write_text("x")
    os.symlink(outside, root / "link")

    validator = PathValidator([root])
    with pytest.raises(PathRejected):
        validator.validate(root / "link" / "secret.txt")


def test_no_roots_rejects_everything(tmp_path):
    assert not PathValidator([]).is_allowed(tmp_path)


def test_with_root_adds_a_root(tmp_path):
    a = tmp_path / "a"
    b = tmp_path / "b"
    validator = PathValidator([a]).with_root(b)
    assert validator.is_allowed(b / "x")
    assert validator.is_allowed(a / "x")
