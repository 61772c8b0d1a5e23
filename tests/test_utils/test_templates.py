"""Tests for template utilities."""

import pytest
from jinja2 import UndefinedError

from remaster.utils.templates import merge_dicts, render_template


def test_render_template_variables():
    """Test variables are substituted and the final newline kept."""
    result = render_template("hostname={{ hostname }}\n", {"hostname": "kiosk"})
    assert result == "hostname=kiosk\n"


def test_render_template_undefined():
    """Test undefined variables are errors, not empty strings."""
    with pytest.raises(UndefinedError):
        render_template("{{ missing }}", {}, name="etc/motd")


def test_merge_dicts_nested():
    """Test nested mappings merge and scalars override."""
    base = {"work": {"source_image": "a.iso", "keep_work_dir": False}, "layers": {"names": ["x"]}}
    override = {"work": {"keep_work_dir": True}, "layers": {"names": ["y", "z"]}}

    merged = merge_dicts(base, override)

    assert merged == {
        "work": {"source_image": "a.iso", "keep_work_dir": True},
        "layers": {"names": ["y", "z"]},
    }
    assert base["work"]["keep_work_dir"] is False


def test_merge_dicts_null_resets():
    """Test a null value drops the key from the merged result."""
    merged = merge_dicts({"image": {"volume_id": "Kiosk", "boot_hybrid": "x"}}, {"image": {"volume_id": None}})

    assert merged == {"image": {"boot_hybrid": "x"}}
