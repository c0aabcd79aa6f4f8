import pytest

from image_customizer.errors import MissingPrerequisite, ResourceExhaustion, ValidationFailure
from image_customizer.preflight import check_free_space, check_tools, run_preflight, validate_artifact


def test_valid_artifact_passes(tmp_path):
    image = tmp_path / "boot.wim"
    image.write_bytes(b"MSWIM\0\0\0")

    report = run_preflight(
        artifact=image, work_dir=tmp_path / "work", suffixes=(".wim",), required_tools=("sh",)
    )

    assert report.artifact_bytes == 8
    assert report.tools["sh"]
    assert report.free_bytes["customize"] > 0


def test_artifact_problems_are_validation_failures(tmp_path):
    with pytest.raises(ValidationFailure, match="not found"):
        validate_artifact(tmp_path / "missing.wim", suffixes=(".wim",))

    empty = tmp_path / "empty.wim"
    empty.touch()
    with pytest.raises(ValidationFailure, match="empty"):
        validate_artifact(empty, suffixes=(".wim",))

    iso = tmp_path / "disk.iso"
    iso.write_bytes(b"x")
    with pytest.raises(ValidationFailure, match="not a supported image type"):
        validate_artifact(iso, suffixes=(".wim", ".esd"))

    with pytest.raises(ValidationFailure, match="not a file"):
        validate_artifact(tmp_path, suffixes=())


def test_missing_tool_is_a_missing_prerequisite():
    with pytest.raises(MissingPrerequisite, match="definitely-not-a-real-tool"):
        check_tools(["sh", "definitely-not-a-real-tool"])


def test_insufficient_space(tmp_path):
    with pytest.raises(ResourceExhaustion):
        check_free_space(tmp_path / "not" / "yet" / "created", 2**62, what="the customize stage")
