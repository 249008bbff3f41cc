from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from scenariosync.core.models import IntegrityPolicy
from scenariosync.io.config import load_config


SAMPLE = """
[repository]
remote = "upstream"
branch = "plans"
scenarios_dir = "data/scenarios"

[transport]
timeout_sec = 15
max_attempts = 5

[merge]
allocation_threshold = 90
confirm_deletions = false
integrity_policy = "exclude"

[export]
exported_by = "planner@example.com"
"""


def test_load_config_from_data() -> None:
    """TOML sections map onto the configuration schema."""
    config = load_config(data=SAMPLE)

    assert config.repository.remote == "upstream"
    assert config.repository.scenarios_dir == "data/scenarios"
    assert config.transport.timeout_sec == 15
    assert config.transport.max_attempts == 5
    assert config.merge.allocation_threshold == 90
    assert config.merge.confirm_deletions is False
    assert config.merge.integrity_policy is IntegrityPolicy.exclude
    assert config.export.exported_by == "planner@example.com"


def test_load_config_from_path(tmp_path: Path) -> None:
    """Configuration files are read as UTF-8 TOML."""
    path = tmp_path / "scenariosync.toml"
    path.write_text(SAMPLE, encoding="utf-8")

    assert load_config(path=path).repository.branch == "plans"


def test_empty_config_uses_defaults() -> None:
    """Missing sections fall back to defaults."""
    config = load_config(data="")

    assert config.repository.remote == "origin"
    assert config.merge.integrity_policy is IntegrityPolicy.abort


def test_overrides_are_merged_per_section() -> None:
    """Overrides patch single keys without dropping the rest of a section."""
    config = load_config(data=SAMPLE, overrides={"merge": {"allocation_threshold": 120}})

    assert config.merge.allocation_threshold == 120
    assert config.merge.confirm_deletions is False


def test_exactly_one_source_is_required(tmp_path: Path) -> None:
    """path and data are mutually exclusive."""
    with pytest.raises(ValueError, match="exactly one"):
        load_config()
    with pytest.raises(ValueError, match="exactly one"):
        load_config(path=tmp_path / "x.toml", data="")


def test_missing_and_non_file_paths(tmp_path: Path) -> None:
    """Missing files and directories are reported distinctly."""
    with pytest.raises(FileNotFoundError):
        load_config(path=tmp_path / "absent.toml")
    with pytest.raises(ValueError, match="not a file"):
        load_config(path=tmp_path)


def test_invalid_toml_names_the_source(tmp_path: Path) -> None:
    """Syntax errors mention where the TOML came from."""
    path = tmp_path / "broken.toml"
    path.write_text("[repository\nremote = 1", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid TOML in .*broken.toml"):
        load_config(path=path)
    with pytest.raises(ValueError, match="Invalid TOML in <data>"):
        load_config(data="= nope")


@pytest.mark.parametrize(
    "content",
    [
        "[unknown]\nkey = 1\n",
        "[repository]\nremotes = 'origin'\n",
        "[transport]\nmax_attempts = 0\n",
        "[merge]\nintegrity_policy = 'ignore'\n",
    ],
)
def test_schema_violations_are_rejected(content: str) -> None:
    """Unknown sections, unknown keys and out-of-range values fail validation."""
    with pytest.raises(PydanticValidationError):
        load_config(data=content)
