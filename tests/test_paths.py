"""
Tests for the paths module.

Project root detection and canonical output locations.
"""

import pytest

from imd_crime.paths import (
    PROJECT_ROOT,
    find_project_root,
    RAW_DIR,
    INTERIM_DIR,
    PROCESSED_DIR,
    CONFIG_DIR,
    PARAMS_PATH,
    LOGS_DIR,
    CRIME_DIR,
    JOINED_DIR,
    INDEX_DIR,
    MODELS_DIR,
    METADATA_DIR,
)

ALL_PATHS = [
    PROJECT_ROOT, RAW_DIR, INTERIM_DIR, PROCESSED_DIR, CONFIG_DIR, LOGS_DIR,
    CRIME_DIR, JOINED_DIR, INDEX_DIR, MODELS_DIR, METADATA_DIR,
]


class TestProjectRoot:
    """Tests for project root detection."""

    def test_project_root_exists(self):
        assert PROJECT_ROOT.exists()
        assert PROJECT_ROOT.is_dir()

    def test_project_root_marker_exists(self):
        """The .project-root marker file should exist."""
        marker = PROJECT_ROOT / ".project-root"
        assert marker.exists(), "Missing .project-root marker file"

    def test_find_project_root_from_subdir(self):
        subdir = PROJECT_ROOT / "src" / "imd_crime"
        assert find_project_root(subdir) == PROJECT_ROOT

    def test_find_project_root_raises_on_invalid_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_project_root(tmp_path)

    def test_nested_marker_wins(self, tmp_path):
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        (tmp_path / "a" / ".project-root").touch()
        assert find_project_root(nested) == tmp_path / "a"


class TestCanonicalPaths:
    """Tests for canonical path definitions."""

    def test_raw_dir_under_data(self):
        assert RAW_DIR.name == "raw"
        assert RAW_DIR.parent.name == "data"

    def test_outputs_under_processed(self):
        for p in (JOINED_DIR, INDEX_DIR, MODELS_DIR, METADATA_DIR):
            assert p.parent == PROCESSED_DIR

    def test_crime_dir_under_raw(self):
        assert CRIME_DIR.parent == RAW_DIR

    def test_params_in_config_dir(self):
        assert PARAMS_PATH.parent == CONFIG_DIR
        assert PARAMS_PATH.exists()

    def test_no_relative_path_components(self):
        for p in ALL_PATHS:
            assert ".." not in str(p), f"Path contains '..': {p}"

    def test_all_paths_absolute(self):
        for p in ALL_PATHS:
            assert p.is_absolute(), f"Path is not absolute: {p}"


@pytest.mark.smoke
class TestPathsSmoke:
    """Smoke tests for paths module."""

    def test_import_succeeds(self):
        from imd_crime import paths
        assert paths.PROJECT_ROOT is not None

    def test_directories_exist(self):
        assert (PROJECT_ROOT / "src").exists()
        assert (PROJECT_ROOT / "configs").exists()
