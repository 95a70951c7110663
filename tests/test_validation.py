"""
Tests for input validation utilities.
"""

import pytest

from bt.core.exceptions import ValidationError
from bt.utils.validation import (
    repository_path,
    validate_non_empty_string,
    validate_repository_slug,
    validate_workspace,
)


class TestValidateWorkspace:
    """Test cases for workspace validation."""

    def test_valid_slug(self):
        assert validate_workspace("Acme-Corp") == "acme-corp"

    def test_uuid(self):
        uuid = "{D2B3C0F4-1111-2222-3333-444455556666}"

        assert validate_workspace(uuid) == uuid.lower()

    @pytest.mark.parametrize("workspace", ["", "   ", "acme corp", "acme/other"])
    def test_invalid(self, workspace):
        with pytest.raises(ValidationError):
            validate_workspace(workspace)


class TestValidateRepositorySlug:
    """Test cases for repository slug validation."""

    def test_valid(self):
        assert validate_repository_slug("My_Repo.git") == "my_repo.git"

    def test_too_long(self):
        with pytest.raises(ValidationError, match="too long"):
            validate_repository_slug("a" * 63)

    @pytest.mark.parametrize("slug", ["", "has space", "semi;colon"])
    def test_invalid(self, slug):
        with pytest.raises(ValidationError):
            validate_repository_slug(slug)


class TestRepositoryPath:
    """Test cases for API path building."""

    def test_basic(self):
        assert repository_path("acme", "api") == "/repositories/acme/api"

    def test_extra_parts_are_quoted(self):
        assert repository_path("acme", "api", "refs", "branches", "feature/x") == (
            "/repositories/acme/api/refs/branches/feature%2Fx"
        )

    def test_invalid_workspace(self):
        with pytest.raises(ValidationError):
            repository_path("", "api")


def test_validate_non_empty_string():
    assert validate_non_empty_string("  value ", "Field") == "value"
    with pytest.raises(ValidationError, match="Field cannot be empty"):
        validate_non_empty_string("  ", "Field")
