"""
Input validation utilities for bt.

This module validates identifiers before they are placed in an API path, so a
malformed workspace or repository name fails without a network call.
"""

import re
import urllib.parse

from bt.core.exceptions import ValidationError

_UUID_PATTERN = r"^\{?[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\}?$"


def validate_workspace(workspace: str) -> str:
    """
    Validate a Bitbucket workspace slug or UUID.

    Args:
        workspace: The workspace slug or UUID to validate

    Returns:
        The validated workspace identifier (lowercase)

    Raises:
        ValidationError: If the workspace identifier is invalid
    """
    if not workspace or not workspace.strip():
        raise ValidationError("Workspace cannot be empty")

    workspace = workspace.strip().lower()
    if re.match(_UUID_PATTERN, workspace):
        return workspace

    if not re.match(r"^[a-z0-9._-]+$", workspace):
        raise ValidationError(
            f"Workspace slug '{workspace}' contains invalid characters",
            suggestion="Use only lowercase letters, numbers, hyphens, underscores, and dots",
        )
    return workspace


def validate_repository_slug(repo_slug: str) -> str:
    """
    Validate a Bitbucket repository slug.

    Args:
        repo_slug: The repository slug to validate

    Returns:
        The validated repository slug (lowercase)

    Raises:
        ValidationError: If the repository slug is invalid
    """
    if not repo_slug or not repo_slug.strip():
        raise ValidationError("Repository slug cannot be empty")

    repo_slug = repo_slug.strip().lower()
    if re.match(_UUID_PATTERN, repo_slug):
        return repo_slug

    # Bitbucket allows up to 62 characters
    if len(repo_slug) > 62:
        raise ValidationError(
            f"Repository slug '{repo_slug}' is too long (max 62 characters)",
            suggestion="Use a shorter, descriptive name",
        )

    if not re.match(r"^[a-z0-9._-]+$", repo_slug):
        raise ValidationError(
            f"Repository slug '{repo_slug}' contains invalid characters",
            suggestion="Use only lowercase letters, numbers, hyphens, underscores, and dots",
        )
    return repo_slug


def repository_path(workspace: str, repo_slug: str, *parts: str) -> str:
    """
    Build a ``/repositories/{workspace}/{repo_slug}/...`` API path.

    Each extra part becomes one URL-quoted path segment.
    """
    path = f"/repositories/{validate_workspace(workspace)}/{validate_repository_slug(repo_slug)}"
    for part in parts:
        path += "/" + urllib.parse.quote(str(part).strip("/"), safe="")
    return path


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty and return it stripped."""
    if not value or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")
    return value.strip()
