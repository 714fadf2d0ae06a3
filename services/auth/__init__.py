"""Auth service submodule exports."""

from __future__ import annotations

from .github_identity import (
    GITHUB_OAUTH_SCOPE,
    GithubIdentityClient,
    GithubIdentityError,
    get_github_identity_client,
)

__all__ = [
    "GITHUB_OAUTH_SCOPE",
    "GithubIdentityClient",
    "GithubIdentityError",
    "get_github_identity_client",
]
