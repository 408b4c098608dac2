"""
auth/groups.py -- Group-membership requirement for providers that expose groups.

Only GitLab exposes group membership today. For every other provider
get_required_groups() returns [] and the check is skipped, so a provider
without a configured allow-list is never restricted.

Matching is exact and case-sensitive against GitLab's group full_path
("acme/platform"), which is what operators put in GITLAB_REQUIRED_GROUPS.
"""

from __future__ import annotations

from typing import Any

from core.config import Settings
from core.fetcher import fetch_gitlab_groups


def get_required_groups(provider: str, settings: Settings) -> list[str]:
    if provider == "gitlab":
        return settings.gitlab_required_group_list
    return []


def get_user_groups(account: dict[str, Any], settings: Settings) -> list[str]:
    """Return the group identifiers the account's owner belongs to.

    Raises requests.RequestException if the provider API fails; the sign-in
    attempt then fails rather than being let through unchecked.
    """
    if account.get("provider") == "gitlab":
        groups = fetch_gitlab_groups(settings.gitlab_base_url or "https://gitlab.com", account.get("access_token") or "")
        return [group["full_path"] for group in groups if "full_path" in group]
    return []


def has_required_group(user_groups: list[str], required_groups: list[str]) -> bool:
    if not required_groups:
        return True
    return not set(user_groups).isdisjoint(required_groups)
