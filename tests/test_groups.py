"""
tests/test_groups.py -- Group-membership requirement (auth/groups.py) and the
paginated GitLab group fetch (core/fetcher.py).
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from conftest import make_settings

from auth.groups import get_required_groups, get_user_groups, has_required_group
from core.fetcher import GITLAB_GROUPS_PAGE_SIZE, fetch_gitlab_groups


def _page(groups: list[dict], next_page: str) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = groups
    resp.headers = {"X-Next-Page": next_page}
    return resp


class TestRequiredGroups:
    def test_gitlab_reads_comma_separated_setting(self) -> None:
        settings = make_settings(gitlab_required_groups="acme/platform, acme/infra,")
        assert get_required_groups("gitlab", settings) == ["acme/platform", "acme/infra"]

    def test_other_providers_have_no_requirement(self) -> None:
        settings = make_settings(gitlab_required_groups="acme")
        assert get_required_groups("github", settings) == []
        assert get_required_groups("keycloak", settings) == []


class TestHasRequiredGroup:
    def test_empty_requirement_always_passes(self) -> None:
        assert has_required_group([], []) is True

    def test_any_shared_group_passes(self) -> None:
        assert has_required_group(["a", "b"], ["b", "c"]) is True

    def test_no_shared_group_fails(self) -> None:
        assert has_required_group(["a"], ["b"]) is False

    def test_match_is_case_sensitive(self) -> None:
        assert has_required_group(["Acme/Platform"], ["acme/platform"]) is False


class TestUserGroups:
    def test_gitlab_returns_full_paths(self) -> None:
        settings = make_settings(gitlab_base_url="https://git.example.com")
        groups = [{"full_path": "acme"}, {"full_path": "acme/platform"}, {"name": "no path"}]
        with patch("auth.groups.fetch_gitlab_groups", return_value=groups) as mock_fetch:
            result = get_user_groups({"provider": "gitlab", "access_token": "glpat"}, settings)
        assert result == ["acme", "acme/platform"]
        mock_fetch.assert_called_once_with("https://git.example.com", "glpat")

    def test_other_providers_have_no_groups(self) -> None:
        with patch("auth.groups.fetch_gitlab_groups") as mock_fetch:
            assert get_user_groups({"provider": "github"}, make_settings()) == []
        mock_fetch.assert_not_called()


class TestFetchGitlabGroups:
    def test_follows_next_page_header(self) -> None:
        session = MagicMock()
        session.get.side_effect = [
            _page([{"full_path": "a"}], "2"),
            _page([{"full_path": "b"}], "3"),
            _page([{"full_path": "c"}], ""),
        ]
        with patch("core.fetcher._session", session):
            groups = fetch_gitlab_groups("https://gitlab.com/", "glpat")

        assert [g["full_path"] for g in groups] == ["a", "b", "c"]
        assert session.get.call_count == 3
        first_call = session.get.call_args_list[0]
        assert first_call.args[0] == "https://gitlab.com/api/v4/groups"
        assert first_call.kwargs["params"] == {"per_page": GITLAB_GROUPS_PAGE_SIZE, "page": 1}
        assert first_call.kwargs["headers"] == {"Authorization": "Bearer glpat"}
        assert session.get.call_args_list[2].kwargs["params"]["page"] == 3

    def test_single_page_without_header(self) -> None:
        session = MagicMock()
        resp = MagicMock()
        resp.json.return_value = [{"full_path": "solo"}]
        resp.headers = {}
        session.get.return_value = resp
        with patch("core.fetcher._session", session):
            assert fetch_gitlab_groups("https://gitlab.com", "t") == [{"full_path": "solo"}]
        assert session.get.call_count == 1
