"""
fetcher.py -- All outbound HTTP calls made on behalf of the auth layer.

  - Disposable-email domain block-list (plain text, one domain per line)
  - User-created webhook (best effort)
  - Credential-exchange host lookup (/api/typebot/client)
  - GitLab group listing (paginated via the X-Next-Page header)

Functions either propagate requests.RequestException to the caller (when the
caller decides what a failure means) or swallow-and-log it (webhook only).
Each function documents which.
"""

import logging
from typing import Any, Optional

import requests

logger = logging.getLogger("builder.fetcher")

GITLAB_GROUPS_PAGE_SIZE = 100

# Module-level session shared across all fetcher calls for connection pooling.
# max_redirects=3 replaces the requests default of 30; the credential host is
# caller-supplied, so redirect chains are kept short.
_session = requests.Session()
_session.max_redirects = 3


def fetch_disposable_domains(url: str) -> set[str]:
    """Fetch the disposable-email block-list and return it as a set of domains.

    Fetched on every call; no caching. Raises requests.RequestException on
    network failure so the sign-in gate fails the attempt instead of silently
    letting a throwaway address through.
    """
    resp = _session.get(url, timeout=10)
    resp.raise_for_status()
    return {line.strip().lower() for line in resp.text.split("\n") if line.strip()}


def notify_user_created(url: str, email: str) -> None:
    """POST {"email": ...} to the user-created webhook. Never raises."""
    try:
        resp = _session.post(url, json={"email": email}, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.error("Failed to call user created webhook: %s", e)


def fetch_client_user(api_host: str, tenant_id: Optional[str]) -> dict[str, Any]:
    """Fetch the user record the credential host exposes for a tenant.

    GET {api_host}/api/typebot/client with a tenantId header. Raises
    requests.RequestException (or ValueError on a non-JSON body); the
    credentials flow turns either into a rejected sign-in.
    """
    headers = {"tenantId": tenant_id} if tenant_id else {}
    resp = _session.get(f"{api_host.rstrip('/')}/api/typebot/client", headers=headers, timeout=10)
    resp.raise_for_status()
    return resp.json()


def fetch_gitlab_groups(base_url: str, access_token: str) -> list[dict[str, Any]]:
    """Return every group visible to the token, following X-Next-Page.

    GitLab paginates /api/v4/groups; an empty or missing X-Next-Page header
    marks the last page.
    """
    url = f"{base_url.rstrip('/')}/api/v4/groups"
    headers = {"Authorization": f"Bearer {access_token}"}
    groups: list[dict[str, Any]] = []
    page = 1
    while page:
        resp = _session.get(
            url,
            params={"per_page": GITLAB_GROUPS_PAGE_SIZE, "page": page},
            headers=headers,
            timeout=10,
        )
        resp.raise_for_status()
        groups.extend(resp.json())
        next_page = resp.headers.get("X-Next-Page", "")
        page = int(next_page) if next_page.isdigit() else 0
    return groups
