import base64
import re

import httpx

_REMOTE_PATTERN = re.compile(r"github\.com[:/](?P<repo>[^/\s]+/[^/\s]+?)(?:\.git)?/?$")


def create_github_client(token: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url="https://api.github.com",
        headers={
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        },
        timeout=30.0,
    )


def git_auth_env(token: str | None) -> dict[str, str]:
    """Environment that lets plain `git` authenticate to github.com without storing the token."""
    if not token:
        return {}
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode("ascii")
    return {
        "GIT_TERMINAL_PROMPT": "0",
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.https://github.com/.extraheader",
        "GIT_CONFIG_VALUE_0": f"AUTHORIZATION: basic {basic}",
        "GITHUB_TOKEN": token,
    }


def repo_from_remote(remote_url: str) -> str:
    """``owner/repo`` from an https or ssh GitHub remote URL."""
    match = _REMOTE_PATTERN.search(remote_url.strip())
    if match is None:
        raise ValueError(f"Not a GitHub remote: {remote_url}")
    return match.group("repo")


def append_session_marker(body: str, session_id: str) -> str:
    """Tag text posted to GitHub with the session that wrote it."""
    return f"{body}\n\n<!-- DO NOT EDIT: System generated metadata -->\n<!-- WORKER_ID:{session_id} -->"


def check_response(resp: httpx.Response) -> httpx.Response:
    if resp.status_code >= 400:
        raise RuntimeError(f"GitHub API error: HTTP {resp.status_code} -- {resp.text[:1000]}")
    return resp
