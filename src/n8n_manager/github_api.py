from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
REQUIRED_SCOPE = "repo"


class AccessCheckError(Exception):
    """Raised when the token cannot reach the configured repository or branch."""


class GitHubAPI:
    def __init__(
        self,
        token: Optional[str],
        base_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not token:
            raise AccessCheckError("GitHub token must be provided")
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": DEFAULT_ACCEPT_HEADER,
                "User-Agent": "n8n-manager",
            }
        )
        self._base_url = base_url.rstrip("/")
        self._log = logging.getLogger(self.__class__.__name__)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            return self._session.get(url, params=params, timeout=30)
        except requests.RequestException as exc:
            raise AccessCheckError(f"GitHub API request failed: {exc}") from exc

    def verify_access(self, repo: str, branch: str, require_branch: bool = False) -> None:
        """Check token validity, scope, repository access and (optionally) the branch."""
        response = self.get("/user")
        if response.status_code == 401:
            raise AccessCheckError("GitHub token is invalid or expired")
        self._raise_for_status(response, "Could not verify GitHub token")

        scopes_header = response.headers.get("X-OAuth-Scopes")
        if scopes_header is not None:
            scopes = {scope.strip() for scope in scopes_header.split(",") if scope.strip()}
            if REQUIRED_SCOPE not in scopes:
                raise AccessCheckError(f"GitHub token lacks the '{REQUIRED_SCOPE}' scope")
        else:
            # fine-grained tokens do not report scopes
            self._log.debug("Token scopes not reported; skipping scope check")

        response = self.get(f"/repos/{repo}")
        if response.status_code == 404:
            raise AccessCheckError(f"Repository '{repo}' not found or not accessible with this token")
        self._raise_for_status(response, f"Could not access repository '{repo}'")

        response = self.get(f"/repos/{repo}/branches/{branch}")
        if response.status_code == 404:
            if require_branch:
                raise AccessCheckError(f"Branch '{branch}' not found in repository '{repo}'")
            self._log.info("Branch '%s' does not exist yet; it will be created on first push", branch)
            return
        self._raise_for_status(response, f"Could not check branch '{branch}'")
        self._log.info("GitHub access verified for %s@%s", repo, branch)

    def _raise_for_status(self, response: requests.Response, message: str) -> None:
        if response.status_code >= 400:
            self._log.error("GitHub API request failed: %s %s", response.status_code, response.text)
            raise AccessCheckError(f"{message} (HTTP {response.status_code})")
