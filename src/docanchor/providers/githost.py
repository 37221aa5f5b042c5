"""
Git-host dispatchers: commit the anchor record as a JSON file.

GitHub uses the contents API (``PUT /repos/{owner}/{repo}/contents/{path}``,
reading the existing blob sha first so updates succeed). GitLab uses the
repository files API with POST for create and PUT for update.
"""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from .. import diagnostics
from ..errors import MalformedResponse, ProviderError, TransientProviderError
from ..record import AnchorRecord
from ..settings import GitHostSettings
from .base import ConnectionCheck, DispatchResult, HttpDispatcherMixin, raise_for_status

GITHUB_API_BASE = "https://api.github.com"
GITLAB_API_BASE = "https://gitlab.com/api/v4"
GITHUB_API_VERSION = "2022-11-28"

# 409, 429 and 5xx are retried; these fail the provider outright.
PERMANENT_STATUSES = frozenset({400, 401, 403, 404, 422})


def folder_for(template: str, moment: datetime) -> str:
    folder = (
        template.replace("YYYY", moment.strftime("%Y"))
        .replace("MM", moment.strftime("%m"))
        .replace("DD", moment.strftime("%d"))
    )
    return folder.strip("/")


def file_path_for(
    record: AnchorRecord, template: str, moment: datetime | None = None
) -> str:
    """``{folder}/{document_id}-{YYYYmmddHHMMSS}.json`` for the record."""
    moment = moment or record.created_datetime
    name = f"{record.document_id}-{moment.strftime('%Y%m%d%H%M%S')}.json"
    folder = folder_for(template, moment)
    return f"{folder}/{name}" if folder else name


def commit_message_for(record: AnchorRecord, template: str) -> str:
    return template.replace("{doc_id}", record.document_id)


def _html_url(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    content = data.get("content") if isinstance(data, dict) else None
    url = content.get("html_url") if isinstance(content, dict) else None
    return url if isinstance(url, str) else None


class _GitHostBase(HttpDispatcherMixin, ABC):
    name = "git_host"

    def __init__(
        self,
        config: GitHostSettings,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._init_client(client, timeout)

    def _check_config(self) -> str | None:
        if not self._config.token_value():
            return "git host token is not configured"
        if not self._config.owner or not self._config.repo:
            return "git host owner/repo is not configured"
        return None

    async def dispatch(self, record: AnchorRecord) -> DispatchResult:
        problem = self._check_config()
        if problem:
            return DispatchResult("failed", error=problem)
        path = file_path_for(record, self._config.folder_path_template)
        try:
            url, status = await self._commit(record, path)
        except ProviderError as exc:
            return DispatchResult.from_error(exc)
        return DispatchResult.anchored(url, path=path, http_status=status)

    @abstractmethod
    async def _commit(self, record: AnchorRecord, path: str) -> tuple[str | None, int]:
        """Create or update ``path``; returns the file URL and HTTP status."""


class GitHubDispatcher(_GitHostBase):
    """Anchors records into a GitHub repository."""

    def _api_base(self) -> str:
        return (self._config.api_base or GITHUB_API_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.token_value()}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    def _contents_url(self, path: str) -> str:
        owner = quote(self._config.owner, safe="")
        repo = quote(self._config.repo, safe="")
        return f"{self._api_base()}/repos/{owner}/{repo}/contents/{quote(path)}"

    async def _existing_sha(self, url: str) -> str | None:
        resp = await self._request(
            "GET",
            url,
            headers=self._headers(),
            params={"ref": self._config.branch},
        )
        if resp.status_code != 200:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        sha = data.get("sha") if isinstance(data, dict) else None
        return sha if isinstance(sha, str) else None

    async def _commit(self, record: AnchorRecord, path: str) -> tuple[str | None, int]:
        url = self._contents_url(path)
        body: dict[str, Any] = {
            "message": commit_message_for(record, self._config.commit_message_template),
            "content": base64.b64encode(record.to_json().encode("utf-8")).decode(
                "ascii"
            ),
            "branch": self._config.branch,
        }
        sha = await self._existing_sha(url)
        if sha:
            body["sha"] = sha
        resp = await self._request("PUT", url, headers=self._headers(), json=body)
        raise_for_status(
            resp,
            provider=self.name,
            permanent=PERMANENT_STATUSES,
            context="GitHub contents API",
        )
        html_url = _html_url(resp)
        if html_url is None:
            diagnostics.warn(
                "githost",
                "commit accepted but response carried no file URL",
                path=path,
                status=resp.status_code,
            )
        return html_url, resp.status_code

    async def test_connection(self) -> ConnectionCheck:
        problem = self._check_config()
        if problem:
            return ConnectionCheck(False, problem)
        owner = quote(self._config.owner, safe="")
        repo = quote(self._config.repo, safe="")
        try:
            resp = await self._request(
                "GET",
                f"{self._api_base()}/repos/{owner}/{repo}",
                headers=self._headers(),
            )
        except TransientProviderError as exc:
            return ConnectionCheck(False, exc.message)
        if resp.status_code != 200:
            return ConnectionCheck(False, f"GitHub returned HTTP {resp.status_code}")
        return ConnectionCheck(
            True, f"Connected to {self._config.owner}/{self._config.repo}"
        )


class GitLabDispatcher(_GitHostBase):
    """Anchors records into a GitLab project."""

    def _api_base(self) -> str:
        return (self._config.api_base or GITLAB_API_BASE).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self._config.token_value() or ""}

    def _project_url(self) -> str:
        project = quote(f"{self._config.owner}/{self._config.repo}", safe="")
        return f"{self._api_base()}/projects/{project}"

    async def _project_id(self) -> str:
        resp = await self._request("GET", self._project_url(), headers=self._headers())
        raise_for_status(
            resp,
            provider=self.name,
            permanent=PERMANENT_STATUSES,
            context="GitLab project lookup",
        )
        try:
            project_id = resp.json()["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise MalformedResponse(
                "GitLab project lookup returned no id", provider=self.name, cause=exc
            ) from exc
        return str(project_id)

    async def _commit(self, record: AnchorRecord, path: str) -> tuple[str | None, int]:
        project_id = await self._project_id()
        files_url = (
            f"{self._api_base()}/projects/{project_id}/repository/files/"
            f"{quote(path, safe='')}"
        )
        exists = await self._request(
            "GET",
            files_url,
            headers=self._headers(),
            params={"ref": self._config.branch},
        )
        method = "PUT" if exists.status_code == 200 else "POST"
        body = {
            "branch": self._config.branch,
            "commit_message": commit_message_for(
                record, self._config.commit_message_template
            ),
            "content": record.to_json(),
            "encoding": "text",
        }
        resp = await self._request(
            method, files_url, headers=self._headers(), json=body
        )
        raise_for_status(
            resp,
            provider=self.name,
            permanent=PERMANENT_STATUSES,
            context="GitLab repository files API",
        )
        base = self._api_base().removesuffix("/api/v4")
        url = (
            f"{base}/{self._config.owner}/{self._config.repo}/-/blob/"
            f"{self._config.branch}/{path}"
        )
        return url, resp.status_code

    async def test_connection(self) -> ConnectionCheck:
        problem = self._check_config()
        if problem:
            return ConnectionCheck(False, problem)
        try:
            project_id = await self._project_id()
        except ProviderError as exc:
            return ConnectionCheck(False, exc.message)
        return ConnectionCheck(True, f"Connected to GitLab project {project_id}")


def create_git_dispatcher(
    config: GitHostSettings,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> GitHubDispatcher | GitLabDispatcher:
    if config.kind == "gitlab":
        return GitLabDispatcher(config, client=client, timeout=timeout)
    return GitHubDispatcher(config, client=client, timeout=timeout)


__all__ = [
    "GitHubDispatcher",
    "GitLabDispatcher",
    "commit_message_for",
    "create_git_dispatcher",
    "file_path_for",
    "folder_for",
]
