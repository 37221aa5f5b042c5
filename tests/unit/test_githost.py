from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from docanchor.documents import Document
from docanchor.hashing import compute
from docanchor.providers.githost import (
    GitHubDispatcher,
    GitLabDispatcher,
    _GitHostBase,
    commit_message_for,
    create_git_dispatcher,
    file_path_for,
    folder_for,
)
from docanchor.record import AnchorRecord, build_anchor_record
from docanchor.settings import GitHostSettings


def _record() -> AnchorRecord:
    doc = Document(post_id=9, author_id=1, content="anchored body")
    return build_anchor_record(
        doc,
        compute(doc),
        producer_version="0.1.0",
        now=datetime(2024, 3, 4, 5, 6, 7, tzinfo=timezone.utc),
    )


def _config(**overrides: Any) -> GitHostSettings:
    values: dict[str, Any] = {"token": "tkn", "owner": "acme", "repo": "proofs"}
    values.update(overrides)
    return GitHostSettings(**values)


class _Recorder:
    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, fragment), response in self.routes.items():
            if request.method == method and fragment in request.url.raw_path.decode():
                return response
        return httpx.Response(404, json={"message": "Not Found"})


def test_path_helpers() -> None:
    record = _record()
    moment = datetime(2024, 3, 4, 5, 6, 7, tzinfo=timezone.utc)

    assert folder_for("hashes/YYYY-MM-DD", moment) == "hashes/2024-03-04"
    assert folder_for("/YYYY/MM/", moment) == "2024/03"
    assert file_path_for(record, "hashes/YYYY-MM-DD") == (
        "hashes/2024-03-04/post-9-20240304050607.json"
    )
    assert file_path_for(record, "") == "post-9-20240304050607.json"
    assert commit_message_for(record, "chore: anchor {doc_id}") == (
        "chore: anchor post-9"
    )


def test_factory_picks_host_kind() -> None:
    assert isinstance(create_git_dispatcher(_config()), GitHubDispatcher)
    assert isinstance(create_git_dispatcher(_config(kind="gitlab")), GitLabDispatcher)


@pytest.mark.asyncio
async def test_github_creates_file() -> None:
    recorder = _Recorder(
        {
            ("PUT", "/contents/"): httpx.Response(
                201,
                json={"content": {"html_url": "https://github.com/acme/proofs/blob/x"}},
            ),
        }
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        dispatcher = GitHubDispatcher(_config(), client=client)
        record = _record()
        result = await dispatcher.dispatch(record)

    assert result.status == "anchored"
    assert result.anchor_url == "https://github.com/acme/proofs/blob/x"
    assert result.http_status == 201

    lookup, put = recorder.requests
    assert lookup.method == "GET"
    assert lookup.url.params["ref"] == "main"
    assert put.headers["Authorization"] == "Bearer tkn"
    assert put.headers["X-GitHub-Api-Version"] == "2022-11-28"
    assert put.url.path == (
        "/repos/acme/proofs/contents/hashes/2024-03-04/post-9-20240304050607.json"
    )
    body = json.loads(put.content)
    assert "sha" not in body
    assert body["branch"] == "main"
    assert body["message"] == "chore: anchor post-9"
    assert json.loads(base64.b64decode(body["content"])) == record.to_dict()


@pytest.mark.parametrize(
    "payload",
    [{"content": None}, {"content": "oops"}, ["not", "an", "object"]],
)
@pytest.mark.asyncio
async def test_github_commit_without_file_url_is_still_anchored(
    payload: Any,
) -> None:
    recorder = _Recorder({("PUT", "/contents/"): httpx.Response(201, json=payload)})
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        result = await GitHubDispatcher(_config(), client=client).dispatch(_record())

    assert result.status == "anchored"
    assert result.anchor_url is None
    assert [r.method for r in recorder.requests] == ["GET", "PUT"]


def test_git_host_base_is_abstract() -> None:
    with pytest.raises(TypeError):
        _GitHostBase(_config())  # type: ignore[abstract]


@pytest.mark.asyncio
async def test_github_updates_existing_file_with_sha() -> None:
    recorder = _Recorder(
        {
            ("GET", "/contents/"): httpx.Response(200, json={"sha": "abc123"}),
            ("PUT", "/contents/"): httpx.Response(200, json={"content": {}}),
        }
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        result = await GitHubDispatcher(_config(), client=client).dispatch(_record())

    assert result.status == "anchored"
    assert json.loads(recorder.requests[1].content)["sha"] == "abc123"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "status"),
    [
        (401, "failed"),
        (403, "failed"),
        (422, "failed"),
        (409, "retry"),
        (429, "retry"),
        (500, "retry"),
    ],
)
async def test_github_status_mapping(code: int, status: str) -> None:
    recorder = _Recorder(
        {("PUT", "/contents/"): httpx.Response(code, json={"message": "nope"})}
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        result = await GitHubDispatcher(_config(), client=client).dispatch(_record())

    assert result.status == status
    assert result.http_status == code
    assert "GitHub contents API" in (result.error or "")


@pytest.mark.asyncio
async def test_missing_credentials_fail_without_network() -> None:
    def _boom(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_boom)) as client:
        no_token = GitHubDispatcher(_config(token=None), client=client)
        no_repo = GitLabDispatcher(_config(repo=""), client=client)
        first = await no_token.dispatch(_record())
        second = await no_repo.dispatch(_record())
        check = await no_token.test_connection()

    assert first.status == "failed"
    assert "token" in (first.error or "")
    assert second.status == "failed"
    assert check.success is False


@pytest.mark.asyncio
async def test_gitlab_creates_file_with_post() -> None:
    recorder = _Recorder(
        {
            ("GET", "/projects/acme%2Fproofs"): httpx.Response(200, json={"id": 42}),
            ("POST", "/projects/42/repository/files/"): httpx.Response(
                201, json={"file_path": "x"}
            ),
        }
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        dispatcher = GitLabDispatcher(_config(kind="gitlab"), client=client)
        record = _record()
        result = await dispatcher.dispatch(record)

    assert result.status == "anchored"
    assert result.anchor_url == (
        "https://gitlab.com/acme/proofs/-/blob/main/"
        "hashes/2024-03-04/post-9-20240304050607.json"
    )
    post = recorder.requests[-1]
    assert post.method == "POST"
    assert post.headers["PRIVATE-TOKEN"] == "tkn"
    body = json.loads(post.content)
    assert body["encoding"] == "text"
    assert json.loads(body["content"]) == record.to_dict()


@pytest.mark.asyncio
async def test_gitlab_updates_with_put_when_file_exists() -> None:
    recorder = _Recorder(
        {
            ("GET", "/projects/acme%2Fproofs"): httpx.Response(200, json={"id": 42}),
            ("GET", "/repository/files/"): httpx.Response(200, json={}),
            ("PUT", "/repository/files/"): httpx.Response(200, json={}),
        }
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        result = await GitLabDispatcher(_config(kind="gitlab"), client=client).dispatch(
            _record()
        )

    assert result.status == "anchored"
    assert recorder.requests[-1].method == "PUT"


@pytest.mark.asyncio
async def test_gitlab_unknown_project_is_permanent() -> None:
    recorder = _Recorder({})
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        dispatcher = GitLabDispatcher(_config(kind="gitlab"), client=client)
        result = await dispatcher.dispatch(_record())
        check = await dispatcher.test_connection()

    assert result.status == "failed"
    assert result.http_status == 404
    assert check.success is False


@pytest.mark.asyncio
async def test_github_connection_check() -> None:
    recorder = _Recorder({("GET", "/repos/acme/proofs"): httpx.Response(200, json={})})
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        check = await GitHubDispatcher(_config(), client=client).test_connection()

    assert check.success is True
    assert "acme/proofs" in check.message
