"""Pytest configuration and shared fixtures for depot_mirror tests.

HTTP is simulated with httpx.MockTransport: FakeGitHost implements the
subset of the git data and contents APIs the repository uses, FakeUpstream
serves the info, store details and manifest download endpoints.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import httpx
import pytest

from depot_mirror.core.config import (
    AppConfig,
    CacheConfig,
    EndpointPolicy,
    RepositoryConfig,
    SchedulerConfig,
    UpstreamConfig,
)
from depot_mirror.core.fetcher import RateLimitedFetcher
from depot_mirror.core.repository import ArtifactRepository
from depot_mirror.core.upstream import UpstreamResolver
from depot_mirror.database.kv_store import KeyValueStore
from depot_mirror.database.title_state import TitleStateStore

GIT_HOST = "api.github.test"
INFO_HOST = "api.steamcmd.test"
STORE_HOST = "store.test"
MANIFEST_HOST = "manifests.test"

REPO_PREFIX = "/repos/owner/repo"
FIXED_NOW = datetime(2026, 10, 18, 9, 30, 0, tzinfo=UTC)


def _json_response(status: int, data: Any) -> httpx.Response:
    return httpx.Response(status, json=data)


class FakeGitHost:
    """In-memory git hosting API with fast-forward-only ref updates.

    Attributes:
        faults: Operation name to HTTP status returned instead of handling it
        hooks: Operation name to callable run before handling it
        payloads: Operation name to a body returned with 200 instead of handling it
        calls: (method, path) of every request received
        requests: Every request received, for header checks
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, dict[str, str]] = {}
        self.commits: dict[str, dict[str, Any]] = {}
        self.refs: dict[str, str] = {}
        self.faults: dict[str, int] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self.payloads: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []
        self.requests: list[httpx.Request] = []
        self._ops: list[str] = []
        self._counter = 0

        root_tree = self._store_tree({"README.md": self._store_blob(b"# depots\n")})
        self.refs["main"] = self._store_commit(root_tree, [], "initial")

    def _sha(self, kind: str, payload: bytes) -> str:
        self._counter += 1
        return hashlib.sha1(kind.encode() + payload + str(self._counter).encode()).hexdigest()

    def _store_blob(self, data: bytes) -> str:
        sha = self._sha("blob", data)
        self.blobs[sha] = data
        return sha

    def _store_tree(self, entries: dict[str, str]) -> str:
        sha = self._sha("tree", json.dumps(entries, sort_keys=True).encode())
        self.trees[sha] = dict(entries)
        return sha

    def _store_commit(self, tree: str, parents: list[str], message: str) -> str:
        sha = self._sha("commit", f"{tree}{parents}{message}".encode())
        self.commits[sha] = {"tree": tree, "parents": list(parents), "message": message}
        return sha

    # Test helpers

    def seed_branch(self, branch: str, files: dict[str, bytes], base: str = "main") -> str:
        """Create or advance a branch with the given files on top of its tree."""
        parent = self.refs.get(branch) or self.refs[base]
        entries = dict(self.trees[self.commits[parent]["tree"]])
        for name, data in files.items():
            entries[name] = self._store_blob(data)
        sha = self._store_commit(self._store_tree(entries), [parent], f"seed {branch}")
        self.refs[branch] = sha
        return sha

    def files_at(self, branch: str) -> dict[str, bytes]:
        """Every file on a branch tip."""
        tree = self.trees[self.commits[self.refs[branch]]["tree"]]
        return {path: self.blobs[sha] for path, sha in tree.items()}

    def history(self, branch: str) -> list[str]:
        """Commit messages from tip to root along first parents."""
        messages = []
        sha: str | None = self.refs[branch]
        while sha:
            commit = self.commits[sha]
            messages.append(commit["message"])
            sha = commit["parents"][0] if commit["parents"] else None
        return messages

    def count(self, operation: str) -> int:
        """Number of requests that reached an operation."""
        return sum(1 for op in self._ops if op == operation)

    def _is_ancestor(self, ancestor: str, sha: str) -> bool:
        stack = [sha]
        seen = set()
        while stack:
            current = stack.pop()
            if current == ancestor:
                return True
            if current in seen or current not in self.commits:
                continue
            seen.add(current)
            stack.extend(self.commits[current]["parents"])
        return False

    # Routing

    def _route(self, method: str, path: str) -> tuple[str, dict[str, str]] | None:
        routes = [
            ("GET", r"/branches", "branch_list"),
            ("GET", r"/branches/(?P<branch>[^/]+)", "branch_get"),
            ("GET", r"/git/ref/heads/(?P<branch>[^/]+)", "ref_get"),
            ("POST", r"/git/refs", "ref_create"),
            ("PATCH", r"/git/refs/heads/(?P<branch>[^/]+)", "ref_update"),
            ("GET", r"/git/commits/(?P<sha>\w+)", "commit_get"),
            ("POST", r"/git/commits", "commit_create"),
            ("POST", r"/git/blobs", "blob_create"),
            ("GET", r"/git/blobs/(?P<sha>\w+)", "blob_get"),
            ("POST", r"/git/trees", "tree_create"),
            ("GET", r"/contents/?", "contents_list"),
            ("GET", r"/contents/(?P<path>.+)", "contents_get"),
        ]
        for route_method, pattern, name in routes:
            if method != route_method:
                continue
            match = re.fullmatch(pattern, path)
            if match:
                return name, match.groupdict()
        return None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = unquote(request.url.path)
        self.calls.append((request.method, path))
        if not path.startswith(REPO_PREFIX):
            return _json_response(404, {"message": "Not Found"})
        path = path[len(REPO_PREFIX):]

        routed = self._route(request.method, path)
        if routed is None:
            return _json_response(404, {"message": "Not Found"})
        operation, params = routed
        self._ops.append(operation)

        hook = self.hooks.pop(operation, None)
        if hook is not None:
            hook()
        if operation in self.faults:
            return _json_response(self.faults[operation], {"message": "injected failure"})
        if operation in self.payloads:
            return _json_response(200, self.payloads[operation])

        body = json.loads(request.content) if request.content else {}
        query = dict(request.url.params)
        return getattr(self, f"_op_{operation}")(params, body, query)

    # Operations

    def _op_branch_list(self, params, body, query) -> httpx.Response:
        per_page = int(query.get("per_page", 30))
        page = int(query.get("page", 1))
        names = sorted(self.refs)
        chunk = names[(page - 1) * per_page:page * per_page]
        return _json_response(200, [{"name": n, "commit": {"sha": self.refs[n]}} for n in chunk])

    def _op_branch_get(self, params, body, query) -> httpx.Response:
        branch = params["branch"]
        if branch not in self.refs:
            return _json_response(404, {"message": "Branch not found"})
        return _json_response(200, {"name": branch, "commit": {"sha": self.refs[branch]}})

    def _op_ref_get(self, params, body, query) -> httpx.Response:
        branch = params["branch"]
        if branch not in self.refs:
            return _json_response(404, {"message": "Not Found"})
        return _json_response(200, {
            "ref": f"refs/heads/{branch}",
            "object": {"sha": self.refs[branch], "type": "commit"},
        })

    def _op_ref_create(self, params, body, query) -> httpx.Response:
        branch = body["ref"].removeprefix("refs/heads/")
        if branch in self.refs:
            return _json_response(422, {"message": "Reference already exists"})
        self.refs[branch] = body["sha"]
        return _json_response(201, {"ref": body["ref"], "object": {"sha": body["sha"]}})

    def _op_ref_update(self, params, body, query) -> httpx.Response:
        branch = params["branch"]
        if branch not in self.refs:
            return _json_response(422, {"message": "Reference does not exist"})
        new_sha = body["sha"]
        if not body.get("force") and not self._is_ancestor(self.refs[branch], new_sha):
            return _json_response(422, {"message": "Update is not a fast forward"})
        self.refs[branch] = new_sha
        return _json_response(200, {"ref": f"refs/heads/{branch}", "object": {"sha": new_sha}})

    def _op_commit_get(self, params, body, query) -> httpx.Response:
        commit = self.commits.get(params["sha"])
        if commit is None:
            return _json_response(404, {"message": "Not Found"})
        return _json_response(200, {
            "sha": params["sha"],
            "tree": {"sha": commit["tree"]},
            "parents": [{"sha": p} for p in commit["parents"]],
            "message": commit["message"],
        })

    def _op_commit_create(self, params, body, query) -> httpx.Response:
        sha = self._store_commit(body["tree"], body["parents"], body["message"])
        return _json_response(201, {"sha": sha})

    def _op_blob_create(self, params, body, query) -> httpx.Response:
        assert body["encoding"] == "base64"
        sha = self._store_blob(base64.b64decode(body["content"]))
        return _json_response(201, {"sha": sha})

    def _op_blob_get(self, params, body, query) -> httpx.Response:
        data = self.blobs.get(params["sha"])
        if data is None:
            return _json_response(404, {"message": "Not Found"})
        return _json_response(200, {
            "sha": params["sha"],
            "content": base64.b64encode(data).decode(),
            "encoding": "base64",
        })

    def _op_tree_create(self, params, body, query) -> httpx.Response:
        entries = dict(self.trees[body["base_tree"]]) if body.get("base_tree") else {}
        for item in body["tree"]:
            if item["sha"] is None:
                if item["path"] not in entries:
                    return _json_response(422, {"message": "path not in tree"})
                del entries[item["path"]]
            else:
                entries[item["path"]] = item["sha"]
        return _json_response(201, {"sha": self._store_tree(entries)})

    def _branch_tree(self, query) -> dict[str, str] | None:
        branch = query.get("ref", "main")
        if branch not in self.refs:
            return None
        return self.trees[self.commits[self.refs[branch]]["tree"]]

    def _op_contents_list(self, params, body, query) -> httpx.Response:
        tree = self._branch_tree(query)
        if tree is None:
            return _json_response(404, {"message": "No commit found for the ref"})
        return _json_response(200, [
            {
                "name": path,
                "path": path,
                "sha": sha,
                "size": len(self.blobs[sha]),
                "type": "file",
                "download_url": f"https://raw.test/{path}",
            }
            for path, sha in sorted(tree.items())
        ])

    def _op_contents_get(self, params, body, query) -> httpx.Response:
        tree = self._branch_tree(query)
        if tree is None or params["path"] not in tree:
            return _json_response(404, {"message": "Not Found"})
        sha = tree[params["path"]]
        encoded = base64.encodebytes(self.blobs[sha]).decode()
        return _json_response(200, {
            "type": "file",
            "name": params["path"],
            "path": params["path"],
            "sha": sha,
            "size": len(self.blobs[sha]),
            "encoding": "base64",
            "content": encoded,
        })


class FakeUpstream:
    """In-memory upstream catalog, store details and manifest downloads."""

    def __init__(self) -> None:
        self.info: dict[str, dict[str, Any]] = {}
        self.store: dict[str, dict[str, Any]] = {}
        self.manifests: dict[tuple[str, str], bytes] = {}
        self.info_status: dict[str, int] = {}
        self.store_status: int | None = None
        self.manifest_status: dict[tuple[str, str], int] = {}
        self.requests: list[str] = []

    def set_title(
        self,
        title_id: str,
        manifests: dict[str, str],
        *,
        name: str = "Example Game",
        build_id: str = "100",
        extra_depots: dict[str, dict[str, Any]] | None = None,
        dlc: list[int] | None = None,
    ) -> None:
        """Publish a title whose depots have the given public manifests."""
        depots: dict[str, Any] = {
            depot_id: {"manifests": {"public": {"gid": gid, "size": "1024", "download": "512"}}}
            for depot_id, gid in manifests.items()
        }
        depots.update(extra_depots or {})
        depots["branches"] = {"public": {"buildid": build_id}}
        depots["baselanguages"] = "english"
        self.info[title_id] = {
            "common": {"name": name},
            "depots": depots,
            "extended": {"listofdlc": ",".join(str(d) for d in dlc or [])},
        }
        self.store[title_id] = {"name": name, "dlc": list(dlc or [])}

    def set_store_name(self, app_id: int, name: str) -> None:
        """Publish a store entry (used for DLC names)."""
        self.store[str(app_id)] = {"name": name}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        host = request.url.host

        if host == INFO_HOST:
            title_id = request.url.path.rsplit("/", 1)[-1]
            if title_id in self.info_status:
                return httpx.Response(self.info_status[title_id], text="unavailable")
            if title_id not in self.info:
                return _json_response(200, {"status": "failed", "data": {}})
            return _json_response(200, {"status": "success", "data": {title_id: self.info[title_id]}})

        if host == STORE_HOST:
            if self.store_status is not None:
                return httpx.Response(self.store_status, text="unavailable")
            app_id = request.url.params["appids"]
            if app_id not in self.store:
                return _json_response(200, {app_id: {"success": False}})
            return _json_response(200, {app_id: {"success": True, "data": self.store[app_id]}})

        if host == MANIFEST_HOST:
            _, depot_id, manifest_id = request.url.path.split("/")
            key = (depot_id, manifest_id)
            if key in self.manifest_status:
                return httpx.Response(self.manifest_status[key])
            data = self.manifests.get(key, f"manifest {depot_id} {manifest_id}".encode())
            return httpx.Response(200, content=data)

        return httpx.Response(404)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _fast_policies() -> dict[str, EndpointPolicy]:
    """Endpoint policies without spacing or backoff."""
    policy = EndpointPolicy(min_interval=0.0, max_retries=1, base_delay=0.0, max_delay=0.0)
    return {name: policy for name in ("upstream", "store", "repository", "manifest")}


@pytest.fixture
def git_host() -> FakeGitHost:
    """In-memory git host."""
    return FakeGitHost()


@pytest.fixture
def upstream() -> FakeUpstream:
    """In-memory upstream catalog."""
    return FakeUpstream()


@pytest.fixture
def http_client(git_host: FakeGitHost, upstream: FakeUpstream) -> Generator[httpx.Client, None, None]:
    """HTTP client routing to the fakes by host."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == GIT_HOST:
            return git_host(request)
        return upstream(request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def fetcher(http_client: httpx.Client) -> Generator[RateLimitedFetcher, None, None]:
    """Fetcher over the fakes with no spacing."""
    fetcher = RateLimitedFetcher(_fast_policies(), http_client, sleep=lambda _: None)
    yield fetcher
    fetcher.close()


@pytest.fixture
def upstream_config() -> UpstreamConfig:
    """Upstream endpoints pointing at the fake."""
    return UpstreamConfig(
        info_url=f"https://{INFO_HOST}/v1/info/{{title_id}}",
        details_url=f"https://{STORE_HOST}/api/appdetails",
    )


@pytest.fixture
def repository_config() -> RepositoryConfig:
    """Repository settings pointing at the fake git host."""
    return RepositoryConfig(
        api_base=f"https://{GIT_HOST}",
        owner="owner",
        name="repo",
        token="test-token",
    )


@pytest.fixture
def resolver(fetcher: RateLimitedFetcher, upstream_config: UpstreamConfig) -> UpstreamResolver:
    """Resolver over the fake upstream."""
    return UpstreamResolver(fetcher, upstream_config)


@pytest.fixture
def repository(fetcher: RateLimitedFetcher, repository_config: RepositoryConfig) -> ArtifactRepository:
    """Repository over the fake git host."""
    return ArtifactRepository(fetcher, repository_config)


@pytest.fixture
def kv_store(tmp_path: Path) -> Generator[KeyValueStore, None, None]:
    """SQLite key-value store in a temporary directory."""
    store = KeyValueStore(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def title_state(kv_store: KeyValueStore) -> TitleStateStore:
    """Local state store with a fixed clock."""
    return TitleStateStore(kv_store, clock=lambda: FIXED_NOW)


@pytest.fixture
def app_config(
    tmp_path: Path,
    upstream_config: UpstreamConfig,
    repository_config: RepositoryConfig,
) -> AppConfig:
    """Application configuration wired to the fakes."""
    return AppConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        endpoints=_fast_policies(),
        upstream=upstream_config,
        repository=repository_config,
        scheduler=SchedulerConfig(inter_title_delay=0.0, initial_delay=0.0),
        cache=CacheConfig(enabled=True, backend="memory"),
    )


@pytest.fixture
def fast_policies() -> dict[str, EndpointPolicy]:
    """Endpoint policies without spacing or backoff."""
    return _fast_policies()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Monotonic clock advanced by its own sleep."""
    return FakeClock()


@pytest.fixture
def fixed_now() -> datetime:
    """Fixed wall-clock time used for timestamps."""
    return FIXED_NOW


@pytest.fixture
def manifest_resolver(fetcher: RateLimitedFetcher, upstream_config: UpstreamConfig) -> UpstreamResolver:
    """Resolver that also downloads manifest binaries from the fake."""
    config = upstream_config.model_copy(
        update={"manifest_url": f"https://{MANIFEST_HOST}/{{depot_id}}/{{manifest_id}}"}
    )
    return UpstreamResolver(fetcher, config)
