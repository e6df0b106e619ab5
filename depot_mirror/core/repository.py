"""Artifact Repository on a git hosting API, one branch per title.

Reads go through the contents API (base64 payloads). Writes use the git data
API so several files land in a single commit:

1. resolve the branch tip (create the branch from the base branch if absent)
2. create one blob per file
3. create one tree on top of the tip's tree
4. create one commit with the tip as its only parent
5. move the branch ref to the new commit without forcing

The ref update in step 5 is the only mutation visible to readers. A
non-fast-forward rejection means another writer moved the branch after
step 1; it is reported as WriteConflictError and the caller decides whether
to rebuild the commit on the new tip.
"""

from __future__ import annotations

import base64
from collections.abc import Iterable, Mapping
from typing import Any

import httpx
import structlog

from depot_mirror.core.config import RepositoryConfig
from depot_mirror.core.errors import (
    ConfigError,
    FetchCancelledError,
    FetchError,
    NotFoundError,
    RepositoryError,
    WriteConflictError,
)
from depot_mirror.core.fetcher import RateLimitedFetcher
from depot_mirror.core.types import ArtifactFile, ArtifactType, CommitResult
from depot_mirror.core.utils import is_numeric_id

logger = structlog.get_logger()

FILE_MODE = "100644"
PAGE_SIZE = 100
CONFLICT_STATUS_CODES = frozenset({409, 422})


def _validate_path(name: str) -> str:
    """Reject paths that would escape the branch root."""
    if not name or name.startswith("/") or ".." in name.split("/"):
        raise ValueError(f"Invalid artifact path: {name!r}")
    return name


class ArtifactRepository:
    """Branch-per-title artifact store.

    Args:
        fetcher: Shared fetcher; requests use the ``repository`` endpoint class
        config: Repository settings (owner and name are required)

    Raises:
        ConfigError: If the repository owner or name is missing
    """

    ENDPOINT = "repository"

    def __init__(self, fetcher: RateLimitedFetcher, config: RepositoryConfig):
        if not config.owner or not config.name:
            raise ConfigError("Repository owner and name must be configured")
        self.fetcher = fetcher
        self.config = config

    @property
    def base_url(self) -> str:
        """API URL of the repository."""
        return f"{self.config.api_base.rstrip('/')}/repos/{self.config.owner}/{self.config.name}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        title_id: str,
        file_path: str | None = None,
        expected_sha: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one API request and map failures onto repository errors.

        Args:
            method: HTTP method
            path: Path below the repository URL
            title_id: Branch the request concerns (for error context)
            file_path: File the request concerns, if any
            expected_sha: Tip the caller built on; turns 409/422 into conflicts

        Raises:
            NotFoundError: HTTP 404
            WriteConflictError: HTTP 409/422 on a compare-and-swap request
            RepositoryError: Any other failure
            FetchCancelledError: Shutdown observed while waiting
        """
        url = f"{self.base_url}{path}"
        try:
            return self.fetcher.request(
                self.ENDPOINT, method, url, headers=self._headers(), **kwargs
            )
        except FetchCancelledError:
            raise
        except FetchError as e:
            if e.status_code == 404:
                raise NotFoundError(title_id, file_path) from e
            if e.status_code in CONFLICT_STATUS_CODES and expected_sha is not None:
                raise WriteConflictError(title_id, expected_sha) from e
            raise RepositoryError(f"{method} {path} failed: {e}") from e

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RepositoryError(f"Malformed response from {response.request.url}") from e

    def _field(self, data: Any, *keys: str, context: str) -> Any:
        """Walk nested keys of a decoded payload.

        Raises:
            RepositoryError: If a level is not an object or a key is missing
        """
        value = data
        for key in keys:
            if not isinstance(value, dict) or value.get(key) is None:
                raise RepositoryError(f"Unexpected {context} payload: missing {'.'.join(keys)}")
            value = value[key]
        return value

    def branch_exists(self, title_id: str) -> bool:
        """Check whether a title has a branch."""
        try:
            self._request("GET", f"/branches/{title_id}", title_id=title_id)
        except NotFoundError:
            return False
        return True

    def get_tip(self, branch: str) -> str | None:
        """Commit SHA a branch points at, or None if the branch does not exist."""
        try:
            response = self._request("GET", f"/git/ref/heads/{branch}", title_id=branch)
        except NotFoundError:
            return None
        return self._field(self._json(response), "object", "sha", context=f"ref {branch}")

    def list_files(self, title_id: str) -> list[ArtifactFile]:
        """List files at the root of a title's branch.

        Content is not fetched; each file reads itself through this
        repository on first ``read()``.

        Raises:
            NotFoundError: If the branch does not exist
        """
        response = self._request(
            "GET", "/contents", title_id=title_id, params={"ref": title_id}
        )
        entries = self._json(response)
        if not isinstance(entries, list):
            raise RepositoryError(f"Unexpected listing payload for {title_id}")

        files: list[ArtifactFile] = []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get("type") != "file":
                continue
            name = self._field(entry, "name", context=f"listing {title_id}")
            artifact = ArtifactFile(
                name=name,
                size=entry.get("size", 0),
                type=ArtifactType.from_filename(name),
                sha=entry.get("sha"),
                download_url=entry.get("download_url"),
            )
            artifact.bind_loader(lambda n=name: self.read_file(title_id, n))
            files.append(artifact)

        logger.debug("branch_listed", title_id=title_id, files=len(files))
        return files

    def read_file(self, title_id: str, filename: str) -> bytes:
        """Read one file from a title's branch.

        Raises:
            NotFoundError: If the branch or file does not exist
        """
        _validate_path(filename)
        response = self._request(
            "GET",
            f"/contents/{filename}",
            title_id=title_id,
            file_path=filename,
            params={"ref": title_id},
        )
        data = self._json(response)
        if not isinstance(data, dict) or data.get("type", "file") != "file":
            raise NotFoundError(title_id, filename)

        if data.get("encoding") == "base64" and data.get("content") is not None:
            return base64.b64decode(data["content"])

        # Large files come back without inline content
        sha = data.get("sha")
        if not sha:
            raise RepositoryError(f"No content for {filename} on {title_id}")
        blob = self._json(
            self._request("GET", f"/git/blobs/{sha}", title_id=title_id, file_path=filename)
        )
        return base64.b64decode(self._field(blob, "content", context=f"blob {sha}"))

    def read_text(self, title_id: str, filename: str) -> str:
        """Read a text file from a title's branch."""
        return self.read_file(title_id, filename).decode("utf-8", errors="replace")

    def list_branches(self, numeric_only: bool = True) -> list[str]:
        """List branch names, following pagination.

        Args:
            numeric_only: Only return branches named like a title identifier
        """
        names: list[str] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                "/branches",
                title_id="*",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            batch = self._json(response)
            if not isinstance(batch, list) or not batch:
                break
            for branch in batch:
                name = branch.get("name") if isinstance(branch, dict) else None
                if not name:
                    continue
                if numeric_only and not is_numeric_id(name):
                    continue
                names.append(name)
            if len(batch) < PAGE_SIZE:
                break
            page += 1

        logger.debug("branches_listed", count=len(names), pages=page)
        return names

    def _ensure_branch(self, title_id: str) -> tuple[str, bool]:
        """Return the branch tip, creating the branch from the base if absent."""
        tip = self.get_tip(title_id)
        if tip is not None:
            return tip, False

        base = self.get_tip(self.config.base_branch)
        if base is None:
            raise RepositoryError(f"Base branch {self.config.base_branch} not found")

        self._request(
            "POST",
            "/git/refs",
            title_id=title_id,
            expected_sha=base,
            json={"ref": f"refs/heads/{title_id}", "sha": base},
        )
        logger.info("branch_created", title_id=title_id, base=self.config.base_branch)
        return base, True

    def _create_blob(self, title_id: str, name: str, data: bytes) -> str:
        response = self._request(
            "POST",
            "/git/blobs",
            title_id=title_id,
            file_path=name,
            json={"content": base64.b64encode(data).decode("ascii"), "encoding": "base64"},
        )
        return self._field(self._json(response), "sha", context="blob create")

    def commit(
        self,
        title_id: str,
        files: Mapping[str, bytes] | Iterable[tuple[str, bytes]],
        message: str,
        delete: Iterable[str] = (),
    ) -> CommitResult:
        """Write several files to a title's branch as one commit.

        Either every file reaches the branch in one new commit or the branch
        keeps its previous tip.

        Args:
            title_id: Branch name
            files: Filename to new content
            message: Commit message
            delete: Filenames to remove in the same commit

        Returns:
            Commit result; ``created`` is True if the branch was created

        Raises:
            WriteConflictError: The branch moved since its tip was read
            RepositoryError: The host rejected any step
            ConfigError: No write token configured
        """
        if not self.config.token:
            raise ConfigError("A repository token is required to commit")

        items = list(files.items()) if isinstance(files, Mapping) else list(files)
        removals = [_validate_path(name) for name in delete]
        written = {_validate_path(name) for name, _ in items}
        if not items and not removals:
            raise ValueError("Nothing to commit")
        if written & set(removals):
            raise ValueError("A file cannot be both written and deleted")

        tip, created = self._ensure_branch(title_id)

        parent = self._json(
            self._request("GET", f"/git/commits/{tip}", title_id=title_id)
        )
        base_tree = self._field(parent, "tree", "sha", context=f"commit {tip}")

        entries: list[dict[str, Any]] = []
        for name, data in items:
            entries.append({
                "path": name,
                "mode": FILE_MODE,
                "type": "blob",
                "sha": self._create_blob(title_id, name, data),
            })
        for name in removals:
            entries.append({"path": name, "mode": FILE_MODE, "type": "blob", "sha": None})

        tree = self._json(self._request(
            "POST",
            "/git/trees",
            title_id=title_id,
            json={"base_tree": base_tree, "tree": entries},
        ))
        tree_sha = self._field(tree, "sha", context="tree create")

        new_commit = self._json(self._request(
            "POST",
            "/git/commits",
            title_id=title_id,
            json={"message": message, "tree": tree_sha, "parents": [tip]},
        ))
        commit_sha = self._field(new_commit, "sha", context="commit create")

        self._request(
            "PATCH",
            f"/git/refs/heads/{title_id}",
            title_id=title_id,
            expected_sha=tip,
            json={"sha": commit_sha, "force": False},
        )

        logger.info(
            "branch_committed",
            title_id=title_id,
            commit=commit_sha,
            parent=tip,
            files=[name for name, _ in items],
            deleted=removals,
        )
        return CommitResult(
            title_id=title_id,
            commit_sha=commit_sha,
            parent_sha=tip,
            created=created,
            files=[name for name, _ in items],
            deleted=removals,
        )
