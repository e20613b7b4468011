"""JSON files stored in a GitHub repository."""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from .github import GitHubClient, error_for_response
from .ratelimit import DEFAULT_BATCH_CONCURRENCY, BatchRequest

logger = logging.getLogger(__name__)

_control_chars = re.compile("[\u0000-\u001f\u007f-\u009f]")
_general_punctuation = re.compile("[\u2000-\u206f]")
_dropped_ranges = re.compile("[\u2070-\u209f\ufff0-\uffff]")

# Values that must be committed byte-for-byte.
UNSANITIZED_FIELDS = frozenset({"coverImage"})


def clean_text(text: str) -> str:
    """Strip characters that corrupt committed JSON."""
    text = _control_chars.sub("", text)
    text = _general_punctuation.sub(" ", text)
    text = _dropped_ranges.sub("", text)
    return text.strip()


def sanitize_record(value: Any) -> Any:
    """Apply :func:`clean_text` to every string inside ``value``."""
    if isinstance(value, str):
        return clean_text(value)
    if isinstance(value, dict):
        return {
            key: item if key in UNSANITIZED_FIELDS else sanitize_record(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_record(item) for item in value]
    return value


def encode_content(value: Any) -> str:
    payload = json.dumps(value, indent=2, ensure_ascii=False)
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_content(encoded: str) -> Any:
    # GitHub wraps base64 bodies at 60 columns.
    raw = base64.b64decode("".join(encoded.split()))
    return json.loads(raw.decode("utf-8"))


@dataclass(frozen=True)
class StoredFile:
    path: str
    content: Any
    sha: str


@dataclass(frozen=True)
class CommitResult:
    commit_sha: str | None
    content_sha: str | None


@dataclass(frozen=True)
class TreeEntry:
    path: str
    sha: str


class GitHubContentStore:
    """CRUD over the Contents, Git Trees and Git Blobs APIs."""

    def __init__(
        self,
        client: GitHubClient,
        *,
        branch: str = "main",
        batch_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> None:
        self.client = client
        self.branch = branch
        self.batch_concurrency = batch_concurrency

    def _contents_suffix(self, path: str) -> str:
        return f"contents/{quote(path.lstrip('/'), safe='/')}"

    def get_file(self, path: str) -> StoredFile | None:
        context = f"Read {path}"
        response = self.client.request(
            "GET", self._contents_suffix(path), context=context, params={"ref": self.branch}
        )
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise error_for_response(response, context=context)
        data = response.json()
        return StoredFile(path=path, content=decode_content(data["content"]), sha=data["sha"])

    def put_file(
        self,
        path: str,
        value: Any,
        message: str,
        sha: str | None = None,
        *,
        sanitize: bool = True,
    ) -> CommitResult:
        context = f"Write {path}"
        body: dict[str, Any] = {
            "message": message,
            "content": encode_content(sanitize_record(value) if sanitize else value),
            "branch": self.branch,
        }
        if sha:
            body["sha"] = sha
        response = self.client.request(
            "PUT", self._contents_suffix(path), context=context, json=body
        )
        if not response.is_success:
            raise error_for_response(
                response, context=context, conflict_statuses=(409, 422)
            )
        data = response.json()
        return CommitResult(
            commit_sha=(data.get("commit") or {}).get("sha"),
            content_sha=(data.get("content") or {}).get("sha"),
        )

    def delete_file(self, path: str, message: str) -> bool:
        """Delete ``path``; returns ``False`` when it was already absent."""
        existing = self.get_file(path)
        if existing is None:
            return False
        context = f"Delete {path}"
        response = self.client.request(
            "DELETE",
            self._contents_suffix(path),
            context=context,
            json={"message": message, "sha": existing.sha, "branch": self.branch},
        )
        if response.status_code == 404:
            return False
        if not response.is_success:
            raise error_for_response(
                response, context=context, conflict_statuses=(409, 422)
            )
        return True

    def list_files_under_prefix(self, prefix: str) -> list[TreeEntry]:
        context = f"List files under {prefix}"
        response = self.client.request(
            "GET",
            f"git/trees/{self.branch}",
            context=context,
            params={"recursive": "1"},
        )
        if response.status_code == 404:
            return []
        if not response.is_success:
            raise error_for_response(response, context=context)
        data = response.json()
        if data.get("truncated"):
            logger.warning("Tree listing for %s was truncated by GitHub", self.branch)
        return [
            TreeEntry(path=item["path"], sha=item["sha"])
            for item in data.get("tree", [])
            if item.get("type") == "blob"
            and item["path"].startswith(prefix)
            and item["path"].endswith(".json")
        ]

    def get_blob(self, sha: str) -> Any:
        context = f"Read blob {sha}"
        response = self.client.request("GET", f"git/blobs/{sha}", context=context)
        if not response.is_success:
            raise error_for_response(response, context=context)
        return decode_content(response.json()["content"])

    def load_json_files(self, prefix: str) -> dict[str, Any]:
        """Fetch every JSON file under ``prefix`` keyed by path.

        Blobs that cannot be fetched or decoded are logged and skipped.
        """

        entries = self.list_files_under_prefix(prefix)
        headers = self.client.headers()
        requests = [
            BatchRequest(
                method="GET",
                url=self.client.url(f"git/blobs/{entry.sha}"),
                context=f"Read {entry.path}",
                kwargs={"headers": headers},
            )
            for entry in entries
        ]
        results = self.client.fetcher.batch_fetch(
            requests, concurrency=self.batch_concurrency
        )
        files: dict[str, Any] = {}
        for entry, result in zip(entries, results):
            if result.error is not None:
                logger.warning("Skipping %s: %s", entry.path, result.error)
                continue
            if not result.response.is_success:
                error = error_for_response(result.response, context=f"Read {entry.path}")
                logger.warning("Skipping %s: %s", entry.path, error)
                continue
            try:
                files[entry.path] = decode_content(result.response.json()["content"])
            except (ValueError, KeyError) as exc:
                logger.warning("Skipping unreadable %s: %s", entry.path, exc)
        return files

