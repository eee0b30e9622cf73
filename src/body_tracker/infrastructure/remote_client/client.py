"""
Remote document store client.

Talks to a content-addressed file API (GitHub contents API): the snapshot
document lives in one file of a repository, is read together with its blob
sha and written back with that sha so that concurrent writes are rejected.
"""

import logging
from datetime import date
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import requests
from pydantic import BaseModel, Field

from body_tracker.domain.metrics import RemoteSnapshot
from body_tracker.domain.snapshot import decode_content, decode_document, encode_content
from body_tracker.utils.dates import midnight_utc
from body_tracker.utils.exceptions import (
    AuthenticationError,
    RemoteConflictError,
    RemoteFormatError,
    RemoteStoreError,
)
from body_tracker.utils.parameters import RemoteConfig

logger = logging.getLogger(__name__)


class RemoteCredentials(BaseModel):
    """Credentials and location of the remote document, kept in the local store."""

    token: str = ""
    owner: str = ""
    repo: str = ""
    connected: bool = Field(False, description="User finished connecting the remote")

    @property
    def usable(self) -> bool:
        return bool(self.connected and self.token and self.owner and self.repo)


class RemoteClient:
    """
    Client for the remote snapshot document.

    All failures are raised as ``RemoteStoreError`` subclasses; a missing
    document is not a failure and reads as ``None``.
    """

    def __init__(
        self,
        config: RemoteConfig,
        credentials: RemoteCredentials,
        session: requests.Session | None = None,
    ) -> None:
        """
        Initialize remote client.

        Args:
            config: Remote store configuration.
            credentials: Bearer token and repository coordinates.
            session: HTTP session to use. A new one is created if omitted.
        """
        self.config = config
        self.credentials = credentials
        self.session = session or requests.Session()

    @property
    def contents_url(self) -> str:
        path = quote(self.config.path.lstrip("/"))
        return (
            f"{self.config.api_url.rstrip('/')}/repos/{self.credentials.owner}/"
            f"{self.credentials.repo}/contents/{path}"
        )

    @property
    def commits_url(self) -> str:
        return (
            f"{self.config.api_url.rstrip('/')}/repos/{self.credentials.owner}/"
            f"{self.credentials.repo}/commits"
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.token}",
            "Accept": "application/vnd.github+json",
        }

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
                **kwargs,
            )
        except requests.RequestException as e:
            raise RemoteStoreError(f"{method} {url} failed: {e}") from e
        except ValueError as e:
            # e.g. a token that cannot be encoded into a header
            raise RemoteStoreError(f"Cannot build {method} request for {url}: {e}") from e

    def _check_auth(self, response: requests.Response) -> None:
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Remote store rejected credentials (HTTP {response.status_code})"
            )

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteFormatError(f"Remote response is not JSON: {e}") from e

    def fetch_snapshot(self) -> RemoteSnapshot | None:
        """
        Read the remote document.

        Returns:
            Snapshot with its version token, or None if the document does not exist.

        Raises:
            RemoteStoreError: If the request fails.
            RemoteFormatError: If the document cannot be decoded.
        """
        response = self._request("GET", self.contents_url, params={"ref": self.config.branch})

        if response.status_code == 404:
            logger.info("Remote document not found")
            return None

        self._check_auth(response)
        if not response.ok:
            raise RemoteStoreError(f"Failed to read remote document (HTTP {response.status_code})")

        body = self._json(response)
        if not isinstance(body, dict) or not isinstance(body.get("content"), str):
            raise RemoteFormatError("Remote response carries no file content")

        snapshot = decode_document(decode_content(body["content"]), version=body.get("sha"))
        logger.debug(
            f"Fetched remote document: {len(snapshot.entries)} entries, "
            f"{len(snapshot.phases)} phases"
        )
        return snapshot

    def store_document(self, text: str, version: str | None = None) -> str | None:
        """
        Write the remote document.

        Args:
            text: Encoded snapshot document.
            version: Version token from the last read. Without it the write is
                unconditional.

        Returns:
            New version token, if the store returned one.

        Raises:
            RemoteConflictError: If the version token is stale.
            RemoteStoreError: If the request fails.
        """
        payload: dict[str, Any] = {
            "message": self.config.commit_message,
            "content": encode_content(text),
            "branch": self.config.branch,
        }
        if version:
            payload["sha"] = version

        response = self._request("PUT", self.contents_url, json=payload)

        if response.status_code in (409, 422):
            raise RemoteConflictError(
                f"Remote document changed since last read (HTTP {response.status_code})"
            )
        self._check_auth(response)
        if not response.ok:
            raise RemoteStoreError(f"Failed to write remote document (HTTP {response.status_code})")

        body = self._json(response)
        new_version = None
        if isinstance(body, dict) and isinstance(body.get("content"), dict):
            new_version = body["content"].get("sha")

        logger.info("Wrote remote document")
        return new_version

    def count_commits_today(self, day: date, timezone_str: str = "UTC") -> int:
        """
        Count commits made to the remote repository since the start of a day.

        Only one page of size 1 is requested; the total is read from the
        ``last`` pagination link.

        Args:
            day: Calendar day to count.
            timezone_str: Timezone the day is expressed in.

        Returns:
            Number of commits.

        Raises:
            RemoteStoreError: If the request fails.
        """
        since = midnight_utc(day, timezone_str).strftime("%Y-%m-%dT%H:%M:%SZ")
        response = self._request(
            "GET",
            self.commits_url,
            params={"since": since, "per_page": 1, "sha": self.config.branch},
        )

        self._check_auth(response)
        if response.status_code == 409:
            # empty repository
            return 0
        if not response.ok:
            raise RemoteStoreError(f"Failed to list commits (HTTP {response.status_code})")

        last_url = response.links.get("last", {}).get("url")
        if last_url:
            pages = parse_qs(urlparse(last_url).query).get("page")
            if pages and pages[0].isdigit():
                return int(pages[0])
            raise RemoteFormatError(f"Unexpected pagination link: {last_url}")

        body = self._json(response)
        return len(body) if isinstance(body, list) else 0
