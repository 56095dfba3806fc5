from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from slsa_delegator.errors import GitHubAPIError
from slsa_delegator.models import TrustedEnvironment

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT = 30.0
PER_PAGE = 100


def split_repository(repository: str) -> Tuple[str, str]:
    owner, sep, repo = repository.partition("/")
    if not sep or not owner or not repo or "/" in repo:
        raise ValueError(f"invalid repository name: {repository!r}")
    return owner, repo


class GitHubClient:
    """Minimal GitHub REST client for the endpoints the pipeline needs.

    Errors are never retried: any transport failure or non-200 response is
    raised as :class:`GitHubAPIError`.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = GITHUB_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GET {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise GitHubAPIError(
                f"GET {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def _paginate(self, path: str, key: str) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self._get_json(path, params={"per_page": PER_PAGE, "page": page})
            items: List[Dict[str, Any]] = []
            if isinstance(data, dict) and isinstance(data.get(key), list):
                items = data[key]
            out.extend(items)
            if len(items) < PER_PAGE:
                return out
            page += 1

    async def get_workflow_run(self, repository: str, run_id: str) -> Dict[str, Any]:
        owner, repo = split_repository(repository)
        logger.debug("fetching workflow run %s for %s", run_id, repository)
        return await self._get_json(f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}")

    async def list_jobs_for_run(self, repository: str, run_id: str) -> List[Dict[str, Any]]:
        owner, repo = split_repository(repository)
        path = f"/repos/{owner}/{repo}/actions/runs/{int(run_id)}/jobs"
        return await self._paginate(path, "jobs")

    async def list_self_hosted_runners(self, repository: str) -> List[Dict[str, Any]]:
        owner, repo = split_repository(repository)
        return await self._paginate(f"/repos/{owner}/{repo}/actions/runners", "runners")

    async def get_repository(self, repository: str) -> Dict[str, Any]:
        owner, repo = split_repository(repository)
        return await self._get_json(f"/repos/{owner}/{repo}")

    async def get_content(self, repository: str, path: str, ref: str) -> bytes:
        owner, repo = split_repository(repository)
        data = await self._get_json(
            f"/repos/{owner}/{repo}/contents/{path.lstrip('/')}", params={"ref": ref}
        )
        if not isinstance(data, dict) or "content" not in data:
            raise GitHubAPIError(f"no content for {repository}/{path}@{ref}")
        try:
            return base64.b64decode(data["content"])
        except (binascii.Error, ValueError) as exc:
            raise GitHubAPIError(f"invalid content encoding for {path}: {exc}") from exc


class OIDCTokenRequester:
    def __init__(
        self,
        request_url: str,
        request_token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.request_url = request_url
        self.request_token = request_token
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_environment(
        cls, env: TrustedEnvironment, *, timeout: float = DEFAULT_TIMEOUT
    ) -> "OIDCTokenRequester":
        return cls(env.id_token_request_url, env.id_token_request_token, timeout=timeout)

    async def get_id_token(self, audience: str) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(
                    self.request_url,
                    params={"audience": audience},
                    headers={"Authorization": f"Bearer {self.request_token}"},
                )
            except httpx.HTTPError as exc:
                raise GitHubAPIError(f"OIDC token request failed: {exc}") from exc
        if response.status_code != 200:
            raise GitHubAPIError(
                f"OIDC token request returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        value = response.json().get("value")
        if not isinstance(value, str) or not value:
            raise GitHubAPIError("OIDC token response has no value")
        return value


async def privacy_check(
    client: GitHubClient, repository: str, *, override: bool
) -> Tuple[bool, bool]:
    """Return ``(is_private, passes)``; private repositories pass only with ``override``."""
    repo = await client.get_repository(repository)
    is_private = bool(repo.get("private", False))
    return is_private, override or not is_private
