"""GitHub API service for pull request metadata and diffs."""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
import jwt

from ..config import GitHubConfig
from ..errors import PullRequestNotFound
from ..schemas import PullRequestFile, PullRequestInfo

logger = logging.getLogger(__name__)


class GitHubService:
    """GitHub API interactions using GitHub App or static token authentication."""

    GITHUB_API_BASE = "https://api.github.com"
    FILES_PER_PAGE = 100
    MAX_FILE_PAGES = 30  # GitHub caps the files listing at 3000 entries

    def __init__(
        self,
        app_id: Optional[str] = None,
        private_key: Optional[str] = None,
        installation_id: Optional[str] = None,
        token: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize GitHub service.

        Args:
            app_id: GitHub App ID.
            private_key: PEM-formatted private key.
            installation_id: Installation ID for the repositories.
            token: Static token, used when no App credentials are given.
            api_base: API root (for GitHub Enterprise).
            transport: Custom httpx transport (tests).
            timeout: Request timeout in seconds.
        """
        if not token and not (app_id and private_key and installation_id):
            raise ValueError("GitHubService needs a token or App credentials")
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self.static_token = token
        self.api_base = (api_base or self.GITHUB_API_BASE).rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._token_cache: Optional[tuple[str, datetime]] = None
        logger.debug("GitHubService initialized (app_id=%s, static_token=%s)", app_id, bool(token))

    @classmethod
    def from_config(cls, config: GitHubConfig) -> "GitHubService":
        return cls(
            app_id=config.app_id,
            private_key=config.private_key.get_secret_value() if config.private_key else None,
            installation_id=config.installation_id,
            token=config.token.get_secret_value() if config.token else None,
            api_base=config.api_base,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def _generate_jwt(self) -> str:
        """
        Generate JWT for GitHub App authentication.

        Returns:
            Signed JWT token.
        """
        # JWT expires in 10 minutes (GitHub's max is 10 minutes)
        now = int(time.time())
        payload = {
            "iat": now - 60,  # Allow for clock drift
            "exp": now + (10 * 60),
            "iss": self.app_id,
        }

        try:
            token = jwt.encode(payload, self.private_key, algorithm="RS256")
            logger.debug("Generated GitHub App JWT (expires in 10 minutes)")
            return token
        except Exception as e:
            logger.error("Failed to generate JWT: %s", e)
            raise

    async def _get_installation_token(self) -> str:
        """
        Get installation access token (cached for 50 minutes).

        Returns:
            Installation access token.
        """
        if self._token_cache:
            token, expiry = self._token_cache
            if datetime.now() < expiry:
                logger.debug("Using cached installation token")
                return token

        logger.debug("Fetching new installation access token...")
        jwt_token = self._generate_jwt()

        url = f"{self.api_base}/app/installations/{self.installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {jwt_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

        async with self._client() as client:
            try:
                response = await client.post(url, headers=headers)
                response.raise_for_status()
                data = response.json()

                token = data["token"]
                # Tokens expire in 1 hour, refresh early
                self._token_cache = (token, datetime.now() + timedelta(minutes=50))

                logger.info("Fetched new installation access token (valid for 50 minutes)")
                return token

            except httpx.HTTPStatusError as e:
                logger.error("Failed to fetch installation token (HTTP %d): %s", e.response.status_code, e.response.text)
                raise

    async def _headers(self) -> dict[str, str]:
        token = self.static_token or await self._get_installation_token()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _get_json(self, url: str, params: Optional[dict[str, Any]] = None, what: str = "resource") -> Any:
        headers = await self._headers()
        async with self._client() as client:
            try:
                response = await client.get(url, headers=headers, params=params)
                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise PullRequestNotFound(f"{what} not found") from e
                logger.error("Failed to fetch %s (HTTP %d): %s", what, e.response.status_code, e.response.text)
                raise

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> PullRequestInfo:
        """
        Get pull request details.

        Args:
            owner: Repository owner.
            repo: Repository name.
            pr_number: PR number.

        Returns:
            Pull request metadata.

        Raises:
            PullRequestNotFound: If GitHub answers 404.
            httpx.HTTPError: For any other failure.
        """
        logger.debug("Fetching PR #%d from %s/%s...", pr_number, owner, repo)

        data = await self._get_json(
            f"{self.api_base}/repos/{owner}/{repo}/pulls/{pr_number}",
            what=f"Pull request #{pr_number} in {owner}/{repo}",
        )
        return PullRequestInfo(
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            url=data.get("html_url"),
            author=(data.get("user") or {}).get("login") or "unknown",
            head_sha=data["head"]["sha"],
            base_sha=(data.get("base") or {}).get("sha"),
            state=data.get("state"),
        )

    async def get_pull_request_files(self, owner: str, repo: str, pr_number: int) -> list[PullRequestFile]:
        """
        Get the files changed in a pull request, following pagination.

        Args:
            owner: Repository owner.
            repo: Repository name.
            pr_number: PR number.

        Returns:
            Changed files with their patches (patch is None for binary or huge files).

        Raises:
            PullRequestNotFound: If GitHub answers 404.
            httpx.HTTPError: For any other failure.
        """
        logger.debug("Fetching files of PR #%d from %s/%s...", pr_number, owner, repo)

        url = f"{self.api_base}/repos/{owner}/{repo}/pulls/{pr_number}/files"
        files: list[PullRequestFile] = []
        for page in range(1, self.MAX_FILE_PAGES + 1):
            batch = await self._get_json(
                url,
                params={"per_page": self.FILES_PER_PAGE, "page": page},
                what=f"Files of pull request #{pr_number} in {owner}/{repo}",
            )
            for item in batch:
                files.append(
                    PullRequestFile(
                        filename=item["filename"],
                        status=item.get("status") or "modified",
                        patch=item.get("patch"),
                        additions=item.get("additions") or 0,
                        deletions=item.get("deletions") or 0,
                    )
                )
            if len(batch) < self.FILES_PER_PAGE:
                break

        logger.debug("PR #%d has %d changed file(s)", pr_number, len(files))
        return files
