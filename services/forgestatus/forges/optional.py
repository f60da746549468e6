"""Optional forge client.

Wraps a ForgeClient that may be absent (no token or repository URL
configured). Every method stays callable: an absent client reports "no
request" and a passing connection test, so callers never branch on whether
a forge is configured.
"""

from forgestatus.forges.protocol import AuthError, ForgeClient
from forgestatus.logging_config import get_logger
from forgestatus.models import PullRequestStatus

logger = get_logger(__name__)


class OptionalForgeClient:
    """A ForgeClient, or a no-op stand-in when the forge is not configured."""

    def __init__(self, client: ForgeClient | None, repository: str = "") -> None:
        self._client = client
        self.repository = repository
        self._absence_logged = False
        self.auth_failed = False

    @classmethod
    def disabled(cls, repository: str = "") -> "OptionalForgeClient":
        return cls(None, repository)

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    @property
    def name(self) -> str:
        return self._client.name if self._client is not None else "disabled"

    @property
    def in_cooldown(self) -> bool:
        return self._client is not None and self._client.in_cooldown

    @property
    def client(self) -> ForgeClient | None:
        return self._client

    def _log_absence(self) -> None:
        if not self._absence_logged:
            logger.debug("Forge not configured, reporting no requests", repository=self.repository)
            self._absence_logged = True

    async def reconfigure(self, client: ForgeClient | None) -> None:
        """Swap the inner client after a config reload, closing the old one."""
        old, self._client = self._client, client
        self._absence_logged = False
        self.auth_failed = False
        if old is not None and old is not client:
            await old.aclose()

    async def test_connection(self) -> None:
        if self._client is None:
            self._log_absence()
            return
        await self._client.test_connection()

    async def fetch_pull_request_status(self, branch: str) -> PullRequestStatus:
        if self._client is None:
            self._log_absence()
            return PullRequestStatus()

        try:
            status = await self._client.fetch_pull_request_status(branch)
        except AuthError as e:
            if not self.auth_failed:
                logger.warning(
                    "Forge rejected credentials, provider disabled until they are accepted",
                    repository=self.repository,
                    forge=self._client.name,
                    error=str(e),
                )
            self.auth_failed = True
            raise

        if self.auth_failed:
            logger.info("Forge credentials accepted again", repository=self.repository)
            self.auth_failed = False
        return status

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
