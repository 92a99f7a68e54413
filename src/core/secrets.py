"""Backend API token lookup: GCP Secret Manager first, local settings second."""

from typing import Dict, Optional

from google.cloud import secretmanager

from .config import get_settings
from .errors import SecretNotFoundError
from .logging import get_logger

logger = get_logger(__name__)

API_TOKEN_SECRET = "api_token"


class SecretManager:
    """Reads secrets for the payment service.

    Values fetched from Secret Manager are cached for the life of the
    process; the token is read once per API client, not per request.
    """

    def __init__(self):
        self.settings = get_settings()
        self.client: Optional[secretmanager.SecretManagerServiceClient] = None
        self._cache: Dict[str, str] = {}

        if self.settings.use_secret_manager and self.settings.gcp_project_id:
            try:
                self.client = secretmanager.SecretManagerServiceClient()
                logger.info("Secret Manager client initialized", project_id=self.settings.gcp_project_id)
            except Exception as e:
                logger.warning("Secret Manager unavailable, using local settings only", error=str(e))
                self.client = None

    def _secret_path(self, secret_name: str) -> str:
        return f"projects/{self.settings.gcp_project_id}/secrets/{secret_name}/versions/latest"

    def _fetch_remote(self, secret_name: str) -> Optional[str]:
        if not self.client:
            return None
        try:
            response = self.client.access_secret_version(request={"name": self._secret_path(secret_name)})
        except Exception as e:
            logger.warning("Secret Manager lookup failed", secret_name=secret_name, error=str(e))
            return None
        return response.payload.data.decode("UTF-8")

    def get_secret(self, secret_name: str) -> str:
        """
        Resolve a secret by name.

        Args:
            secret_name: Secret id in Secret Manager, also the settings field
                used as the local fallback (e.g. "api_token")

        Returns:
            Secret value

        Raises:
            SecretNotFoundError: If neither source has a value
        """
        if secret_name in self._cache:
            return self._cache[secret_name]

        value = self._fetch_remote(secret_name)
        source = "secret_manager"
        if not value:
            value = getattr(self.settings, secret_name, None)
            source = "settings"
        if not value:
            raise SecretNotFoundError(f"Secret '{secret_name}' is not configured")

        logger.debug("Secret resolved", secret_name=secret_name, source=source)
        self._cache[secret_name] = value
        return value

    def get_optional_secret(self, secret_name: str) -> Optional[str]:
        try:
            return self.get_secret(secret_name)
        except SecretNotFoundError:
            return None

    def get_api_token(self) -> Optional[str]:
        """Bearer token for the booking backend; None runs unauthenticated."""
        return self.get_optional_secret(API_TOKEN_SECRET)


# Global instance
_secret_manager: Optional[SecretManager] = None


def get_secret_manager() -> SecretManager:
    """Get or create the global SecretManager instance."""
    global _secret_manager
    if _secret_manager is None:
        _secret_manager = SecretManager()
    return _secret_manager
