"""Read access to provider credentials stored on integrations.

Tokens are created and refreshed by the OAuth flows; this module never
refreshes them.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from cycleflow.core.errors import NotFoundError
from cycleflow.db.models import Integration


@dataclass(frozen=True)
class Credentials:
    integration_id: str
    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None
    provider_user_id: str | None
    sync_enabled: bool

    @classmethod
    def from_integration(cls, integration: Integration) -> Credentials:
        return cls(
            integration_id=integration.id,
            user_id=integration.user_id,
            provider=integration.provider,
            access_token=integration.access_token,
            refresh_token=integration.refresh_token,
            provider_user_id=integration.provider_user_id,
            sync_enabled=integration.sync_enabled,
        )


class IntegrationCredentialSource:
    def __init__(self, session: Session):
        self.session = session

    def find_integration(self, user_id: str, provider: str) -> Integration | None:
        row = self.session.execute(
            select(Integration).where(
                Integration.user_id == user_id,
                Integration.provider == provider,
            )
        ).first()
        return row[0] if row else None

    def find_by_provider_user(self, provider: str, provider_user_id: str) -> Integration | None:
        row = self.session.execute(
            select(Integration).where(
                Integration.provider == provider,
                Integration.provider_user_id == str(provider_user_id),
            )
        ).first()
        return row[0] if row else None

    def get_credentials(self, user_id: str, provider: str) -> Credentials:
        """Return the stored credentials for (user_id, provider).

        Raises:
            NotFoundError: The user has no integration with that provider
        """
        integration = self.find_integration(user_id, provider)
        if integration is None:
            raise NotFoundError(f"No {provider} integration found for user {user_id}")
        return Credentials.from_integration(integration)
