"""Best-effort account provisioning for environments with an admin secret.

When sign-in answers 401 the fixture account may simply not exist yet (fresh
staging database). With an admin secret configured, the lifecycle manager
asks the identity service to create the account once and signs in again.

Provisioning never raises: the outcome is returned for logging and the next
sign-in attempt decides whether it helped.
"""

from __future__ import annotations

__all__ = [
    "ProvisionOutcome",
    "Provisioner",
]

from enum import Enum
from typing import TYPE_CHECKING

import httpx

from session_broker.constants import ADMIN_SECRET_HEADER, ADMIN_USERS_PATH
from session_broker.telemetry import get_logger

if TYPE_CHECKING:
    from session_broker.config import BrokerConfig, Identity

_logger = get_logger("provision")


class ProvisionOutcome(str, Enum):
    """Result of an ensure_exists() call."""

    SKIPPED = "skipped"  # no admin secret configured
    CREATED = "created"
    EXISTS = "exists"
    FAILED = "failed"


class Provisioner:
    """Create fixture accounts through the identity service's admin API."""

    def __init__(self, config: "BrokerConfig") -> None:
        self._config = config

    @property
    def enabled(self) -> bool:
        """True if privileged credentials are configured."""
        return bool(self._config.admin_secret)

    async def ensure_exists(self, identity: "Identity", client: httpx.AsyncClient) -> ProvisionOutcome:
        """Create ``identity`` unless it already exists.

        Args:
            identity: Account to create.
            client: HTTP client to use.

        Returns:
            SKIPPED without admin secret, CREATED on 2xx, EXISTS on 409,
            FAILED on any other status or transport error.
        """
        if not self.enabled:
            return ProvisionOutcome.SKIPPED

        url = f"{self._config.auth_url}{ADMIN_USERS_PATH}"
        try:
            response = await client.post(
                url,
                json={
                    "email": identity.email,
                    "password": identity.password,
                    "emailVerified": True,
                    "defaultRole": "user",
                    "roles": ["user"],
                },
                headers={ADMIN_SECRET_HEADER: self._config.admin_secret or ""},
            )
        except httpx.HTTPError as e:
            _logger.warning(
                {
                    "event": "provision_failed",
                    "message": f"Account provisioning for {identity.email} failed: {e}",
                    "error_type": type(e).__name__,
                }
            )
            return ProvisionOutcome.FAILED

        if response.status_code == 409:
            outcome = ProvisionOutcome.EXISTS
        elif response.is_success:
            outcome = ProvisionOutcome.CREATED
        else:
            outcome = ProvisionOutcome.FAILED

        _logger.info(
            {
                "event": "provision_attempted",
                "message": f"Account provisioning for {identity.email}: {outcome.value}",
                "status": response.status_code,
                "outcome": outcome.value,
            }
        )
        return outcome
