"""Partner connected-account status tracking."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import InvalidInput, NotFound
from .gateway import PaymentGateway
from .models import ConnectedAccount, ConnectedAccountStatus, WebhookOutcome, derive_account_status
from .repository import BillingRepository

logger = logging.getLogger(__name__)

NOT_CONNECTED = "not_connected"


def update_partner_status(
    repository: BillingRepository,
    partner: ConnectedAccount,
    status: ConnectedAccountStatus,
    *,
    max_attempts: int = 3,
) -> WebhookOutcome:
    """Compare-and-swap a partner's connect status, re-reading on contention.

    ``disconnected`` is only replaced by another ``disconnected``; capability
    updates that arrive after a deauthorization are ignored.
    """

    current: Optional[ConnectedAccount] = partner
    for _ in range(max(1, max_attempts)):
        if current is None:
            return WebhookOutcome.UNCORRELATED
        if current.status == status and current.stored_status == status.value:
            return WebhookOutcome.UNCHANGED
        if current.status == ConnectedAccountStatus.DISCONNECTED:
            logger.info("Ignoring %s for disconnected partner %s", status.value, current.partner_id)
            return WebhookOutcome.UNCHANGED
        if repository.set_account_status(current, status):
            logger.info(
                "Partner %s connect status %s -> %s",
                current.partner_id,
                current.stored_status,
                status.value,
                extra={"account_ref": current.external_account_ref},
            )
            return WebhookOutcome.APPLIED
        current = repository.get_partner_account(partner.partner_id)

    logger.warning("Gave up updating partner %s after concurrent writes", partner.partner_id)
    return WebhookOutcome.FAILED


@dataclass(frozen=True)
class ConnectStatus:
    partner_id: str
    connected: bool
    status: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


@dataclass
class ConnectAccountService:
    """On-demand refresh of a partner's payout eligibility from the gateway."""

    repository: BillingRepository
    gateway: PaymentGateway

    def check_status(self, partner_id: str) -> ConnectStatus:
        if not partner_id:
            raise InvalidInput(message="Partner ID is required")
        partner = self.repository.get_partner_account(partner_id)
        if partner is None:
            raise NotFound(message="Partner not found", detail={"partnerId": partner_id})
        if not partner.external_account_ref:
            return ConnectStatus(partner_id=partner_id, connected=False, status=NOT_CONNECTED)

        account = self.gateway.retrieve_account(partner.external_account_ref)
        derived = derive_account_status(
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            details_submitted=account.details_submitted,
        )
        update_partner_status(self.repository, partner, derived)
        stored = self.repository.get_partner_account(partner_id)
        status = stored.status if stored is not None and stored.status is not None else derived
        return ConnectStatus(
            partner_id=partner_id,
            connected=status != ConnectedAccountStatus.DISCONNECTED,
            status=status.value,
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            details_submitted=account.details_submitted,
        )


__all__ = ["ConnectAccountService", "ConnectStatus", "NOT_CONNECTED", "update_partner_status"]
