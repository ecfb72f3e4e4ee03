"""HTTP clients for external collaborators and platform signing."""

from milestone_escrow_service.clients.identity_client import IdentityClient
from milestone_escrow_service.clients.ledger_client import LedgerClient
from milestone_escrow_service.clients.notifier_client import NotificationType, NotifierClient
from milestone_escrow_service.clients.platform_signer import PlatformSigner

__all__ = ["IdentityClient", "LedgerClient", "NotificationType", "NotifierClient", "PlatformSigner"]
