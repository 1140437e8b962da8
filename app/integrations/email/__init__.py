from app.integrations.email.api import router
from app.integrations.email.models import EmailAccount
from app.integrations.email.oauth import OAuthRefreshError, OAuthTokenClient
from app.integrations.email.service import EmailAccountService, email_account_service, needs_refresh

__all__ = [
    "router",
    "EmailAccount",
    "OAuthRefreshError",
    "OAuthTokenClient",
    "EmailAccountService",
    "email_account_service",
    "needs_refresh",
]
