"""Billing core: SSO tokens, sessions, permissions and the subscription lifecycle."""

from src.saas.history import SubscriptionHistory
from src.saas.idempotency import IdempotencyLedger
from src.saas.lifecycle import ProratedResult, SubscriptionService
from src.saas.permissions import PermissionModel, RolePermissionLoader
from src.saas.plans import PlanCatalog
from src.saas.pricing import PricePolicyEngine, calculate_refund_amount
from src.saas.principals import AdminDirectory, LoginService, ManagerDirectory
from src.saas.repository import SubscriptionRepository
from src.saas.sessions import SessionManager, is_session_live
from src.saas.subscription import SubscriptionStateMachine
from src.saas.tenant_sync import TenantSyncPropagator
from src.saas.tokens import ManagerBillingTokens, SSOIdentity, TokenVerifier, issue_sso_token

__all__ = [
    "AdminDirectory",
    "IdempotencyLedger",
    "LoginService",
    "ManagerBillingTokens",
    "ManagerDirectory",
    "PermissionModel",
    "PlanCatalog",
    "PricePolicyEngine",
    "ProratedResult",
    "RolePermissionLoader",
    "SSOIdentity",
    "SessionManager",
    "SubscriptionHistory",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionStateMachine",
    "TenantSyncPropagator",
    "TokenVerifier",
    "calculate_refund_amount",
    "is_session_live",
    "issue_sso_token",
]
