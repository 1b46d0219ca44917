"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Store Collections ────────────────────────────────────────────
COLLECTION_SSO_TOKENS = "sso_tokens"
COLLECTION_AUTH_SESSIONS = "auth_sessions"
COLLECTION_CHECKOUT_SESSIONS = "checkout_sessions"
COLLECTION_ADMIN_SESSIONS = "admin_sessions"
COLLECTION_MANAGER_SESSIONS = "manager_sessions"
COLLECTION_ADMINS = "admins"
COLLECTION_MANAGERS = "users_managers"
COLLECTION_USERS = "users"
COLLECTION_TENANTS = "tenants"
COLLECTION_SUBSCRIPTIONS = "subscriptions"
COLLECTION_SUBSCRIPTION_HISTORY = "subscription_history"
COLLECTION_PLANS = "plans"
COLLECTION_SETTINGS = "settings"
COLLECTION_IDEMPOTENCY_KEYS = "idempotency_keys"

SETTINGS_ROLE_PERMISSIONS_DOC = "role_permissions"

# ── Cookies ──────────────────────────────────────────────────────
COOKIE_AUTH_SESSION = "auth_session"
COOKIE_CHECKOUT_SESSION = "checkout_session"
COOKIE_ADMIN_SESSION = "admin_session"
COOKIE_MANAGER_SESSION = "manager_session"

# ── Session Id Prefixes ──────────────────────────────────────────
PREFIX_AUTH_SESSION = "as_"
PREFIX_CHECKOUT_SESSION = "cs_"
PREFIX_ADMIN_SESSION = "ad_"
PREFIX_MANAGER_SESSION = "ms_"
PREFIX_MANAGER_ID = "mg_"
SESSION_ID_ENTROPY_BYTES = 24

# ── Token Signing ────────────────────────────────────────────────
SSO_TOKEN_SALT = "sso-token"
MANAGER_BILLING_TOKEN_SALT = "manager-billing"
MANAGER_BILLING_PURPOSE = "manager_billing"
DEV_BYPASS_TOKEN = "dev"

# ── Timeouts & Caches (seconds) ──────────────────────────────────
DEFAULT_STORE_TIMEOUT = 5.0
ROLE_PERMISSIONS_CACHE_TTL = 60
SESSION_STORE_TTL_FACTOR = 2        # storage hygiene only; expiry is checked on read

# ── Billing ──────────────────────────────────────────────────────
BCRYPT_ROUNDS = 12
MAX_PAYMENT_FAILURES = 3            # consecutive failures before suspension
TENANT_SYNC_FAILURE_BUFFER = 100
IDEMPOTENCY_KEY_TTL = 60 * 60 * 24 * 35   # one billing period plus retries
LOG_ID_PREFIX_LEN = 8
