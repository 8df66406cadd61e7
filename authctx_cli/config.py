"""Runtime configuration constants.

Values that operators commonly need to change can be overridden from the
environment.
"""

import os

GRAPH_BASE = "https://graph.microsoft.com"
ARM_BASE = "https://management.azure.com"
LOGIN_AUTHORITY = "https://login.microsoftonline.com/organizations"

# Public client used for device code sign-in. Override with your own app
# registration when the default is not consented in the tenant.
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
CLIENT_ID = os.getenv("AUTHCTX_CLIENT_ID", DEFAULT_CLIENT_ID)

# ── HTTP ──────────────────────────────────────────────────────────────────

REQUEST_TIMEOUT = 30  # seconds
TRANSIENT_CODES = (429, 500, 502, 503, 504)
MAX_RETRIES = 2
RETRY_DELAY = 3  # seconds

# Group-scoped PIM policies are listed per group; cap the number of groups
# queried so very large tenants stay within Graph throttling limits.
GROUP_POLICY_SCAN_LIMIT = 200

# ── Resolver ──────────────────────────────────────────────────────────────

RESOLVER_MAX_WORKERS = int(os.getenv("AUTHCTX_RESOLVER_WORKERS", "4"))

# Ids longer than this are truncated when they cannot be resolved to a name
UNRESOLVED_KEEP_CHARS = 8
UNRESOLVED_MAX_LENGTH = 12

# ── Correlation ───────────────────────────────────────────────────────────

SHAREPOINT_ROOT_URL = os.getenv("AUTHCTX_SHAREPOINT_ROOT", "")

# Candidate site addresses derived from a group's mail nickname, tried in order
SITE_URL_TEMPLATES = (
    "{root}/sites/{alias}",
    "{root}/teams/{alias}",
)

NO_DATA_LABEL = "No data"
