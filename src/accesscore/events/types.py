"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all audit events in the system.
Payloads never carry secrets, password hashes or session tokens.
"""

# ─── Credential store ────────────────────────────────────

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_ACTIVATED = "user.activated"
USER_DISABLED = "user.disabled"
USER_DELETED = "user.deleted"
USER_LOGGED_IN = "user.logged_in"

# ─── Tenancy ─────────────────────────────────────────────

ORG_CREATED = "organization.created"
ORG_UPDATED = "organization.updated"
ORG_DELETED = "organization.deleted"
MEMBER_INVITED = "member.invited"
MEMBER_JOINED = "member.joined"
MEMBER_ROLE_CHANGED = "member.role_changed"
MEMBER_REMOVED = "member.removed"
INVITATION_REVOKED = "invitation.revoked"
PROJECT_CREATED = "project.created"

# ─── API keys ────────────────────────────────────────────

API_KEY_ISSUED = "api_key.issued"
API_KEY_REVOKED = "api_key.revoked"
API_KEY_DELETED = "api_key.deleted"

# ─── Folders ─────────────────────────────────────────────

FOLDER_CREATED = "folder.created"
FOLDER_RENAMED = "folder.renamed"
FOLDER_DELETED = "folder.deleted"
FOLDER_VISIBILITY_CHANGED = "folder.visibility_changed"
FOLDER_ACCESS_GRANTED = "folder.access_granted"
FOLDER_ACCESS_REVOKED = "folder.access_revoked"
FOLDERS_REORDERED = "folder.reordered"
ITEM_MOVED = "item.moved"

# ─── Row-level security ──────────────────────────────────

SESSION_PROPERTY_DEFINED = "session_property.defined"
SESSION_PROPERTY_UPDATED = "session_property.updated"
SESSION_PROPERTY_DELETED = "session_property.deleted"
SESSION_PROPERTY_VALUE_SET = "session_property.value_set"
SESSION_PROPERTY_VALUE_CLEARED = "session_property.value_cleared"
RLS_POLICY_CREATED = "rls_policy.created"
RLS_POLICY_UPDATED = "rls_policy.updated"
RLS_POLICY_DELETED = "rls_policy.deleted"
