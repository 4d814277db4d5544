# Common functions for classifying SharePoint principals found in role assignments
# Pure functions only: no remote calls, no state

from dataclasses import dataclass
from enum import Enum
from typing import Optional
from hardcoded_config import PERMISSION_SCAN_HARDCODED_CONFIG

TENANT_CLAIM_PREFIX = PERMISSION_SCAN_HARDCODED_CONFIG.TENANT_CLAIM_PREFIX
UNIFIED_GROUP_CLAIM_MARKER = PERMISSION_SCAN_HARDCODED_CONFIG.UNIFIED_GROUP_CLAIM_MARKER

# SharePoint PrincipalType values (SP.Utilities.PrincipalType)
PRINCIPAL_TYPE_USER = 1
PRINCIPAL_TYPE_DISTRIBUTION_LIST = 2
PRINCIPAL_TYPE_SECURITY_GROUP = 4
PRINCIPAL_TYPE_SHAREPOINT_GROUP = 8

# ----------------------------------------- START: Types -----------------------------------------------------------------------

class RawPrincipalKind(str, Enum):
  USER = "User"
  DISTRIBUTION_LIST = "DistributionList"
  SECURITY_GROUP = "SecurityGroup"
  SHAREPOINT_GROUP = "SharePointGroup"
  UNIFIED_GROUP = "UnifiedGroup"

class PrincipalCategory(str, Enum):
  DIRECTORY_GROUP = "DirectoryGroup"
  SECURITY_GROUP = "SecurityGroup"
  LOCAL_GROUP = "LocalGroup"
  UNKNOWN = "Unknown"

class GroupType(str, Enum):
  """External spelling written to the GroupType report column."""
  ENTRA_ID_GROUP = "M365/EntraIDGroup"
  SECURITY_GROUP = "SecurityGroup"
  SHAREPOINT_GROUP = "SharePointGroup"
  MICROSOFT365_GROUP = "Microsoft365Group"
  UNKNOWN = "Unknown"

  @property
  def category(self) -> PrincipalCategory:
    return _CATEGORY_BY_GROUP_TYPE[self]

_CATEGORY_BY_GROUP_TYPE = {
  GroupType.ENTRA_ID_GROUP: PrincipalCategory.DIRECTORY_GROUP,
  GroupType.MICROSOFT365_GROUP: PrincipalCategory.DIRECTORY_GROUP,
  GroupType.SECURITY_GROUP: PrincipalCategory.SECURITY_GROUP,
  GroupType.SHAREPOINT_GROUP: PrincipalCategory.LOCAL_GROUP,
  GroupType.UNKNOWN: PrincipalCategory.UNKNOWN,
}

REPORTABLE_CATEGORIES = (PrincipalCategory.DIRECTORY_GROUP, PrincipalCategory.SECURITY_GROUP, PrincipalCategory.LOCAL_GROUP)
EXPANDABLE_MEMBER_CATEGORIES = (PrincipalCategory.DIRECTORY_GROUP, PrincipalCategory.SECURITY_GROUP)

@dataclass(frozen=True)
class Principal:
  """A SharePoint security entity as returned by a role assignment or a group's users collection."""
  principal_id: str
  display_name: str
  login_name: str
  raw_kind: Optional[RawPrincipalKind]

# ----------------------------------------- END: Types -------------------------------------------------------------------------


# ----------------------------------------- START: Classification --------------------------------------------------------------

def raw_kind_from_principal_type(principal_type: Optional[int], login_name: str) -> Optional[RawPrincipalKind]:
  """Map a SharePoint PrincipalType to a raw kind. M365 groups arrive as PrincipalType=4 with a federated directory claim."""
  if principal_type is None: return None
  if principal_type == PRINCIPAL_TYPE_USER: return RawPrincipalKind.USER
  if principal_type == PRINCIPAL_TYPE_DISTRIBUTION_LIST: return RawPrincipalKind.DISTRIBUTION_LIST
  if principal_type == PRINCIPAL_TYPE_SHAREPOINT_GROUP: return RawPrincipalKind.SHAREPOINT_GROUP
  if principal_type == PRINCIPAL_TYPE_SECURITY_GROUP:
    if UNIFIED_GROUP_CLAIM_MARKER in (login_name or ""): return RawPrincipalKind.UNIFIED_GROUP
    return RawPrincipalKind.SECURITY_GROUP
  return None

def is_tenant_claim(login_name: str) -> bool:
  return TENANT_CLAIM_PREFIX in (login_name or "")

def classify_principal(raw_kind: Optional[RawPrincipalKind], login_name: str) -> GroupType:
  """
  Resolve a principal into exactly one GroupType. Rules, in order:
    1. SecurityGroup: tenant claim login -> M365/EntraIDGroup, otherwise SecurityGroup
    2. SharePointGroup -> SharePointGroup
    3. UnifiedGroup -> Microsoft365Group
    4. anything else (users, distribution lists) -> Unknown

  Raises ValueError when raw_kind is None; callers skip the entry.
  """
  if raw_kind is None: raise ValueError("Principal has no raw kind.")
  if raw_kind == RawPrincipalKind.SECURITY_GROUP:
    return GroupType.ENTRA_ID_GROUP if is_tenant_claim(login_name) else GroupType.SECURITY_GROUP
  if raw_kind == RawPrincipalKind.SHAREPOINT_GROUP: return GroupType.SHAREPOINT_GROUP
  if raw_kind == RawPrincipalKind.UNIFIED_GROUP: return GroupType.MICROSOFT365_GROUP
  return GroupType.UNKNOWN

def is_system_principal(display_name: str) -> bool:
  """Case-sensitive lookup of built-in 'everyone' groups and tenant admin roles."""
  return display_name in PERMISSION_SCAN_HARDCODED_CONFIG.SYSTEM_PRINCIPAL_NAMES

def get_principal_display_name(principal: Principal) -> str:
  if principal.display_name: return principal.display_name
  if principal.login_name: return principal.login_name
  return f"Unknown principal (id={principal.principal_id})"

# ----------------------------------------- END: Classification ----------------------------------------------------------------
