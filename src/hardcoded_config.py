from dataclasses import dataclass
from typing import Dict, FrozenSet

@dataclass(frozen=True)
class PermissionScanHardcodedConfig:
  TENANT_CLAIM_PREFIX: str
  UNIFIED_GROUP_CLAIM_MARKER: str
  SYSTEM_PRINCIPAL_NAMES: FrozenSet[str]
  NO_TITLE_MARKER: str
  PERMISSIONS_SEPARATOR: str
  SECURITY_SCAN_SETTINGS_FILENAME: str
  DEFAULT_SECURITY_SCAN_SETTINGS: Dict


PERMISSION_SCAN_HARDCODED_CONFIG = PermissionScanHardcodedConfig(
  # Entra ID security groups synced into SharePoint: c:0t.c|tenant|{guid}
  TENANT_CLAIM_PREFIX="c:0t.c|tenant|"
  # Microsoft 365 (unified) groups: c:0o.c|federateddirectoryclaimprovider|{guid}[_o]
  ,UNIFIED_GROUP_CLAIM_MARKER="federateddirectoryclaimprovider"
  # Case-sensitive; matched against display names
  ,SYSTEM_PRINCIPAL_NAMES=frozenset([
    "Everyone"
    ,"Everyone except external users"
    ,"All Users"
    ,"All Users (windows)"
    ,"All Users (membership)"
    ,"NT AUTHORITY\\authenticated users"
    ,"System Account"
    ,"Company Administrator"
    ,"Global Administrator"
    ,"SharePoint Administrator"
    ,"SharePoint Service Administrator"
    ,"Limited Access System Group"
  ])
  ,NO_TITLE_MARKER="[NoTitle] "
  ,PERMISSIONS_SEPARATOR="; "
  ,SECURITY_SCAN_SETTINGS_FILENAME="permission_scan_settings.json"
  ,DEFAULT_SECURITY_SCAN_SETTINGS={
    "ignore_permission_levels": ["Limited Access"]
    ,"ignore_lists": []
    ,"ignore_list_templates": []
    ,"max_subsite_depth": 10
  }
)
