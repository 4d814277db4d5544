# Common functions for the permission report: record type, aggregator and CSV export
# The report is append-only while a scan runs and read-only afterwards

import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from hardcoded_config import PERMISSION_SCAN_HARDCODED_CONFIG
from routers_v2.common_principal_functions_v2 import GroupType, PrincipalCategory

# ----------------------------------------- START: Constants ------------------------------------------------------------------

# Column order is the external contract for CSV and table consumers
CSV_COLUMNS_PERMISSION_REPORT = ["WebUrl", "WebTitle", "ObjectType", "GroupName", "GroupType", "LoginName", "Permissions", "IsSystemPrincipal", "SharePointGroupContainer"]

ISSUE_NODE_UNREACHABLE = "NodeUnreachable"
ISSUE_ENTRY_RESOLUTION_FAILURE = "EntryResolutionFailure"
ISSUE_EXPANSION_FAILURE = "ExpansionFailure"

# ----------------------------------------- END: Constants --------------------------------------------------------------------


# ----------------------------------------- START: Types ----------------------------------------------------------------------

@dataclass(frozen=True)
class AssignmentRecord:
  """One permission grant of a group principal at a site, subsite or list."""
  node_url: str
  node_title: str
  object_label: str
  principal_name: str
  group_type: GroupType
  login_name: str
  permissions: Tuple[str, ...]
  is_system_principal: bool
  container_origin: Optional[str] = None

  @property
  def category(self) -> PrincipalCategory:
    return self.group_type.category

  @property
  def permissions_text(self) -> str:
    return PERMISSION_SCAN_HARDCODED_CONFIG.PERMISSIONS_SEPARATOR.join(self.permissions)

  def to_row(self) -> dict:
    return {
      "WebUrl": self.node_url,
      "WebTitle": self.node_title,
      "ObjectType": self.object_label,
      "GroupName": self.principal_name,
      "GroupType": self.group_type.value,
      "LoginName": self.login_name,
      "Permissions": self.permissions_text,
      "IsSystemPrincipal": self.is_system_principal,
      "SharePointGroupContainer": self.container_origin or ""
    }

@dataclass(frozen=True)
class ScanIssue:
  """A non-fatal failure recorded during a scan."""
  kind: str
  node_url: str
  message: str

@dataclass(frozen=True)
class PrincipalLocation:
  node_url: str
  object_label: str
  container_origin: Optional[str] = None

# ----------------------------------------- END: Types ------------------------------------------------------------------------


# ----------------------------------------- START: Aggregator -----------------------------------------------------------------

class PermissionReport:
  """
  Accumulates AssignmentRecords of one scan and exposes summary views.

  Summary views exclude system principals by default. Direct SharePoint group grants are excluded
  from the principal view by default; the directory-backed members found inside them are kept.
  """

  def __init__(self):
    self._records: List[AssignmentRecord] = []
    self._issues: List[ScanIssue] = []

  @property
  def records(self) -> Tuple[AssignmentRecord, ...]:
    return tuple(self._records)

  @property
  def issues(self) -> Tuple[ScanIssue, ...]:
    return tuple(self._issues)

  def add_record(self, record: AssignmentRecord) -> None:
    self._records.append(record)

  def add_issue(self, issue: ScanIssue) -> None:
    self._issues.append(issue)

  def __len__(self) -> int:
    return len(self._records)

  def _is_counted(self, record: AssignmentRecord, include_system: bool) -> bool:
    if record.is_system_principal and not include_system: return False
    return record.category != PrincipalCategory.LOCAL_GROUP

  def by_principal(self, include_system: bool = False, include_local_groups: bool = False) -> Dict[Tuple[str, PrincipalCategory], List[PrincipalLocation]]:
    """Group records by (principal_name, category). Each location is listed once, in scan order."""
    result: Dict[Tuple[str, PrincipalCategory], List[PrincipalLocation]] = {}
    for record in self._records:
      if record.is_system_principal and not include_system: continue
      if record.category == PrincipalCategory.LOCAL_GROUP and not include_local_groups: continue
      locations = result.setdefault((record.principal_name, record.category), [])
      location = PrincipalLocation(record.node_url, record.object_label, record.container_origin)
      if location not in locations: locations.append(location)
    return result

  def by_category(self, include_system: bool = False) -> Dict[PrincipalCategory, int]:
    """Count non-system, non-LocalGroup records per category."""
    return dict(Counter(r.category for r in self._records if self._is_counted(r, include_system)))

  def by_group_type(self, include_system: bool = False) -> Dict[str, int]:
    return dict(Counter(r.group_type.value for r in self._records if self._is_counted(r, include_system)))

  def nested_count(self) -> int:
    return sum(1 for r in self._records if r.container_origin is not None)

  def system_count(self) -> int:
    return sum(1 for r in self._records if r.is_system_principal)

  def get_summary(self) -> dict:
    return {
      "records": len(self._records),
      "principals": len(self.by_principal()),
      "nested_records": self.nested_count(),
      "system_records": self.system_count(),
      "by_category": {category.value: count for category, count in self.by_category().items()},
      "by_group_type": self.by_group_type(),
      "issues": len(self._issues),
      "issues_by_kind": dict(Counter(i.kind for i in self._issues))
    }

  def get_principal_rows(self, include_system: bool = False) -> List[dict]:
    """Flatten by_principal() into table rows, one per principal."""
    rows = []
    for (name, category), locations in self.by_principal(include_system=include_system).items():
      rows.append({
        "GroupName": name,
        "Category": category.value,
        "LocationCount": len(locations),
        "Locations": " | ".join(format_location(loc) for loc in locations)
      })
    return rows

def format_location(location: PrincipalLocation) -> str:
  text = f"{location.node_url} ({location.object_label})"
  if location.container_origin: text += f" via '{location.container_origin}'"
  return text

# ----------------------------------------- END: Aggregator -------------------------------------------------------------------


# ----------------------------------------- START: CSV Functions --------------------------------------------------------------

def csv_escape(value) -> str:
  """Escape value for CSV output. Quotes formula/number-like values and values with separators."""
  if value is None: return ''
  value = str(value)
  if not value: return '""'
  if any(c in value for c in ',"\n\r') or re.match(r'^[+\-=\/]*[\.\d\s\/\:]*$', value):
    return '"' + value.replace('"', '""') + '"'
  return value

def csv_row(row: dict, columns: list) -> str:
  return ','.join(csv_escape(row.get(col, '')) for col in columns)

def _csv_data_lines(report: PermissionReport, include_system: bool) -> List[str]:
  return [csv_row(r.to_row(), CSV_COLUMNS_PERMISSION_REPORT) for r in report.records if include_system or not r.is_system_principal]

def convert_report_to_csv_text(report: PermissionReport, include_system: bool = True) -> str:
  lines = [','.join(CSV_COLUMNS_PERMISSION_REPORT)] + _csv_data_lines(report, include_system)
  return '\n'.join(lines) + '\n'

def write_permission_report_csv(file_path: str, report: PermissionReport, include_system: bool = True) -> int:
  """Write report to CSV file (UTF-8 without BOM). Returns number of data rows written."""
  data_lines = _csv_data_lines(report, include_system)
  with open(file_path, 'w', encoding='utf-8', newline='') as f:
    f.write(','.join(CSV_COLUMNS_PERMISSION_REPORT) + '\n')
    for line in data_lines: f.write(line + '\n')
  return len(data_lines)

# ----------------------------------------- END: CSV Functions ----------------------------------------------------------------
