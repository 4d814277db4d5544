# Common functions for SharePoint permission scanning
# Walks site collections -> subsites -> uniquely permissioned lists, classifies the groups holding
# role assignments, expands SharePoint groups one level, and collects everything in a PermissionReport

import csv, json, os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol
from urllib.parse import unquote, urlparse
from hardcoded_config import PERMISSION_SCAN_HARDCODED_CONFIG
from routers_v2.common_logging_functions_v2 import ScanLogger, pluralize
from routers_v2.common_permission_report_functions_v2 import AssignmentRecord, PermissionReport, ScanIssue, ISSUE_ENTRY_RESOLUTION_FAILURE, ISSUE_EXPANSION_FAILURE, ISSUE_NODE_UNREACHABLE
from routers_v2.common_principal_functions_v2 import EXPANDABLE_MEMBER_CATEGORIES, GroupType, Principal, PrincipalCategory, classify_principal, get_principal_display_name, is_system_principal

# ----------------------------------------- START: Types ----------------------------------------------------------------------

class ConfigurationError(ValueError):
  """Invalid scan input or settings. Raised before any traversal starts."""

class NodeKind(str, Enum):
  ROOT_SITE = "RootSite"
  SUBSITE = "Subsite"

@dataclass(frozen=True)
class TreeNode:
  url: str
  title: str
  kind: NodeKind

  @property
  def display_title(self) -> str:
    if self.title: return self.title
    return PERMISSION_SCAN_HARDCODED_CONFIG.NO_TITLE_MARKER + get_last_url_segment(self.url)

  @property
  def object_label(self) -> str:
    return "Site" if self.kind == NodeKind.ROOT_SITE else "Subsite"

@dataclass(frozen=True)
class ListNode:
  title: str
  has_unique_role_assignments: bool
  hidden: bool = False
  base_template: int = 100

@dataclass(frozen=True)
class AccessControlScope:
  """A site (list_title=None) or one of its lists."""
  node_url: str
  list_title: Optional[str] = None

@dataclass(frozen=True)
class AccessControlEntry:
  """
  One role assignment. Adapters that already expanded Member and RoleDefinitionBindings can
  prefill principal and permission_levels; otherwise the service resolves them on demand.
  """
  principal_id: str
  principal: Optional[Principal] = None
  permission_levels: Optional[tuple] = None

class DirectoryService(Protocol):
  """Remote source of sites, lists, role assignments and group members. Every call may raise."""
  def get_tree_node(self, url: str, kind: NodeKind) -> TreeNode: ...
  def list_child_subsites(self, node_url: str) -> List[TreeNode]: ...
  def list_lists(self, node_url: str) -> List[ListNode]: ...
  def get_access_control_entries(self, scope: AccessControlScope) -> List[AccessControlEntry]: ...
  def resolve_principal(self, scope: AccessControlScope, entry: AccessControlEntry) -> Principal: ...
  def get_permission_levels(self, scope: AccessControlScope, entry: AccessControlEntry) -> List[str]: ...
  def get_group_members(self, group_name: str, node_url: str) -> List[Principal]: ...

@dataclass(frozen=True)
class EmitContext:
  """Where a grant was found; shared by the direct record and any expanded member records."""
  node_url: str
  node_title: str
  object_label: str
  permissions: tuple

# ----------------------------------------- END: Types ------------------------------------------------------------------------


# ----------------------------------------- START: Helpers --------------------------------------------------------------------

def get_last_url_segment(url: str) -> str:
  path = urlparse(url).path.rstrip('/')
  if not path: return urlparse(url).netloc
  return unquote(path.split('/')[-1])

def list_object_label(list_title: str) -> str:
  return f"List: {list_title}"

def _record_issue(report: PermissionReport, logger: ScanLogger, kind: str, node_url: str, message: str) -> None:
  report.add_issue(ScanIssue(kind=kind, node_url=node_url, message=message))
  logger.log_error(f"{kind} node_url='{node_url}' -> {message}")

# ----------------------------------------- END: Helpers ----------------------------------------------------------------------


# ----------------------------------------- START: Input and Settings ---------------------------------------------------------

def parse_root_site_urls(urls: List[str]) -> List[str]:
  """Validate root site URLs. Raises ConfigurationError on empty input, malformed or duplicate URLs."""
  if urls is None: raise ConfigurationError("No root site URLs given.")
  result = []
  seen = set()
  for raw in urls:
    url = (raw or "").strip().rstrip('/')
    if not url: continue
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
      raise ConfigurationError(f"Invalid site URL '{raw}'. Expected 'https://<tenant>.sharepoint.com/sites/<site>'.")
    key = url.lower()
    if key in seen: raise ConfigurationError(f"Duplicate site URL '{url}'.")
    seen.add(key)
    result.append(url)
  if not result: raise ConfigurationError("No root site URLs given.")
  return result

def load_root_site_urls_from_file(file_path: str) -> List[str]:
  """
  Load root site URLs from a text file (one URL per line, '#' comments) or a CSV file with a
  'Url' or 'SiteUrl' column. Returns validated URLs.
  """
  if not os.path.exists(file_path): raise ConfigurationError(f"Site list file not found: '{file_path}'")
  with open(file_path, 'r', encoding='utf-8-sig') as f: content = f.read()
  lines = [line.strip() for line in content.splitlines() if line.strip() and not line.strip().startswith('#')]
  if lines and not lines[0].lower().startswith("https://"):
    reader = csv.DictReader(lines)
    column = next((c for c in (reader.fieldnames or []) if c.strip().lower() in ("url", "siteurl")), None)
    if column is None: raise ConfigurationError(f"CSV file '{file_path}' has no 'Url' or 'SiteUrl' column.")
    lines = [(row.get(column) or "") for row in reader]
  return parse_root_site_urls(lines)

def get_scanner_settings_path(storage_path: str) -> str:
  return os.path.join(storage_path, PERMISSION_SCAN_HARDCODED_CONFIG.SECURITY_SCAN_SETTINGS_FILENAME)

def load_scanner_settings(storage_path: Optional[str], logger: Optional[ScanLogger] = None) -> dict:
  """Load scanner settings merged over defaults; create the file with defaults if missing."""
  settings = dict(PERMISSION_SCAN_HARDCODED_CONFIG.DEFAULT_SECURITY_SCAN_SETTINGS)
  if not storage_path: return settings
  settings_path = get_scanner_settings_path(storage_path)
  if not os.path.exists(settings_path):
    os.makedirs(storage_path, exist_ok=True)
    with open(settings_path, 'w', encoding='utf-8') as f: json.dump(settings, f, indent=2)
    if logger: logger.log_function_output(f"Created default scanner settings file '{settings_path}'")
    return settings
  try:
    with open(settings_path, 'r', encoding='utf-8') as f: loaded = json.load(f)
  except (OSError, json.JSONDecodeError) as e:
    raise ConfigurationError(f"Failed to load scanner settings from '{settings_path}' -> {e}") from e
  if not isinstance(loaded, dict): raise ConfigurationError(f"Scanner settings in '{settings_path}' must be a JSON object.")
  settings.update(loaded)
  if logger: logger.log_function_output(f"Loaded scanner settings from '{settings_path}'")
  return settings

def validate_scanner_settings(settings: dict) -> dict:
  for key in ("ignore_permission_levels", "ignore_lists", "ignore_list_templates"):
    if not isinstance(settings.get(key, []), list): raise ConfigurationError(f"Setting '{key}' must be a list.")
  max_depth = settings.get("max_subsite_depth")
  if not isinstance(max_depth, int) or isinstance(max_depth, bool) or max_depth < 0:
    raise ConfigurationError("Setting 'max_subsite_depth' must be a non-negative integer.")
  return settings

# ----------------------------------------- END: Input and Settings -----------------------------------------------------------


# ----------------------------------------- START: Group Expansion ------------------------------------------------------------

def expand_local_group(service: DirectoryService, group_name: str, context: EmitContext, report: PermissionReport, logger: ScanLogger) -> int:
  """
  Emit one record per directory-backed member of a SharePoint group, tagged with the group name.
  Only one level: member SharePoint groups, users and unknown principals are skipped.
  Returns number of records emitted; a failed member fetch emits nothing.
  """
  try:
    members = service.get_group_members(group_name, context.node_url)
  except Exception as e:
    _record_issue(report, logger, ISSUE_EXPANSION_FAILURE, context.node_url, f"Failed to get members of group_name='{group_name}' -> {e}")
    return 0

  emitted = 0
  for member in members or []:
    if member is None: continue
    try:
      group_type = classify_principal(member.raw_kind, member.login_name)
    except ValueError:
      continue
    if group_type.category not in EXPANDABLE_MEMBER_CATEGORIES: continue
    member_name = get_principal_display_name(member)
    report.add_record(AssignmentRecord(
      node_url=context.node_url,
      node_title=context.node_title,
      object_label=context.object_label,
      principal_name=member_name,
      group_type=group_type,
      login_name=member.login_name or "",
      permissions=context.permissions,
      is_system_principal=is_system_principal(member_name),
      container_origin=group_name
    ))
    emitted += 1
  if emitted: logger.log_function_output(f"  {pluralize(emitted, 'nested group')} found in group_name='{group_name}'")
  return emitted

# ----------------------------------------- END: Group Expansion --------------------------------------------------------------


# ----------------------------------------- START: Node Processing ------------------------------------------------------------

def _process_entry(service: DirectoryService, scope: AccessControlScope, entry: AccessControlEntry, node_title: str, object_label: str, report: PermissionReport, logger: ScanLogger, ignore_permission_levels: set) -> int:
  principal = entry.principal if entry.principal is not None else service.resolve_principal(scope, entry)
  if principal is None: raise ValueError(f"Principal id={entry.principal_id} could not be resolved.")
  display_name = get_principal_display_name(principal)
  group_type = classify_principal(principal.raw_kind, principal.login_name)
  if group_type == GroupType.UNKNOWN: return 0

  levels = entry.permission_levels if entry.permission_levels is not None else service.get_permission_levels(scope, entry)
  permissions = tuple(level for level in (levels or []) if level and level not in ignore_permission_levels)
  if not permissions:
    logger.log_function_output(f"  Skipping '{display_name}': ignored permission levels only")
    return 0

  context = EmitContext(node_url=scope.node_url, node_title=node_title, object_label=object_label, permissions=permissions)
  report.add_record(AssignmentRecord(
    node_url=scope.node_url,
    node_title=node_title,
    object_label=object_label,
    principal_name=display_name,
    group_type=group_type,
    login_name=principal.login_name or "",
    permissions=permissions,
    is_system_principal=is_system_principal(display_name),
    container_origin=None
  ))
  emitted = 1
  if group_type.category == PrincipalCategory.LOCAL_GROUP:
    emitted += expand_local_group(service, display_name, context, report, logger)
  return emitted

def process_access_control_scope(service: DirectoryService, scope: AccessControlScope, node_title: str, object_label: str, report: PermissionReport, logger: ScanLogger, settings: dict) -> int:
  """
  Emit records for all role assignments of a site or list. A failing entry is recorded and skipped.
  Raises when the role assignments themselves cannot be fetched. Returns number of records emitted.
  """
  entries = service.get_access_control_entries(scope)
  ignore_permission_levels = set(settings.get("ignore_permission_levels", []))
  logger.log_function_output(f"{object_label}: {pluralize(len(entries), 'role assignment')} found.")
  emitted = 0
  for entry in entries:
    try:
      emitted += _process_entry(service, scope, entry, node_title, object_label, report, logger, ignore_permission_levels)
    except Exception as e:
      _record_issue(report, logger, ISSUE_ENTRY_RESOLUTION_FAILURE, scope.node_url, f"{object_label}: failed to resolve principal_id='{getattr(entry, 'principal_id', '')}' -> {e}")
  return emitted

def select_lists_to_scan(lists: List[ListNode], settings: dict, logger: Optional[ScanLogger] = None) -> List[ListNode]:
  """
  Lists inheriting permissions would duplicate the owning site's grants and are never scanned.
  Every uniquely permissioned list is scanned unless excluded by 'ignore_lists' or 'ignore_list_templates';
  each exclusion is logged.
  """
  ignore_lists = set(settings.get("ignore_lists", []))
  ignore_templates = set(settings.get("ignore_list_templates", []))
  selected = []
  for lst in lists:
    if not lst.has_unique_role_assignments: continue
    if lst.title in ignore_lists:
      if logger: logger.log_function_output(f"  Skipping list '{lst.title}': in ignore_lists")
      continue
    if lst.base_template in ignore_templates:
      if logger: logger.log_function_output(f"  Skipping list '{lst.title}': template {lst.base_template} in ignore_list_templates")
      continue
    selected.append(lst)
  return selected

def process_tree_node(service: DirectoryService, node: TreeNode, report: PermissionReport, logger: ScanLogger, settings: dict) -> int:
  """Emit the site's own grants, then the grants of its uniquely permissioned lists."""
  node_title = node.display_title
  emitted = process_access_control_scope(service, AccessControlScope(node.url), node_title, node.object_label, report, logger, settings)

  try:
    lists = service.list_lists(node.url)
  except Exception as e:
    _record_issue(report, logger, ISSUE_NODE_UNREACHABLE, node.url, f"Failed to get lists -> {e}")
    return emitted

  lists_to_scan = select_lists_to_scan(lists, settings, logger)
  logger.log_function_output(f"{pluralize(len(lists_to_scan), 'list')} with unique permissions (of {len(lists)}).")
  for lst in lists_to_scan:
    scope = AccessControlScope(node.url, lst.title)
    try:
      emitted += process_access_control_scope(service, scope, node_title, list_object_label(lst.title), report, logger, settings)
    except Exception as e:
      _record_issue(report, logger, ISSUE_NODE_UNREACHABLE, node.url, f"Failed to get role assignments of list_title='{lst.title}' -> {e}")
  return emitted

# ----------------------------------------- END: Node Processing --------------------------------------------------------------


# ----------------------------------------- START: Tree Traversal -------------------------------------------------------------

class NodeState(str, Enum):
  UNVISITED = "Unvisited"
  PROCESSING = "Processing"
  VISITED = "Visited"

def traverse_site_tree(service: DirectoryService, root_urls: List[str], report: PermissionReport, logger: ScanLogger, settings: dict) -> dict:
  """
  Depth-first, pre-order walk over all root sites and their subsites using an explicit stack.
  A node's own grants are emitted before any of its children. Each URL is processed at most once.
  Unreachable nodes are recorded and skipped; siblings continue. Returns traversal stats.
  """
  max_depth = settings.get("max_subsite_depth", PERMISSION_SCAN_HARDCODED_CONFIG.DEFAULT_SECURITY_SCAN_SETTINGS["max_subsite_depth"])
  node_states = {}
  stats = {"sites_visited": 0, "sites_failed": 0, "records_emitted": 0}

  # Stack holds (url, kind, depth, prefetched TreeNode or None); pushed in reverse to keep input order
  stack = [(url, NodeKind.ROOT_SITE, 0, None) for url in reversed(root_urls)]
  while stack:
    url, kind, depth, node = stack.pop()
    key = url.rstrip('/').lower()
    if node_states.get(key, NodeState.UNVISITED) != NodeState.UNVISITED:
      logger.log_warning(f"Skipping already visited site url='{url}'")
      continue
    node_states[key] = NodeState.PROCESSING

    logger.log_function_header(f"{kind.value} url='{url}'")
    try:
      if node is None: node = service.get_tree_node(url, kind)
      stats["records_emitted"] += process_tree_node(service, node, report, logger, settings)
    except Exception as e:
      stats["sites_failed"] += 1
      _record_issue(report, logger, ISSUE_NODE_UNREACHABLE, url, f"Failed to scan site -> {e}")
      node_states[key] = NodeState.VISITED
      logger.log_function_footer()
      continue

    children = []
    if depth >= max_depth:
      logger.log_warning(f"Max subsite depth ({max_depth}) reached, skipping subsites of url='{url}'")
    else:
      try:
        children = service.list_child_subsites(url) or []
      except Exception as e:
        _record_issue(report, logger, ISSUE_NODE_UNREACHABLE, url, f"Failed to get subsites -> {e}")
    if children: logger.log_function_output(f"{pluralize(len(children), 'subsite')} found.")
    for child in reversed(children):
      stack.append((child.url, NodeKind.SUBSITE, depth + 1, TreeNode(child.url, child.title, NodeKind.SUBSITE)))

    node_states[key] = NodeState.VISITED
    stats["sites_visited"] += 1
    logger.log_function_footer()
  return stats

# ----------------------------------------- END: Tree Traversal ---------------------------------------------------------------


# ----------------------------------------- START: Main Scanner ---------------------------------------------------------------

def run_permission_scan(root_urls: List[str], service: DirectoryService, settings: Optional[dict] = None, logger: Optional[ScanLogger] = None, report: Optional[PermissionReport] = None) -> PermissionReport:
  """
  Scan all root sites and return the filled PermissionReport.

  Args:
    root_urls: Site collection URLs; validated before anything is fetched
    service: DirectoryService implementation (SharePoint or in-memory)
    settings: Scanner settings; missing keys fall back to defaults
    logger: ScanLogger; a new one is created if omitted
    report: Existing report to append to; a new one is created if omitted

  Raises:
    ConfigurationError: invalid root URLs or settings (nothing has been scanned yet)
  """
  if logger is None: logger = ScanLogger.create()
  merged_settings = dict(PERMISSION_SCAN_HARDCODED_CONFIG.DEFAULT_SECURITY_SCAN_SETTINGS)
  merged_settings.update(settings or {})
  validate_scanner_settings(merged_settings)
  urls = parse_root_site_urls(root_urls)
  if report is None: report = PermissionReport()

  logger.log_function_header("run_permission_scan()")
  logger.log_function_output(f"Scanning {pluralize(len(urls), 'root site')}...")
  stats = traverse_site_tree(service, urls, report, logger, merged_settings)
  logger.log_function_output(f"Scan complete. {pluralize(stats['sites_visited'], 'site')} scanned, {stats['sites_failed']} failed, {pluralize(len(report), 'record')}, {pluralize(len(report.issues), 'issue')}.")
  logger.log_function_footer()
  return report

# ----------------------------------------- END: Main Scanner -----------------------------------------------------------------
