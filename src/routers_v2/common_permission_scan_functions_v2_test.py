# Tests for common_permission_scan_functions_v2.py
# Run: python -m pytest src/routers_v2/common_permission_scan_functions_v2_test.py
# Or:  python src/routers_v2/common_permission_scan_functions_v2_test.py
#
# Uses an in-memory directory service; no SharePoint tenant required.

import json, sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from routers_v2 import common_permission_scan_functions_v2 as psf
from routers_v2.common_logging_functions_v2 import ScanLogger
from routers_v2.common_permission_report_functions_v2 import ISSUE_ENTRY_RESOLUTION_FAILURE, ISSUE_EXPANSION_FAILURE, ISSUE_NODE_UNREACHABLE, PermissionReport
from routers_v2.common_permission_scan_functions_v2 import AccessControlEntry, AccessControlScope, ConfigurationError, ListNode, NodeKind, TreeNode
from routers_v2.common_principal_functions_v2 import GroupType, Principal, PrincipalCategory, RawPrincipalKind

ROOT_URL = "https://contoso.sharepoint.com/sites/hr"

# ----------------------------------------- START: Fake Directory Service --------------------------------------------

def make_principal(principal_id, name, login, raw_kind) -> Principal:
  return Principal(principal_id=str(principal_id), display_name=name, login_name=login, raw_kind=raw_kind)

def entra_group(principal_id, name) -> Principal:
  return make_principal(principal_id, name, f"c:0t.c|tenant|{principal_id:08d}-0000-0000-0000-000000000000", RawPrincipalKind.SECURITY_GROUP)

def sharepoint_group(principal_id, name) -> Principal:
  return make_principal(principal_id, name, name, RawPrincipalKind.SHAREPOINT_GROUP)

def user(principal_id, name) -> Principal:
  return make_principal(principal_id, name, f"i:0#.f|membership|{name.lower()}@contoso.com", RawPrincipalKind.USER)

class FakeDirectoryService:
  """In-memory site tree. Records every call in `calls` as (method, key)."""

  def __init__(self):
    self.titles = {}
    self.children = {}
    self.lists = {}
    self.assignments = {}
    self.group_members = {}
    self.unreachable_urls = set()
    self.failing_principal_ids = set()
    self.failing_groups = set()
    self.calls = []

  def add_site(self, url, title="", parent=None):
    self.titles[url] = title
    self.children.setdefault(url, [])
    self.lists.setdefault(url, [])
    if parent: self.children[parent].append(url)
    return url

  def add_list(self, url, title, unique=True, hidden=False, base_template=101):
    self.lists[url].append(ListNode(title=title, has_unique_role_assignments=unique, hidden=hidden, base_template=base_template))

  def grant(self, url, principal, levels, list_title=None):
    self.assignments.setdefault((url, list_title), []).append((principal, list(levels)))

  def set_members(self, url, group_name, members):
    self.group_members[(url, group_name)] = list(members)

  def _check(self, url):
    if url in self.unreachable_urls: raise ConnectionError(f"503 Service Unavailable for '{url}'")

  def get_tree_node(self, url, kind):
    self.calls.append(("get_tree_node", url))
    self._check(url)
    return TreeNode(url=url, title=self.titles[url], kind=kind)

  def list_child_subsites(self, node_url):
    self.calls.append(("list_child_subsites", node_url))
    return [TreeNode(url=c, title=self.titles[c], kind=NodeKind.SUBSITE) for c in self.children.get(node_url, [])]

  def list_lists(self, node_url):
    self.calls.append(("list_lists", node_url))
    return list(self.lists.get(node_url, []))

  def get_access_control_entries(self, scope):
    self.calls.append(("get_access_control_entries", (scope.node_url, scope.list_title)))
    self._check(scope.node_url)
    return [AccessControlEntry(principal_id=p.principal_id if p else "0") for p, _ in self.assignments.get((scope.node_url, scope.list_title), [])]

  def _find(self, scope, entry):
    for principal, levels in self.assignments.get((scope.node_url, scope.list_title), []):
      if principal and principal.principal_id == entry.principal_id: return principal, levels
    return None, []

  def resolve_principal(self, scope, entry):
    self.calls.append(("resolve_principal", entry.principal_id))
    if entry.principal_id in self.failing_principal_ids: raise TimeoutError(f"Timeout resolving principal {entry.principal_id}")
    return self._find(scope, entry)[0]

  def get_permission_levels(self, scope, entry):
    return self._find(scope, entry)[1]

  def get_group_members(self, group_name, node_url):
    self.calls.append(("get_group_members", (node_url, group_name)))
    if group_name in self.failing_groups: raise PermissionError(f"403 Forbidden for group '{group_name}'")
    return list(self.group_members.get((node_url, group_name), []))

def build_scenario_service() -> FakeDirectoryService:
  """Root site with a direct Entra ID group and a SharePoint group that contains one Entra ID group."""
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Edit"])
  service.grant(ROOT_URL, sharepoint_group(3, "Site Members"), ["Contribute"])
  service.set_members(ROOT_URL, "Site Members", [entra_group(12, "All Staff"), user(40, "Alice")])
  return service

def scan(service, urls=None, settings=None) -> PermissionReport:
  return psf.run_permission_scan(urls or [ROOT_URL], service, settings, ScanLogger.create())

# ----------------------------------------- END: Fake Directory Service ----------------------------------------------


# ----------------------------------------- START: Test Cases --------------------------------------------------------

def test_direct_grant_and_nested_group_scenario():
  # 3 records: the SharePoint group's own grant is kept as a record; the two directory groups are what
  # by_principal() reports, since LocalGroup records are excluded from that view
  report = scan(build_scenario_service())
  non_local = [r for r in report.records if r.category != PrincipalCategory.LOCAL_GROUP]
  assert [(r.principal_name, r.group_type.value, r.container_origin) for r in non_local] == [
    ("Editors", "M365/EntraIDGroup", None),
    ("All Staff", "M365/EntraIDGroup", "Site Members"),
  ]
  assert set(report.by_principal().keys()) == {("Editors", PrincipalCategory.DIRECTORY_GROUP), ("All Staff", PrincipalCategory.DIRECTORY_GROUP)}
  # The SharePoint group itself is emitted once as a direct grant, before its members
  assert [r.principal_name for r in report.records] == ["Editors", "Site Members", "All Staff"]
  assert report.records[1].group_type == GroupType.SHAREPOINT_GROUP
  assert report.records[2].permissions == ("Contribute",)
  assert all(r.object_label == "Site" and r.node_title == "HR" for r in report.records)
  assert report.issues == ()

def test_nested_records_are_never_local_groups():
  service = build_scenario_service()
  service.set_members(ROOT_URL, "Site Members", [
    entra_group(12, "All Staff"),
    sharepoint_group(5, "Site Owners"),
    make_principal(13, "Legacy Admins", "CONTOSO\\legacy-admins", RawPrincipalKind.SECURITY_GROUP),
    make_principal(14, "Project X", "c:0o.c|federateddirectoryclaimprovider|abc", RawPrincipalKind.UNIFIED_GROUP),
    make_principal(15, "No Kind", "", None),
    None,
  ])
  service.set_members(ROOT_URL, "Site Owners", [entra_group(16, "Should Not Appear")])
  report = scan(service)
  nested = [r for r in report.records if r.container_origin is not None]
  assert [r.principal_name for r in nested] == ["All Staff", "Legacy Admins", "Project X"]
  assert all(r.category in (PrincipalCategory.DIRECTORY_GROUP, PrincipalCategory.SECURITY_GROUP) for r in nested)
  # Member SharePoint groups are not expanded further
  assert ("get_group_members", (ROOT_URL, "Site Owners")) not in service.calls

def test_empty_title_falls_back_to_last_url_segment():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "")
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Edit"])
  report = scan(service)
  assert report.records[0].node_title == "[NoTitle] hr"
  assert TreeNode("https://contoso.sharepoint.com/sites/Team%20A/", "", NodeKind.SUBSITE).display_title == "[NoTitle] Team A"
  assert TreeNode("https://contoso.sharepoint.com", "", NodeKind.ROOT_SITE).display_title == "[NoTitle] contoso.sharepoint.com"

def test_user_grant_emits_no_record():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, user(40, "Alice"), ["Full Control"])
  report = scan(service)
  assert len(report) == 0
  assert report.issues == ()

def test_failing_entry_is_skipped_and_others_continue():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Edit"])
  service.grant(ROOT_URL, entra_group(12, "Readers"), ["Read"])
  service.grant(ROOT_URL, entra_group(13, "Approvers"), ["Approve"])
  service.failing_principal_ids.add("12")
  report = scan(service)
  assert [r.principal_name for r in report.records] == ["Editors", "Approvers"]
  assert [i.kind for i in report.issues] == [ISSUE_ENTRY_RESOLUTION_FAILURE]

def test_prefetched_entries_skip_secondary_fetch():
  class PrefetchedService(FakeDirectoryService):
    def get_access_control_entries(self, scope):
      return [AccessControlEntry(principal_id=p.principal_id, principal=p, permission_levels=tuple(levels)) for p, levels in self.assignments.get((scope.node_url, scope.list_title), [])]
  service = PrefetchedService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Edit", "Approve"])
  report = scan(service)
  assert report.records[0].permissions == ("Edit", "Approve")
  assert not any(call[0] == "resolve_principal" for call in service.calls)

def test_inherited_lists_are_never_scanned():
  service = build_scenario_service()
  service.add_list(ROOT_URL, "Documents", unique=False)
  service.add_list(ROOT_URL, "Contracts", unique=True)
  service.add_list(ROOT_URL, "Hidden Stuff", unique=True, hidden=True)
  service.add_list(ROOT_URL, "Workflow Tasks", unique=True, base_template=171)
  service.grant(ROOT_URL, entra_group(20, "Lawyers"), ["Edit"], list_title="Contracts")
  service.grant(ROOT_URL, entra_group(21, "Everybody Docs"), ["Read"], list_title="Documents")
  report = scan(service)
  labels = {r.object_label for r in report.records}
  assert "List: Contracts" in labels
  assert "List: Documents" not in labels
  scanned_lists = [c[1][1] for c in service.calls if c[0] == "get_access_control_entries" and c[1][1]]
  assert scanned_lists == ["Contracts", "Hidden Stuff", "Workflow Tasks"]

def test_uniquely_permissioned_lists_of_any_template_are_scanned():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.add_list(ROOT_URL, "Project Tasks", unique=True, base_template=107)
  service.add_list(ROOT_URL, "Team Calendar", unique=True, base_template=106)
  service.grant(ROOT_URL, entra_group(30, "Project Team"), ["Contribute"], list_title="Project Tasks")
  service.grant(ROOT_URL, entra_group(31, "Board"), ["Read"], list_title="Team Calendar")
  report = scan(service)
  assert {r.object_label for r in report.records} == {"List: Project Tasks", "List: Team Calendar"}
  assert report.issues == ()

def test_ignore_list_templates_setting_is_logged():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.add_list(ROOT_URL, "Project Tasks", unique=True, base_template=107)
  service.add_list(ROOT_URL, "Contracts", unique=True, base_template=101)
  service.grant(ROOT_URL, entra_group(30, "Project Team"), ["Contribute"], list_title="Project Tasks")
  service.grant(ROOT_URL, entra_group(20, "Lawyers"), ["Edit"], list_title="Contracts")
  logger = ScanLogger.create(collect_lines=True)
  report = psf.run_permission_scan([ROOT_URL], service, {"ignore_list_templates": [107]}, logger)
  assert [r.object_label for r in report.records] == ["List: Contracts"]
  assert any("Skipping list 'Project Tasks'" in line for line in logger.lines)

def test_ignore_lists_setting():
  service = build_scenario_service()
  service.add_list(ROOT_URL, "Contracts", unique=True)
  service.grant(ROOT_URL, entra_group(20, "Lawyers"), ["Edit"], list_title="Contracts")
  report = scan(service, settings={"ignore_lists": ["Contracts"]})
  assert all(r.object_label == "Site" for r in report.records)

def test_limited_access_only_grants_are_skipped():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Limited Access"])
  service.grant(ROOT_URL, entra_group(12, "Readers"), ["Read", "Limited Access"])
  report = scan(service)
  assert [(r.principal_name, r.permissions) for r in report.records] == [("Readers", ("Read",))]
  report = scan(service, settings={"ignore_permission_levels": []})
  assert len(report) == 2

def test_expansion_failure_keeps_direct_record():
  service = build_scenario_service()
  service.failing_groups.add("Site Members")
  report = scan(service)
  assert [r.principal_name for r in report.records] == ["Editors", "Site Members"]
  assert [i.kind for i in report.issues] == [ISSUE_EXPANSION_FAILURE]

def test_traversal_is_depth_first_pre_order_and_visits_each_site_once():
  service = FakeDirectoryService()
  root_b = "https://contoso.sharepoint.com/sites/it"
  service.add_site(ROOT_URL, "HR")
  service.add_site(f"{ROOT_URL}/a", "A", parent=ROOT_URL)
  service.add_site(f"{ROOT_URL}/a/a1", "A1", parent=f"{ROOT_URL}/a")
  service.add_site(f"{ROOT_URL}/b", "B", parent=ROOT_URL)
  service.add_site(root_b, "IT")
  for i, url in enumerate([ROOT_URL, f"{ROOT_URL}/a", f"{ROOT_URL}/a/a1", f"{ROOT_URL}/b", root_b]):
    service.grant(url, entra_group(100 + i, f"Group {i}"), ["Read"])
  report = scan(service, urls=[ROOT_URL, root_b])
  assert [r.node_title for r in report.records] == ["HR", "A", "A1", "B", "IT"]
  assert [r.object_label for r in report.records] == ["Site", "Subsite", "Subsite", "Subsite", "Site"]
  site_scans = [c[1][0] for c in service.calls if c[0] == "get_access_control_entries"]
  assert len(site_scans) == len(set(site_scans)) == 5

def test_duplicate_child_url_is_processed_once():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.add_site(f"{ROOT_URL}/a", "A", parent=ROOT_URL)
  service.children[ROOT_URL].append(f"{ROOT_URL}/a")
  service.grant(f"{ROOT_URL}/a", entra_group(11, "Editors"), ["Edit"])
  report = scan(service)
  assert len(report) == 1

def test_unreachable_subsite_does_not_abort_scan():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.add_site(f"{ROOT_URL}/broken", "Broken", parent=ROOT_URL)
  service.add_site(f"{ROOT_URL}/broken/child", "Child", parent=f"{ROOT_URL}/broken")
  service.add_site(f"{ROOT_URL}/ok", "OK", parent=ROOT_URL)
  service.grant(ROOT_URL, entra_group(11, "Editors"), ["Edit"])
  service.grant(f"{ROOT_URL}/ok", entra_group(12, "Readers"), ["Read"])
  service.unreachable_urls.add(f"{ROOT_URL}/broken")
  report = scan(service)
  assert [r.node_title for r in report.records] == ["HR", "OK"]
  assert [(i.kind, i.node_url) for i in report.issues] == [(ISSUE_NODE_UNREACHABLE, f"{ROOT_URL}/broken")]

def test_unreachable_root_continues_with_next_root():
  service = FakeDirectoryService()
  root_b = "https://contoso.sharepoint.com/sites/it"
  service.add_site(ROOT_URL, "HR")
  service.add_site(root_b, "IT")
  service.grant(root_b, entra_group(11, "Admins"), ["Full Control"])
  service.unreachable_urls.add(ROOT_URL)
  report = scan(service, urls=[ROOT_URL, root_b])
  assert [r.node_title for r in report.records] == ["IT"]
  assert len(report.issues) == 1

def test_max_subsite_depth():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.add_site(f"{ROOT_URL}/a", "A", parent=ROOT_URL)
  service.grant(f"{ROOT_URL}/a", entra_group(11, "Editors"), ["Edit"])
  report = scan(service, settings={"max_subsite_depth": 0})
  assert len(report) == 0
  assert ("list_child_subsites", ROOT_URL) not in service.calls

def test_system_principals_are_flagged_not_dropped():
  service = FakeDirectoryService()
  service.add_site(ROOT_URL, "HR")
  service.grant(ROOT_URL, make_principal(9, "Everyone except external users", "c:0-.f|rolemanager|spo-grid-all-users/abc", RawPrincipalKind.SECURITY_GROUP), ["Read"])
  report = scan(service)
  assert len(report) == 1
  assert report.records[0].is_system_principal is True
  assert report.system_count() == 1
  assert report.by_category() == {}

def test_invalid_root_urls_fail_before_traversal():
  service = build_scenario_service()
  for urls in ([], ["   "], ["http://contoso.sharepoint.com/sites/hr"], ["not a url"], [ROOT_URL, ROOT_URL + "/"]):
    with pytest.raises(ConfigurationError):
      scan(service, urls=urls) if urls else psf.run_permission_scan(urls, service, None, ScanLogger.create())
  assert service.calls == []

def test_invalid_settings_fail_before_traversal():
  service = build_scenario_service()
  with pytest.raises(ConfigurationError):
    scan(service, settings={"max_subsite_depth": -1})
  with pytest.raises(ConfigurationError):
    scan(service, settings={"ignore_lists": "Documents"})
  assert service.calls == []

def test_load_root_site_urls_from_text_and_csv(tmp_path):
  text_file = tmp_path / "sites.txt"
  text_file.write_text(f"# HR and IT\n{ROOT_URL}/\n\nhttps://contoso.sharepoint.com/sites/it\n", encoding="utf-8")
  assert psf.load_root_site_urls_from_file(str(text_file)) == [ROOT_URL, "https://contoso.sharepoint.com/sites/it"]

  csv_file = tmp_path / "sites.csv"
  csv_file.write_text(f"Title,Url\nHR,{ROOT_URL}\nIT,https://contoso.sharepoint.com/sites/it\n", encoding="utf-8")
  assert psf.load_root_site_urls_from_file(str(csv_file)) == [ROOT_URL, "https://contoso.sharepoint.com/sites/it"]

  bad_csv = tmp_path / "bad.csv"
  bad_csv.write_text("Title,Address\nHR,x\n", encoding="utf-8")
  with pytest.raises(ConfigurationError):
    psf.load_root_site_urls_from_file(str(bad_csv))
  with pytest.raises(ConfigurationError):
    psf.load_root_site_urls_from_file(str(tmp_path / "missing.txt"))

def test_load_scanner_settings(tmp_path):
  settings = psf.load_scanner_settings(str(tmp_path))
  assert settings["ignore_permission_levels"] == ["Limited Access"]
  settings_path = Path(psf.get_scanner_settings_path(str(tmp_path)))
  assert settings_path.exists()

  settings_path.write_text(json.dumps({"ignore_lists": ["Style Library"]}), encoding="utf-8")
  settings = psf.load_scanner_settings(str(tmp_path))
  assert settings["ignore_lists"] == ["Style Library"]
  assert settings["max_subsite_depth"] == 10

  settings_path.write_text("{not json", encoding="utf-8")
  with pytest.raises(ConfigurationError):
    psf.load_scanner_settings(str(tmp_path))

def test_report_can_be_appended_across_scans():
  report = PermissionReport()
  psf.run_permission_scan([ROOT_URL], build_scenario_service(), None, ScanLogger.create(), report)
  psf.run_permission_scan([ROOT_URL], build_scenario_service(), None, ScanLogger.create(), report)
  assert len(report) == 6

def test_process_access_control_scope_for_list():
  service = build_scenario_service()
  service.grant(ROOT_URL, entra_group(20, "Lawyers"), ["Edit"], list_title="Contracts")
  report = PermissionReport()
  emitted = psf.process_access_control_scope(service, AccessControlScope(ROOT_URL, "Contracts"), "HR", psf.list_object_label("Contracts"), report, ScanLogger.create(), {})
  assert emitted == 1
  assert report.records[0].object_label == "List: Contracts"

# ----------------------------------------- END: Test Cases ----------------------------------------------------------


# ----------------------------------------- START: Main --------------------------------------------------------------

def main():
  sys.exit(pytest.main([__file__, "-q"]))

if __name__ == "__main__":
  main()

# ----------------------------------------- END: Main ----------------------------------------------------------------
