# Common functions for SharePoint operations using Office365-REST-Python-Client
# https://pypi.org/project/Office365-REST-Python-Client/#Working-with-SharePoint-API
# Session provider (certificate app-only auth) and DirectoryService implementation for permission scans
import os
from typing import Callable, Dict, List, Optional
from office365.sharepoint.client_context import ClientContext
from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.backends import default_backend
from routers_v2.common_permission_scan_functions_v2 import AccessControlEntry, AccessControlScope, ListNode, NodeKind, TreeNode
from routers_v2.common_principal_functions_v2 import Principal, raw_kind_from_principal_type

def get_or_create_pem_from_pfx(cert_path: str, cert_password: str) -> tuple[str, str]:
  """
  Convert a PFX certificate to PEM format.
  Only recreates the PEM file if it doesn't exist or has a different timestamp than the PFX file.

  Args:
    cert_path: Path to the PFX certificate file
    cert_password: Password for the PFX certificate

  Returns:
    tuple: (pem_file_path, certificate_thumbprint)
  """
  pem_file = cert_path.replace('.pfx', '.pem')
  pfx_mtime = os.path.getmtime(cert_path)

  needs_conversion = True
  if os.path.exists(pem_file):
    if os.path.getmtime(pem_file) == pfx_mtime: needs_conversion = False

  with open(cert_path, 'rb') as f: pfx_data = f.read()
  private_key, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, cert_password.encode() if cert_password else None, backend=default_backend())

  if needs_conversion:
    with open(pem_file, 'wb') as f:
      f.write(private_key.private_bytes(encoding=Encoding.PEM, format=PrivateFormat.PKCS8, encryption_algorithm=NoEncryption()))
      f.write(certificate.public_bytes(Encoding.PEM))
    # PEM timestamp mirrors PFX so the next call can skip conversion
    os.utime(pem_file, (pfx_mtime, pfx_mtime))

  thumbprint = certificate.fingerprint(certificate.signature_hash_algorithm).hex().upper()
  return pem_file, thumbprint

def connect_to_site_using_client_id_and_certificate(site_url: str, client_id: str, tenant_id: str, cert_path: str, cert_password: str) -> ClientContext:
  """
  Connect to a SharePoint site using certificate-based authentication (App-Only authentication).
  Supports Sites.Selected permissions; the library handles MSAL token acquisition internally.
  """
  pem_file, thumbprint = get_or_create_pem_from_pfx(cert_path, cert_password)
  return ClientContext(site_url).with_client_certificate(tenant=tenant_id, client_id=client_id, thumbprint=thumbprint, cert_path=pem_file)


# ----------------------------------------- START: Session Provider -----------------------------------------------------------

class SharePointSessionProvider:
  """Hands out one authenticated ClientContext per site URL. Contexts are created lazily and cached for the scan."""

  def __init__(self, client_id: str, tenant_id: str, cert_path: str, cert_password: str, context_factory: Optional[Callable[[str], ClientContext]] = None):
    self.client_id = client_id
    self.tenant_id = tenant_id
    self.cert_path = cert_path
    self.cert_password = cert_password
    self._context_factory = context_factory
    self._contexts: Dict[str, ClientContext] = {}

  def get_context(self, site_url: str) -> ClientContext:
    key = site_url.rstrip('/').lower()
    if key not in self._contexts:
      if self._context_factory: self._contexts[key] = self._context_factory(site_url)
      else: self._contexts[key] = connect_to_site_using_client_id_and_certificate(site_url, self.client_id, self.tenant_id, self.cert_path, self.cert_password)
    return self._contexts[key]

  def reset(self) -> None:
    self._contexts.clear()

# ----------------------------------------- END: Session Provider -------------------------------------------------------------


# ----------------------------------------- START: Directory Service ----------------------------------------------------------

def convert_sharepoint_principal(member) -> Principal:
  """Build a Principal from an office365 User/Group/Principal object."""
  login_name = member.properties.get("LoginName", "") or ""
  return Principal(
    principal_id=str(member.properties.get("Id", "")),
    display_name=member.properties.get("Title", "") or "",
    login_name=login_name,
    raw_kind=raw_kind_from_principal_type(member.properties.get("PrincipalType"), login_name)
  )

def get_binding_names(bindings) -> List[str]:
  return [b.properties.get('Name', '') for b in bindings if b.properties.get('Name', '')]

class SharePointDirectoryService:
  """DirectoryService backed by the SharePoint REST API. Every call is scoped to one site's ClientContext."""

  def __init__(self, session_provider: SharePointSessionProvider):
    self.session_provider = session_provider

  def _securable(self, scope: AccessControlScope):
    web = self.session_provider.get_context(scope.node_url).web
    if scope.list_title is None: return web
    return web.lists.get_by_title(scope.list_title)

  def get_tree_node(self, url: str, kind: NodeKind) -> TreeNode:
    web = self.session_provider.get_context(url).web.get().select(["Title", "Url"]).execute_query()
    return TreeNode(url=url, title=web.properties.get("Title", "") or "", kind=kind)

  def list_child_subsites(self, node_url: str) -> List[TreeNode]:
    webs = self.session_provider.get_context(node_url).web.webs.get().select(["Title", "Url"]).execute_query()
    return [TreeNode(url=w.properties.get("Url", ""), title=w.properties.get("Title", "") or "", kind=NodeKind.SUBSITE) for w in webs]

  def list_lists(self, node_url: str) -> List[ListNode]:
    lists = self.session_provider.get_context(node_url).web.lists.get().select(["Title", "BaseTemplate", "Hidden", "HasUniqueRoleAssignments"]).execute_query()
    return [ListNode(
      title=lst.properties.get("Title", ""),
      has_unique_role_assignments=bool(lst.properties.get("HasUniqueRoleAssignments", False)),
      hidden=bool(lst.properties.get("Hidden", False)),
      base_template=lst.properties.get("BaseTemplate", 0)
    ) for lst in lists]

  def get_access_control_entries(self, scope: AccessControlScope) -> List[AccessControlEntry]:
    role_assignments = self._securable(scope).role_assignments.get().expand(["Member", "RoleDefinitionBindings"]).execute_query()
    entries = []
    for ra in role_assignments:
      member = ra.member
      principal = convert_sharepoint_principal(member) if member is not None and member.properties else None
      bindings = ra.role_definition_bindings
      levels = tuple(get_binding_names(bindings)) if bindings is not None and len(bindings) > 0 else None
      entries.append(AccessControlEntry(principal_id=str(ra.properties.get("PrincipalId", "")), principal=principal, permission_levels=levels))
    return entries

  def resolve_principal(self, scope: AccessControlScope, entry: AccessControlEntry) -> Principal:
    ctx = self.session_provider.get_context(scope.node_url)
    principal_id = int(entry.principal_id)
    try:
      user = ctx.web.site_users.get_by_id(principal_id).get().execute_query()
      return convert_sharepoint_principal(user)
    except Exception:
      # Not a user; SharePoint groups live in a separate collection
      group = ctx.web.site_groups.get_by_id(principal_id).get().execute_query()
      return convert_sharepoint_principal(group)

  def get_permission_levels(self, scope: AccessControlScope, entry: AccessControlEntry) -> List[str]:
    ra = self._securable(scope).role_assignments.get_by_principal_id(int(entry.principal_id))
    bindings = ra.role_definition_bindings.get().execute_query()
    return get_binding_names(bindings)

  def get_group_members(self, group_name: str, node_url: str) -> List[Principal]:
    users = self.session_provider.get_context(node_url).web.site_groups.get_by_name(group_name).users.get().execute_query()
    return [convert_sharepoint_principal(u) for u in users]

# ----------------------------------------- END: Directory Service ------------------------------------------------------------
