# Permissions Router V2 - SharePoint permission report
# Endpoints: /v2/permissions, /v2/permissions/scan

import asyncio, os, textwrap
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from routers_v2.common_logging_functions_v2 import ScanLogger
from routers_v2.common_permission_report_functions_v2 import PermissionReport, convert_report_to_csv_text
from routers_v2.common_permission_scan_functions_v2 import ConfigurationError, load_scanner_settings, run_permission_scan
from routers_v2.common_sharepoint_functions_v2 import SharePointDirectoryService, SharePointSessionProvider
from routers_v2.common_ui_functions_v2 import generate_router_docs_page, generate_endpoint_docs, json_result, html_result

router = APIRouter()
config = None
router_prefix = None
router_name = "permissions"
main_page_nav_html = '<a href="/">Back to Main Page</a> | <a href="{router_prefix}/permissions">Permissions</a>'

def set_config(app_config, prefix):
  global config, router_prefix
  config = app_config
  router_prefix = prefix

def get_persistent_storage_path() -> str:
  return getattr(config, 'LOCAL_PERSISTENT_STORAGE_PATH', None) or ''

def get_nav_html() -> str:
  return main_page_nav_html.replace("{router_prefix}", router_prefix or "")

def create_directory_service() -> SharePointDirectoryService:
  """Build the SharePoint directory service from crawler credentials. Raises ConfigurationError if incomplete."""
  client_id = getattr(config, 'CRAWLER_CLIENT_ID', None)
  tenant_id = getattr(config, 'CRAWLER_TENANT_ID', None)
  cert_file = getattr(config, 'CRAWLER_CLIENT_CERTIFICATE_PFX_FILE', None)
  cert_password = getattr(config, 'CRAWLER_CLIENT_CERTIFICATE_PASSWORD', None)
  if not all([client_id, tenant_id, cert_file]):
    raise ConfigurationError("Missing crawler credentials (CRAWLER_CLIENT_ID, CRAWLER_TENANT_ID, CRAWLER_CLIENT_CERTIFICATE_PFX_FILE).")
  cert_path = os.path.join(get_persistent_storage_path(), cert_file)
  return SharePointDirectoryService(SharePointSessionProvider(client_id, tenant_id, cert_path, cert_password or ""))

def get_site_urls_from_request(request: Request) -> list:
  """Accept repeated site_url params and comma-separated lists."""
  urls = []
  for value in request.query_params.getlist("site_url"):
    urls.extend(part.strip() for part in value.split(",") if part.strip())
  return urls

def build_view_data(report: PermissionReport, view: str, include_system: bool, log_lines: list):
  if view == "summary": return {**report.get_summary(), "log": log_lines}
  if view == "principals": return report.get_principal_rows(include_system=include_system)
  rows = [r.to_row() for r in report.records if include_system or not r.is_system_principal]
  return rows


# ----------------------------------------- START: /permissions endpoint -------------------------------------------------

@router.get(f"/{router_name}")
async def permissions_root(request: Request):
  """Permissions Router - SharePoint permission report"""
  logger = ScanLogger.create()
  logger.log_function_header("permissions_root()")
  request_params = dict(request.query_params)

  if len(request_params) == 0:
    logger.log_function_footer()
    endpoints = [
      {"path": "", "desc": "Scanner settings", "formats": ["json", "html"]},
      {"path": "/scan", "desc": "Scan site collections and return the permission report", "formats": []}
    ]
    return HTMLResponse(generate_router_docs_page(
      title="Permissions",
      description="Group permission report for SharePoint sites, subsites and lists with unique permissions.",
      router_prefix=f"{router_prefix}/{router_name}",
      endpoints=endpoints,
      navigation_html=get_nav_html()
    ))

  format_param = request_params.get("format", "json")
  try:
    settings = load_scanner_settings(get_persistent_storage_path(), logger)
  except ConfigurationError as e:
    logger.log_function_footer()
    return json_result(False, str(e), {})
  logger.log_function_footer()
  if format_param == "html": return html_result("Scanner Settings", settings, get_nav_html())
  return json_result(True, "", settings)

# ----------------------------------------- END: /permissions endpoint ---------------------------------------------------


# ----------------------------------------- START: /permissions/scan endpoint --------------------------------------------

@router.get(f"/{router_name}/scan")
async def scan_permissions_endpoint(request: Request):
  """
  Scan SharePoint site collections, their subsites and lists with unique permissions.

  Parameters:
  - site_url: Root site URL (required, repeatable or comma-separated)
  - format: Response format (json, html, csv)
  - view: records (default), principals, summary
  - include_system: true to include system principals (default: false)

  Examples:
  {router_prefix}/permissions/scan?site_url=https://contoso.sharepoint.com/sites/hr
  {router_prefix}/permissions/scan?site_url=https://contoso.sharepoint.com/sites/hr&view=principals&format=html
  {router_prefix}/permissions/scan?site_url=https://contoso.sharepoint.com/sites/hr,https://contoso.sharepoint.com/sites/it&format=csv
  """
  function_name = "scan_permissions_endpoint()"
  request_params = dict(request.query_params)

  if len(request_params) == 0:
    doc = textwrap.dedent(scan_permissions_endpoint.__doc__)
    return PlainTextResponse(generate_endpoint_docs(doc, router_prefix), media_type="text/plain; charset=utf-8")

  logger = ScanLogger.create(collect_lines=True)
  logger.log_function_header(function_name)
  format_param = request_params.get("format", "json")
  view = request_params.get("view", "records")
  include_system = request_params.get("include_system", "false").lower() == "true"

  if view not in ("records", "principals", "summary"):
    logger.log_function_footer()
    return json_result(False, f"Invalid 'view' parameter '{view}'. Must be 'records', 'principals' or 'summary'.", {})

  site_urls = get_site_urls_from_request(request)
  try:
    settings = load_scanner_settings(get_persistent_storage_path(), logger)
    service = create_directory_service()
    report = await asyncio.to_thread(run_permission_scan, site_urls, service, settings, logger)
  except ConfigurationError as e:
    logger.log_error(str(e))
    logger.log_function_footer()
    if format_param == "html": return html_result("Error", {"error": str(e)}, get_nav_html())
    return json_result(False, str(e), {})

  logger.log_function_footer()
  if format_param == "csv":
    return Response(content=convert_report_to_csv_text(report, include_system=include_system), media_type="text/csv; charset=utf-8", headers={"Content-Disposition": 'attachment; filename="permission_report.csv"'})
  data = build_view_data(report, view, include_system, logger.lines)
  if format_param == "html": return html_result(f"Permission Report ({view})", data, get_nav_html())
  return json_result(True, "", data)

# ----------------------------------------- END: /permissions/scan endpoint ----------------------------------------------
