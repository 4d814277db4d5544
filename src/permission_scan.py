"""CLI entry point for the SharePoint permission report."""
import argparse
import os
import sys

from dotenv import load_dotenv

from routers_v2.common_logging_functions_v2 import ScanLogger
from routers_v2.common_permission_report_functions_v2 import write_permission_report_csv
from routers_v2.common_permission_scan_functions_v2 import ConfigurationError, load_root_site_urls_from_file, load_scanner_settings, parse_root_site_urls, run_permission_scan
from routers_v2.common_sharepoint_functions_v2 import SharePointDirectoryService, SharePointSessionProvider

def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    description="SharePoint permission report - groups with permissions on sites, subsites and lists",
    formatter_class=argparse.RawDescriptionHelpFormatter,
    epilog="""
Examples:
  python permission_scan.py --site https://contoso.sharepoint.com/sites/hr
  python permission_scan.py --sites-file sites.txt --output report.csv
  python permission_scan.py --sites-file sites.csv --output report.csv --include-system
    """
  )
  parser.add_argument("--site", "-s", action="append", default=[], help="Root site URL (repeatable)")
  parser.add_argument("--sites-file", "-f", help="Text file (one URL per line) or CSV with a Url/SiteUrl column")
  parser.add_argument("--output", "-o", default="permission_report.csv", help="CSV output path (default: permission_report.csv)")
  parser.add_argument("--include-system", action="store_true", help="Write system principals to the CSV")
  parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation before scanning")
  return parser

def get_root_site_urls(args) -> list:
  """--site URLs first, then sites file URLs not already given with --site."""
  urls = parse_root_site_urls(args.site) if args.site else []
  if args.sites_file:
    seen = {url.lower() for url in urls}
    urls.extend(url for url in load_root_site_urls_from_file(args.sites_file) if url.lower() not in seen)
  return parse_root_site_urls(urls)

def create_service_from_environment() -> SharePointDirectoryService:
  storage_path = os.environ.get('LOCAL_PERSISTENT_STORAGE_PATH', '')
  client_id = os.environ.get('CRAWLER_CLIENT_ID', '')
  tenant_id = os.environ.get('CRAWLER_TENANT_ID', '')
  cert_file = os.environ.get('CRAWLER_CLIENT_CERTIFICATE_PFX_FILE', '')
  cert_password = os.environ.get('CRAWLER_CLIENT_CERTIFICATE_PASSWORD', '')
  if not all([client_id, tenant_id, cert_file]):
    raise ConfigurationError("Set CRAWLER_CLIENT_ID, CRAWLER_TENANT_ID and CRAWLER_CLIENT_CERTIFICATE_PFX_FILE (environment or .env).")
  return SharePointDirectoryService(SharePointSessionProvider(client_id, tenant_id, os.path.join(storage_path, cert_file), cert_password))

def print_summary(summary: dict, output: str, rows_written: int) -> None:
  print(f"\n{'='*60}\nPERMISSION REPORT SUMMARY\n{'='*60}")
  print(f"Records:         {summary['records']}")
  print(f"Groups:          {summary['principals']}")
  print(f"Nested records:  {summary['nested_records']}")
  print(f"System records:  {summary['system_records']}")
  for group_type, count in summary["by_group_type"].items():
    print(f"  {group_type:<20} {count}")
  print(f"Issues:          {summary['issues']}")
  print(f"CSV:             {output} ({rows_written} rows)")
  print(f"{'='*60}")

def main(argv=None):
  load_dotenv()
  parser = build_parser()
  args = parser.parse_args(argv)

  if not args.site and not args.sites_file:
    parser.print_help()
    sys.exit(0)

  try:
    root_urls = get_root_site_urls(args)
    settings = load_scanner_settings(os.environ.get('LOCAL_PERSISTENT_STORAGE_PATH', ''))
    service = create_service_from_environment()
  except ConfigurationError as e:
    print(f"Error: {e}")
    sys.exit(2)

  print(f"{len(root_urls)} root site(s) to scan:")
  for url in root_urls: print(f"  {url}")
  if not args.yes and input("Start scan? (y/N): ").strip().lower() != "y":
    print("Cancelled")
    sys.exit(0)

  logger = ScanLogger.create()
  try:
    report = run_permission_scan(root_urls, service, settings, logger)
  except KeyboardInterrupt:
    print("\nInterrupted")
    sys.exit(130)

  rows_written = write_permission_report_csv(args.output, report, include_system=args.include_system)
  print_summary(report.get_summary(), args.output, rows_written)
  sys.exit(0 if not report.issues else 1)

if __name__ == "__main__":
  main()
