import logging, os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from routers_v2 import permissions
from routers_v2.common_logging_functions_v2 import ScanLogger
from routers_v2.common_ui_functions_v2 import convert_to_flat_html_table

# Load environment variables from a local .env file if present
load_dotenv()

# Global initialization errors array
initialization_errors = []

SECRET_FIELDS = ("CRAWLER_CLIENT_CERTIFICATE_PASSWORD",)

@dataclass
class Config:
  LOCAL_PERSISTENT_STORAGE_PATH: Optional[str]
  CRAWLER_CLIENT_ID: Optional[str]
  CRAWLER_CLIENT_CERTIFICATE_PFX_FILE: Optional[str]
  CRAWLER_CLIENT_CERTIFICATE_PASSWORD: Optional[str]
  CRAWLER_TENANT_ID: Optional[str]


def load_config() -> Config:
  """Load configuration from environment variables."""
  return Config(
    LOCAL_PERSISTENT_STORAGE_PATH=os.getenv('LOCAL_PERSISTENT_STORAGE_PATH')
    ,CRAWLER_CLIENT_ID=os.getenv('CRAWLER_CLIENT_ID')
    ,CRAWLER_CLIENT_CERTIFICATE_PFX_FILE=os.getenv('CRAWLER_CLIENT_CERTIFICATE_PFX_FILE')
    ,CRAWLER_CLIENT_CERTIFICATE_PASSWORD=os.getenv('CRAWLER_CLIENT_CERTIFICATE_PASSWORD')
    ,CRAWLER_TENANT_ID=os.getenv('CRAWLER_TENANT_ID')
  )

def configure_logging():
  """Suppress verbose SDK and HTTP logs."""
  logging.getLogger('office365').setLevel(logging.WARNING)
  logging.getLogger('msal').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.WARNING)
  logging.getLogger('requests').setLevel(logging.WARNING)
  logging.getLogger('httpx').setLevel(logging.WARNING)

def verify_config(config: Config) -> list[dict]:
  """List config fields with masked secrets and a verification column."""
  config_list = []
  for f in fields(config):
    value = getattr(config, f.name)
    verification = "✅ Set" if value else "⚠️ Not set"
    if f.name in SECRET_FIELDS and value: value = "*****"
    if f.name == "CRAWLER_CLIENT_CERTIFICATE_PFX_FILE" and value:
      cert_path = os.path.join(config.LOCAL_PERSISTENT_STORAGE_PATH or "", value)
      verification = "✅ Found" if os.path.exists(cert_path) else "❌ Not found"
    config_list.append({"Field": f.name, "Value": value or "", "Verification": verification})
  return config_list

def create_app() -> FastAPI:
  """Create and configure the FastAPI application."""
  logger = ScanLogger.create()
  logger.log_function_header("create_app()")
  configure_logging()
  config = load_config()
  logger.log_function_output("Configuration loaded")
  app = FastAPI(title="SharePoint-Permission-Report")
  app.state.config = config

  v2_router_prefix = "/v2"
  try:
    app.include_router(permissions.router, tags=["Permissions V2"], prefix=v2_router_prefix)
    permissions.set_config(config, v2_router_prefix)
    logger.log_function_output(f"Permissions router included at {v2_router_prefix}")
  except Exception as e:
    initialization_errors.append({"component": "Permissions Router", "error": str(e)})

  if initialization_errors:
    logger.log_function_output(f"App initialization completed with {len(initialization_errors)} initialization error(s):")
    for error in initialization_errors:
      logger.log_function_output(f"  - {error['component']}: {error['error']}")
  else:
    logger.log_function_output("App initialization completed successfully with no errors")
  logger.log_function_footer()
  return app

# Initialize the FastAPI application
app = create_app()

@app.get("/alive", response_class=PlainTextResponse)
async def health():
  """Health check endpoint for monitoring."""
  return PlainTextResponse(content="alive", status_code=200)

@app.get("/favicon.ico")
async def favicon(): return Response(status_code=204)

@app.get("/", response_class=HTMLResponse)
def root() -> str:
  errors_html = f'<div class="section"><h4>Errors</h4>{convert_to_flat_html_table(initialization_errors)}</div>' if initialization_errors else ""
  return f"""
<!doctype html><html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>SharePoint-Permission-Report</title>
</head>
<body>
  <h1>SharePoint-Permission-Report</h1>
  <p>Reports which Entra ID, Microsoft 365 and security groups hold permissions on SharePoint sites, subsites and lists with unique permissions.</p>

  <h4>Available Links</h4>
  <ul>
    <li><a href="/docs">/docs</a> - API Documentation</li>
    <li><a href="/openapi.json">/openapi.json</a> - OpenAPI JSON</li>
    <li><a href="/v2/permissions">/v2/permissions</a> - Permission Report (<a href="/v2/permissions?format=html">Settings</a> + <a href="/v2/permissions/scan">Scan</a>)</li>
  </ul>

  <div class="section">
    <h4>Configuration</h4>
    {convert_to_flat_html_table(verify_config(app.state.config))}
  </div>

  {errors_html}
</body>
</html>
"""
