# Common UI Functions V2 - Response helpers and documentation pages for V2 routers

import html
from typing import Any, Dict, List

from fastapi.responses import HTMLResponse, JSONResponse

# ----------------------------------------- START: Internal Helpers ----------------------------------------------------------

def _escape_html(text: str) -> str:
  """Escape HTML special characters."""
  return html.escape(str(text)) if text else ""

def _collect_keys(rows: List[Dict]) -> List[str]:
  """All unique keys over all rows, preserving first-seen order."""
  all_keys = []
  seen_keys = set()
  for row in rows:
    for key in row.keys():
      if key not in seen_keys:
        all_keys.append(key)
        seen_keys.add(key)
  return all_keys

def convert_to_flat_html_table(data: Any) -> str:
  """Render a list of dicts as a table with one column per key, a dict as key/value rows."""
  if not data: return "<p>No data</p>"
  if isinstance(data, list):
    if all(isinstance(item, dict) for item in data):
      all_keys = _collect_keys(data)
      header_row = "".join(f"<th>{html.escape(str(key))}</th>" for key in all_keys)
      rows = ["<tr>" + "".join(f"<td>{html.escape(str(item.get(key, '')))}</td>" for key in all_keys) + "</tr>" for item in data]
      return f"<table border=1><tr>{header_row}</tr>{''.join(rows)}</table>"
    rows = [f"<tr><td>[{i}]</td><td>{html.escape(str(item))}</td></tr>" for i, item in enumerate(data)]
    return f"<table border=1><tr><th>Index</th><th>Value</th></tr>{''.join(rows)}</table>"
  if isinstance(data, dict):
    rows = []
    for key, value in data.items():
      cell = convert_to_flat_html_table(value) if isinstance(value, (dict, list)) and value else html.escape(str(value))
      rows.append(f"<tr><td>{html.escape(str(key))}</td><td>{cell}</td></tr>")
    return f"<table border=1><tr><th>Key</th><th>Value</th></tr>{''.join(rows)}</table>"
  return f"<p>{html.escape(str(data))}</p>"

# ----------------------------------------- END: Internal Helpers ------------------------------------------------------------


# ----------------------------------------- START: Response Helpers ----------------------------------------------------------

def json_result(ok: bool, error: str, data: Any) -> JSONResponse:
  """Generate consistent JSON response: {ok, error, data}."""
  status_code = 200 if ok else 400
  return JSONResponse({"ok": ok, "error": error, "data": data}, status_code=status_code)

def html_result(title: str, data: Any, navigation_html: str = "") -> HTMLResponse:
  """
  Generate simple HTML page with data table.

  Args:
    title: Page title
    data: Data to display in table
    navigation_html: Raw HTML for navigation links (e.g., '<a href="/">Back to Main Page</a>')
  """
  table_html = convert_to_flat_html_table(data) if data else '<p>No data</p>'
  return HTMLResponse(f"""<!doctype html><html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{_escape_html(title)}</title>
</head>
<body>
  <h1>{_escape_html(title)}</h1>
  {navigation_html}
  {table_html}
</body>
</html>""")

# ----------------------------------------- END: Response Helpers ------------------------------------------------------------


# ----------------------------------------- START: Documentation Pages -------------------------------------------------------

def generate_router_docs_page(title: str, description: str, router_prefix: str, endpoints: List[Dict], navigation_html: str = "") -> str:
  """
  Generate router root documentation page (HTML).

  Args:
    endpoints: List of endpoint configs [{"path": "/scan", "desc": "Run scan", "formats": ["json", "html"]}]
  """
  endpoints_html = []
  for ep in endpoints:
    full_path = f"{router_prefix}{ep.get('path', '')}"
    format_links = [f'<a href="{full_path}?format={fmt}">{fmt}</a>' for fmt in ep.get("formats", [])]
    format_html = f" ({' | '.join(format_links)})" if format_links else ""
    endpoints_html.append(f'<li><a href="{_escape_html(full_path)}">{_escape_html(full_path)}</a> - {_escape_html(ep.get("desc", ""))}{format_html}</li>')

  return f"""<!doctype html><html lang="en">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>{_escape_html(title)}</title>
</head>
<body>
  <h1>{_escape_html(title)}</h1>
  {navigation_html}
  <p>{_escape_html(description)}</p>

  <h4>Available Endpoints</h4>
  <ul>
    {"".join(endpoints_html)}
  </ul>
</body>
</html>"""

def generate_endpoint_docs(docstring: str, router_prefix: str) -> str:
  """Plain text endpoint documentation: docstring with {router_prefix} replaced."""
  return docstring.replace("{router_prefix}", router_prefix) if docstring else ""

# ----------------------------------------- END: Documentation Pages ---------------------------------------------------------
