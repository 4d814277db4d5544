# Logging V2 - Scan logger for permission scans and FastAPI endpoints
# Console lines: [timestamp,process <pid>,request <n>,<function>] <message>

import datetime, logging, os, sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

# Configure logging for multi-worker environment
logging.basicConfig(level=logging.INFO, format='%(message)s', handlers=[logging.StreamHandler(sys.stdout)])
logger = logging.getLogger(__name__)

UNKNOWN = "[UNKNOWN]"

# Global request counter, monotonically increasing
_request_counter = 0

# Format milliseconds into a human-readable string
def format_milliseconds(millisecs: int) -> str:
  if millisecs < 1000: return f"{millisecs} ms"
  if millisecs < 50000:
    seconds_float = round(millisecs / 1000.0, 1)
    unit = "sec" if seconds_float == 1.0 else "secs"
    return f"{seconds_float:.1f} {unit}"
  secs = millisecs // 1000; hours = secs // 3600; minutes = (secs % 3600) // 60; seconds = secs % 60
  parts = []
  if hours: parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
  if minutes: parts.append(f"{minutes} min{'s' if minutes != 1 else ''}")
  if seconds: parts.append(f"{seconds} sec{'s' if seconds != 1 else ''}")
  return ', '.join(parts) if parts else "0 sec"

def pluralize(count: int, singular: str, plural: Optional[str] = None) -> str:
  """Return '1 site' / '3 sites'."""
  if count == 1: return f"{count} {singular}"
  return f"{count} {plural or singular + 's'}"

@dataclass
class ScanLogger:
  """
  Logger for permission scans and endpoints.

  Usage:
    logger = ScanLogger.create()
    logger.log_function_header("run_permission_scan()")
    logger.log_function_output("Processing...")
    logger.log_error("Failed to get subsites -> 403")
    logger.log_function_footer()

  Every message is written to the console; when `collect_lines` is set the messages are also kept
  in `lines` so endpoints can return the scan log with the result.
  """

  # Configuration (set at creation)
  log_inner_function_headers_and_footers: bool = True
  inner_log_indentation: int = 2
  collect_lines: bool = False

  # State (managed internally)
  lines: List[str] = field(default_factory=list)
  warning_count: int = 0
  error_count: int = 0
  _function_name: str = ""
  _start_time: Optional[datetime.datetime] = None
  _request_number: int = 0
  _nesting_depth: int = 0
  _inner_stack: List[Tuple[str, datetime.datetime]] = field(default_factory=list)

  @classmethod
  def create(cls, log_inner_function_headers_and_footers: bool = True, inner_log_indentation: int = 2, collect_lines: bool = False) -> "ScanLogger":
    """Factory method. Increments global request counter."""
    global _request_counter
    _request_counter += 1
    return cls(
      log_inner_function_headers_and_footers=log_inner_function_headers_and_footers,
      inner_log_indentation=inner_log_indentation,
      collect_lines=collect_lines,
      _request_number=_request_counter
    )

  def log_function_header(self, function_name: str) -> None:
    """
    Log function start.
    - depth=0: Always logs, sets top-level function name and start time
    - depth>0: Logs only if log_inner_function_headers_and_footers=True
    """
    now = datetime.datetime.now()
    if self._nesting_depth == 0:
      self._function_name = function_name
      self._start_time = now
      self._write(f"START: {function_name}...")
      self._nesting_depth = 1
      return
    self._inner_stack.append((function_name, now))
    self._nesting_depth += 1
    if self.log_inner_function_headers_and_footers:
      self._write(self._apply_indentation(f"START: {function_name}..."))

  def log_function_output(self, output: str) -> None:
    """Log intermediate output, indented by current nesting depth."""
    self._write(self._apply_indentation(output))

  def log_warning(self, output: str) -> None:
    self.warning_count += 1
    self.log_function_output(f"WARNING: {output}")

  def log_error(self, output: str) -> None:
    self.error_count += 1
    self.log_function_output(f"ERROR: {output}")

  def log_function_footer(self) -> None:
    """
    Log function end.
    - depth>1: Pops from stack, logs if log_inner_function_headers_and_footers=True
    - depth<=1: Logs total duration
    """
    now = datetime.datetime.now()
    if self._nesting_depth <= 1:
      if self._start_time:
        duration = format_milliseconds(int((now - self._start_time).total_seconds() * 1000))
      else:
        duration = "0 ms"
      self._write(f"END: {self._function_name} ({duration}).")
      self._nesting_depth = 0
      return
    if self._inner_stack:
      inner_func_name, inner_start_time = self._inner_stack.pop()
      if self.log_inner_function_headers_and_footers:
        duration = format_milliseconds(int((now - inner_start_time).total_seconds() * 1000))
        self._write(self._apply_indentation(f"END: {inner_func_name} ({duration})."))
    self._nesting_depth -= 1

  def _apply_indentation(self, output: str) -> str:
    """Depth 0 and 1 have no indentation."""
    if self._nesting_depth <= 1: return output
    return " " * (self.inner_log_indentation * (self._nesting_depth - 1)) + output

  def _write(self, message: str) -> None:
    process_id = os.getpid()
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    logger.info(f"[{timestamp},process {process_id},request {self._request_number},{self._function_name}] {message}")
    if self.collect_lines: self.lines.append(f"[{timestamp}] {message}")
