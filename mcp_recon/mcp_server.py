"""
Loan Reconciliation MCP Server

Answers keyword-driven questions about a loan reconciliation export
("find mismatches", "show loans where difference > 5000", "find loan
LN-001234") over a line-delimited JSON-RPC session on stdin/stdout.

To connect an MCP client (stdio), add to its server config:
{
  "mcpServers": {
    "loan-recon": {
      "command": "python",
      "args": ["-m", "mcp_recon.mcp_server", "--data", "/path/to/LoanReconciliation.xlsx"],
      "env": {}
    }
  }
}

To run over HTTP (SSE) instead:
  python -m mcp_recon.mcp_server --transport sse --data recon.csv [--host 127.0.0.1] [--port 8000]

Logs go to stderr only; stdout carries protocol traffic.
"""

import json
import signal
import sys
import threading
import uuid
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Iterator, TextIO, Union

from fastmcp import FastMCP
from loguru import logger

from .config import Settings, SERVER_NAME, SERVER_VERSION, PROTOCOL_VERSION
from .loader import LoadError, load_records
from .models import JsonRpcError, JsonRpcRequest, JsonRpcResponse, QueryRequest
from .query_engine import QueryEngine
from .record_store import RecordStore

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class McpError(Exception):
    code = INTERNAL_ERROR


class MethodNotFoundError(McpError):
    code = METHOD_NOT_FOUND


class ToolError(McpError):
    code = INVALID_PARAMS


# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------

mcp = FastMCP("Loan Recon")

store = RecordStore()
engine = QueryEngine(store)
settings = Settings()
session: Optional["McpSession"] = None


# ---------------------------------------------------------------------------
# Tool descriptors & payloads
# ---------------------------------------------------------------------------

TOOL_DESCRIPTORS = [
    {
        "name": "query_loans",
        "description": "Query loan reconciliation data with a natural language question",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Natural language query"},
                "limit": {"type": "integer", "description": "Max results to return"},
                "skip": {"type": "integer", "description": "Records to skip"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "get_statistics",
        "description": "Get overall dataset statistics",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def query_payload(
    query_engine: QueryEngine,
    arguments: Optional[Dict[str, Any]],
    default_limit: int = 100,
) -> Dict[str, Any]:
    """Validate ``query_loans`` arguments and run the query."""
    args = dict(arguments or {})
    if args.get("limit") is None:
        args["limit"] = default_limit
    request = QueryRequest.model_validate(args)
    return query_engine.execute(request).to_wire()


def statistics_payload(record_store: RecordStore) -> Dict[str, Any]:
    built_at = record_store.last_build_time()
    return {
        "totalRecords": record_store.count(),
        "lastLoadTime": built_at.isoformat() if built_at else None,
        "dataLoaded": record_store.count() > 0,
    }


def _text_content(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"content": [{"type": "text", "text": json.dumps(payload, indent=2)}]}


def _iter_lines(in_stream: TextIO) -> Iterator[Union[str, bytes]]:
    """
    Yield raw request lines. Binary-backed streams (stdin) yield undecoded
    bytes so a line with invalid UTF-8 fails on its own in ``handle_line``.
    """
    buffer = getattr(in_stream, "buffer", None)
    if buffer is not None:
        yield from iter(buffer.readline, b"")
    else:
        yield from iter(in_stream.readline, "")


# ---------------------------------------------------------------------------
# Stdio session loop
# ---------------------------------------------------------------------------

class McpSession:
    """
    One client, one line in, one line out.

    Every non-blank request line gets exactly one response line, written and
    flushed before the next line is read. A line that fails to parse, names
    an unknown method, or blows up inside a handler becomes an error response
    and the loop keeps going.
    """

    def __init__(
        self,
        record_store: RecordStore,
        query_engine: QueryEngine,
        default_limit: int = 100,
    ) -> None:
        self.store = record_store
        self.engine = query_engine
        self.default_limit = default_limit
        self._stop = threading.Event()
        self._busy = False
        self._methods: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "initialize": self._initialize,
            "ping": lambda params: {},
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def serve(self, in_stream: TextIO, out_stream: TextIO) -> int:
        """Run until EOF or ``request_stop()``. Returns the number of requests answered."""
        handled = 0
        logger.info("MCP session started")
        for line in _iter_lines(in_stream):
            if not line.strip():
                continue
            self._busy = True
            try:
                response = self.handle_line(line)
                out_stream.write(response.to_line() + "\n")
                out_stream.flush()
            finally:
                self._busy = False
            handled += 1
            if self._stop.is_set():
                break
        logger.info(f"MCP session ended after {handled} requests")
        return handled

    def request_stop(self) -> None:
        """Stop after the response in flight (if any) has been flushed."""
        self._stop.set()

    @property
    def busy(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle_line(self, line: Union[str, bytes]) -> JsonRpcResponse:
        """Turn one request line into one response. Never raises."""
        request_id = None
        try:
            if isinstance(line, bytes):
                line = line.decode("utf-8")
            payload = json.loads(line)
            if isinstance(payload, dict) and isinstance(payload.get("id"), (str, int)):
                request_id = payload["id"]
            request = JsonRpcRequest.model_validate(payload)
            return JsonRpcResponse(id=request.id, result=self.dispatch(request))
        except McpError as exc:
            logger.warning(f"MCP request {request_id}: {exc}")
            error = JsonRpcError(code=exc.code, message=str(exc))
        except Exception as exc:
            logger.exception("Error processing MCP request")
            error = JsonRpcError(code=INTERNAL_ERROR, message=str(exc))

        if request_id is None:
            request_id = str(uuid.uuid4())
        return JsonRpcResponse(id=request_id, error=error)

    def dispatch(self, request: JsonRpcRequest) -> Dict[str, Any]:
        handler = self._methods.get(request.method)
        if handler is None:
            if request.method.startswith("notifications/"):
                return {}
            raise MethodNotFoundError(f"Method not found: {request.method}")
        return handler(request.params)

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        client = params.get("clientInfo") or {}
        if client:
            logger.info(f"Client connected: {client.get('name', '?')} {client.get('version', '')}")
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {"tools": {}},
        }

    def _tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": TOOL_DESCRIPTORS}

    def _tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise McpError("tools/call params.arguments must be an object")

        if name == "query_loans":
            return _text_content(query_payload(self.engine, arguments, self.default_limit))
        if name == "get_statistics":
            return _text_content(statistics_payload(self.store))
        raise ToolError(f"Unknown tool: {name}")


# ---------------------------------------------------------------------------
# FastMCP tools (SSE transport)
# ---------------------------------------------------------------------------

@mcp.tool()
async def query_loans(query: str, limit: Optional[int] = None, skip: Optional[int] = None) -> Dict[str, Any]:
    """
    Query loan reconciliation data with a natural language question.

    Args:
        query: e.g. 'Find mismatches', 'Show loans where difference > 5000',
            'Find loan LN-12345', 'Search borrower John Smith', 'Top 20 highest'
        limit: Max records in the returned page (default 100)
        skip: Records to skip before the page starts (default 0)

    Returns:
        success, message, data (the page), totalCount (all matches) and
        metadata with queryType, executionTimeMs and statistics.
    """
    return query_payload(
        engine,
        {"query": query, "limit": limit, "skip": skip},
        settings.default_limit,
    )


@mcp.tool()
async def get_statistics() -> Dict[str, Any]:
    """
    Get overall dataset statistics.

    Returns:
        totalRecords, lastLoadTime and dataLoaded.
    """
    return statistics_payload(store)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

def load_store(data_path: Path) -> int:
    """Initial load. Raises LoadError; the server must not start without data."""
    result = load_records(data_path)
    store.build(result.records)
    return len(result)


def _reload_in_background(data_path: Path) -> None:
    def _run() -> None:
        try:
            store.reload(lambda: load_records(data_path).records)
        except LoadError as exc:
            logger.error(f"Reload failed, keeping current snapshot: {exc}")

    threading.Thread(target=_run, name="snapshot-reload", daemon=True).start()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Run the MCP server."""
    import argparse

    global settings, session

    parser = argparse.ArgumentParser(description="Loan reconciliation MCP server")
    parser.add_argument("--data", type=Path, default=None, help="Path to the .csv/.xlsx export")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--default-limit", type=int, default=None)
    parser.add_argument("--transport", default="stdio", choices=["stdio", "sse"])
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    settings = Settings.from_env().with_overrides(
        data_path=args.data,
        log_level=args.log_level,
        default_limit=args.default_limit,
    )

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    if settings.data_path is None:
        logger.error("No data file configured (use --data or RECON_DATA_PATH)")
        sys.exit(1)

    logger.info("Starting Loan Recon MCP Server...")
    try:
        count = load_store(settings.data_path)
    except LoadError as exc:
        logger.error(f"Failed to load data: {exc}")
        sys.exit(1)
    logger.info(f"MCP server ready with {count} records")

    if args.transport == "sse":
        mcp.run(transport="sse", host=args.host, port=args.port)
        return

    session = McpSession(store, engine, default_limit=settings.default_limit)

    def handle_shutdown(sig, frame):
        logger.info("Shutting down MCP server...")
        if session is not None and session.busy:
            session.request_stop()
        else:
            sys.exit(0)

    def handle_reload(sig, frame):
        logger.info(f"Reload requested: {settings.data_path}")
        _reload_in_background(settings.data_path)

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, handle_reload)

    sys.stdout.reconfigure(encoding="utf-8")
    session.serve(sys.stdin, sys.stdout)


if __name__ == "__main__":
    main()
