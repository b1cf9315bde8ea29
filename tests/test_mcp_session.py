"""Tests for the line-delimited JSON-RPC session loop."""

import io
import json
from decimal import Decimal

import pytest
from mcp_recon.mcp_server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    McpSession,
    query_payload,
    statistics_payload,
)
from mcp_recon.models import LoanRecord
from mcp_recon.query_engine import QueryEngine
from mcp_recon.record_store import RecordStore


def make_record(loan_id, difference="0", borrower="Borrower"):
    diff = Decimal(difference)
    return LoanRecord(
        loan_id=loan_id,
        borrower_name=borrower,
        servicer_loan_amount=Decimal("100000") + diff,
        fnma_loan_amount=Decimal("100000"),
        difference_amount=diff,
        reconciled_status="Pending" if diff else "Reconciled",
    )


@pytest.fixture
def store():
    s = RecordStore()
    s.build([
        make_record("LN-001234", "0", "John Smith"),
        make_record("LN-001235", "6000"),
        make_record("LN-001236", "-250"),
        make_record("LN-001237", "9000"),
    ])
    return s


@pytest.fixture
def session(store):
    return McpSession(store, QueryEngine(store))


def request(method, params=None, id="1"):
    msg = {"jsonrpc": "2.0", "id": id, "method": method}
    if params is not None:
        msg["params"] = params
    return json.dumps(msg)


def call_tool(name, arguments=None, id="1"):
    return request("tools/call", {"name": name, "arguments": arguments or {}}, id=id)


def serve(session, *lines):
    """Feed lines through the session and return the decoded response lines."""
    out = io.StringIO()
    session.serve(io.StringIO("".join(line + "\n" for line in lines)), out)
    return [json.loads(line) for line in out.getvalue().splitlines()]


def tool_text(response):
    content = response["result"]["content"]
    assert len(content) == 1
    assert content[0]["type"] == "text"
    return json.loads(content[0]["text"])


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------

class TestMethods:
    def test_initialize(self, session):
        [resp] = serve(session, request("initialize", {"clientInfo": {"name": "test", "version": "0"}}))
        assert resp["id"] == "1"
        assert resp["result"]["protocolVersion"] == "2024-11-05"
        assert resp["result"]["serverInfo"]["name"]
        assert "tools" in resp["result"]["capabilities"]
        assert "error" not in resp

    def test_tools_list(self, session):
        [resp] = serve(session, request("tools/list"))
        tools = {t["name"]: t for t in resp["result"]["tools"]}
        assert set(tools) == {"query_loans", "get_statistics"}
        schema = tools["query_loans"]["inputSchema"]
        assert schema["required"] == ["query"]
        assert set(schema["properties"]) == {"query", "limit", "skip"}
        assert tools["get_statistics"]["inputSchema"]["type"] == "object"

    def test_query_loans(self, session):
        [resp] = serve(session, call_tool("query_loans", {"query": "Find loan LN-001234"}))
        payload = tool_text(resp)
        assert payload["success"] is True
        assert payload["totalCount"] == 1
        assert payload["data"][0]["loanId"] == "LN-001234"
        assert payload["metadata"]["queryType"] == "LoanByID"

    def test_query_loans_pagination(self, session):
        [resp] = serve(session, call_tool("query_loans", {"query": "find mismatches", "limit": 1, "skip": 1}))
        payload = tool_text(resp)
        assert payload["totalCount"] == 3
        assert [r["loanId"] for r in payload["data"]] == ["LN-001236"]
        assert payload["metadata"]["statistics"]["MismatchCount"] == 3

    def test_get_statistics(self, session):
        [resp] = serve(session, call_tool("get_statistics"))
        payload = tool_text(resp)
        assert payload["totalRecords"] == 4
        assert payload["dataLoaded"] is True
        assert payload["lastLoadTime"] is not None

    def test_default_limit_applied(self, store):
        session = McpSession(store, QueryEngine(store), default_limit=2)
        [resp] = serve(session, call_tool("query_loans", {"query": "list all"}))
        payload = tool_text(resp)
        assert len(payload["data"]) == 2
        assert payload["totalCount"] == 4

    def test_ping(self, session):
        [resp] = serve(session, request("ping"))
        assert resp["result"] == {}

    def test_notification_gets_empty_result(self, session):
        [resp] = serve(session, json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}))
        assert resp["result"] == {}

    def test_integer_id_echoed(self, session):
        [resp] = serve(session, request("tools/list", id=7))
        assert resp["id"] == 7


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_unknown_method(self, session):
        [resp] = serve(session, request("resources/list"))
        assert resp["id"] == "1"
        assert resp["error"]["code"] == METHOD_NOT_FOUND
        assert "resources/list" in resp["error"]["message"]
        assert "result" not in resp

    def test_unknown_tool(self, session):
        [resp] = serve(session, call_tool("drop_tables"))
        assert resp["error"]["code"] == INVALID_PARAMS
        assert "drop_tables" in resp["error"]["message"]

    def test_missing_query_argument(self, session):
        [resp] = serve(session, call_tool("query_loans", {"limit": 5}))
        assert resp["error"]["code"] == INTERNAL_ERROR
        assert resp["id"] == "1"

    def test_malformed_line(self, session):
        [resp] = serve(session, "{not json")
        assert resp["error"]["code"] == INTERNAL_ERROR
        assert resp["error"]["message"]
        assert resp["id"]

    def test_missing_method(self, session):
        [resp] = serve(session, json.dumps({"jsonrpc": "2.0", "id": "x"}))
        assert resp["id"] == "x"
        assert resp["error"]["code"] == INTERNAL_ERROR

    def test_handler_exception(self):
        class BrokenStore(RecordStore):
            def count(self):
                raise RuntimeError("store offline")

        broken = BrokenStore()
        session = McpSession(broken, QueryEngine(broken))
        [resp] = serve(session, call_tool("get_statistics"))
        assert resp["error"] == {"code": INTERNAL_ERROR, "message": "store offline"}

    def test_failed_query_is_a_result_not_an_error(self, store):
        class BrokenEngine(QueryEngine):
            def match_rule(self, text):
                raise ValueError("classifier broke")

        session = McpSession(store, BrokenEngine(store))
        [resp] = serve(session, call_tool("query_loans", {"query": "anything"}))
        payload = tool_text(resp)
        assert payload["success"] is False
        assert "classifier broke" in payload["message"]


# ---------------------------------------------------------------------------
# Loop behaviour
# ---------------------------------------------------------------------------

class TestSessionLoop:
    def test_bad_line_does_not_end_session(self, session):
        responses = serve(
            session,
            "this is not json",
            call_tool("query_loans", {"query": "List all loans"}, id="2"),
        )
        assert len(responses) == 2
        assert responses[0]["error"]["code"] == INTERNAL_ERROR
        assert responses[1]["id"] == "2"
        assert tool_text(responses[1])["totalCount"] == 4

    def test_one_response_per_request_in_order(self, session):
        responses = serve(
            session,
            request("initialize", id="a"),
            request("bogus", id="b"),
            "][",
            request("tools/list", id="c"),
            call_tool("get_statistics", id="d"),
        )
        assert len(responses) == 5
        assert [r["id"] for r in responses][:2] == ["a", "b"]
        assert [r["id"] for r in responses][3:] == ["c", "d"]

    def test_blank_lines_skipped(self, session):
        responses = serve(session, "", request("ping"), "   ", request("ping", id="2"))
        assert len(responses) == 2

    def test_each_response_is_one_line(self, session):
        out = io.StringIO()
        session.serve(io.StringIO(call_tool("query_loans", {"query": "give me a summary"}) + "\n"), out)
        text = out.getvalue()
        assert text.endswith("\n")
        assert text.count("\n") == 1

    def test_request_stop_finishes_current_response(self, session):
        session.request_stop()
        out = io.StringIO()
        handled = session.serve(
            io.StringIO(request("ping", id="1") + "\n" + request("ping", id="2") + "\n"),
            out,
        )
        assert handled == 1
        assert json.loads(out.getvalue())["id"] == "1"

    def test_invalid_utf8_line_does_not_end_session(self, session):
        raw = b'{"jsonrpc":"2.0","id":"1",\xff\xfe}\n' + request("ping", id="2").encode() + b"\n"
        out = io.StringIO()
        handled = session.serve(io.TextIOWrapper(io.BytesIO(raw), encoding="utf-8"), out)
        responses = [json.loads(line) for line in out.getvalue().splitlines()]
        assert handled == 2
        assert responses[0]["error"]["code"] == INTERNAL_ERROR
        assert responses[1] == {"jsonrpc": "2.0", "id": "2", "result": {}}

    def test_bytes_line_decoded(self, session):
        resp = session.handle_line(request("ping", id="b").encode())
        assert resp.result == {}
        assert resp.id == "b"

    def test_returns_count_at_eof(self, session):
        out = io.StringIO()
        handled = session.serve(io.StringIO(request("ping") + "\n" + "garbage\n"), out)
        assert handled == 2
        assert not session.busy


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

class TestPayloads:
    def test_statistics_payload_empty_store(self):
        payload = statistics_payload(RecordStore())
        assert payload == {"totalRecords": 0, "lastLoadTime": None, "dataLoaded": False}

    def test_query_payload_null_paging(self, store):
        payload = query_payload(QueryEngine(store), {"query": "list all", "limit": None, "skip": None})
        assert payload["totalCount"] == 4
        assert len(payload["data"]) == 4
