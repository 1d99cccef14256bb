import json
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit

import pytest

import chain_client
from chain_client import (
    ERR_CONNECTIVITY,
    ERR_INVALID_API_KEY,
    ERR_NOT_FOUND,
    ERR_PENDING,
    ERR_PROVIDER,
    ERR_RATE_LIMITED,
    MSG_INVALID_API_KEY,
    MSG_PENDING,
    MSG_RATE_LIMITED,
    ChainDataClient,
    ExplorerError,
)

TX = "0x" + "ab" * 32


class FakeResponse:
    def __init__(self, body, status=200):
        self._body = body if isinstance(body, bytes) else body.encode("utf-8")
        self.status = status
        self.headers = {}

    def read(self, n=-1):
        return self._body if n is None or n < 0 else self._body[:n]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def explorer(monkeypatch):
    """Queue of canned explorer replies; records requested URLs."""
    state = {"replies": [], "urls": []}

    def fake_urlopen(req, timeout=None):
        state["urls"].append(req.full_url)
        reply = state["replies"].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(chain_client.urlrequest, "urlopen", fake_urlopen)
    return state


def ok(result):
    return FakeResponse(json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}))


def make_client():
    return ChainDataClient(api_key="KEY", base_url="https://api.example/v2/api", chain_id=534352, timeout=5)


def test_get_transaction_sends_proxy_query(explorer):
    explorer["replies"].append(ok({"hash": TX, "from": "0xAA", "to": "0xBB", "blockNumber": "0x10", "value": "0x0"}))

    tx = make_client().get_transaction(TX)

    assert tx.hash == TX
    assert tx.block_number == 16
    assert tx.from_address == "0xaa"
    query = parse_qs(urlsplit(explorer["urls"][0]).query)
    assert query["chainid"] == ["534352"]
    assert query["module"] == ["proxy"]
    assert query["action"] == ["eth_getTransactionByHash"]
    assert query["txhash"] == [TX]
    assert query["apikey"] == ["KEY"]


def test_null_result_is_not_found(explorer):
    explorer["replies"].append(ok(None))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_NOT_FOUND
    assert "Scroll Mainnet" in exc.value.message


@pytest.mark.parametrize("block_number", [None, "0x0"])
def test_unconfirmed_transaction_is_pending(explorer, block_number):
    explorer["replies"].append(ok({"hash": TX, "blockNumber": block_number}))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_PENDING
    assert exc.value.message == MSG_PENDING


def test_unconfirmed_allowed_when_not_required(explorer):
    explorer["replies"].append(ok({"hash": TX, "blockNumber": None}))
    tx = make_client().get_transaction(TX, require_confirmed=False)
    assert not tx.confirmed


@pytest.mark.parametrize(
    "text,code,message",
    [
        ("Invalid API Key (#err2)|xyz", ERR_INVALID_API_KEY, MSG_INVALID_API_KEY),
        ("Max rate limit reached, please use API Key", ERR_RATE_LIMITED, MSG_RATE_LIMITED),
    ],
)
def test_soft_errors_map_to_specific_messages(explorer, text, code, message):
    explorer["replies"].append(FakeResponse(json.dumps({"status": "0", "message": "NOTOK", "result": text})))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == code
    assert exc.value.message == message


def test_bare_string_result_is_classified(explorer):
    explorer["replies"].append(ok("Max rate limit reached"))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction_receipt(TX)

    assert exc.value.code == ERR_RATE_LIMITED


def test_unknown_soft_error_is_provider_error(explorer):
    explorer["replies"].append(FakeResponse(json.dumps({"status": "0", "message": "NOTOK", "result": "Something odd"})))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_PROVIDER


def test_jsonrpc_error_is_provider_error(explorer):
    explorer["replies"].append(FakeResponse(json.dumps({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000}})))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_PROVIDER


def test_non_json_body_is_provider_error(explorer):
    explorer["replies"].append(FakeResponse("<html>bad gateway</html>"))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_PROVIDER


def test_http_error_is_connectivity(explorer):
    explorer["replies"].append(HTTPError("https://api.example/v2/api", 503, "Service Unavailable", None, None))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_CONNECTIVITY
    assert "503" in exc.value.message


def test_unreachable_is_connectivity(explorer):
    explorer["replies"].append(URLError("connection refused"))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction(TX)

    assert exc.value.code == ERR_CONNECTIVITY


def test_receipt_logs_are_parsed(explorer):
    explorer["replies"].append(
        ok(
            {
                "transactionHash": TX,
                "blockNumber": "0x10",
                "status": "0x1",
                "from": "0xAA",
                "to": "0xBB",
                "logs": [
                    {"address": "0xToken", "topics": ["0xDDF2", "0x01"], "data": "0x2a", "logIndex": "0x3"},
                    {"address": "0xOther", "topics": "not-a-list", "data": None, "logIndex": "zz"},
                    "garbage",
                ],
            }
        )
    )

    receipt = make_client().get_transaction_receipt(TX)

    assert receipt.status == 1
    assert len(receipt.logs) == 2
    first, second = receipt.logs
    assert first.address == "0xtoken"
    assert first.topics == ["0xddf2", "0x01"]
    assert first.log_index == 3
    assert second.topics == []
    assert second.data == "0x"
    assert second.log_index is None


def test_missing_receipt_is_not_found(explorer):
    explorer["replies"].append(ok(None))

    with pytest.raises(ExplorerError) as exc:
        make_client().get_transaction_receipt(TX)

    assert exc.value.code == ERR_NOT_FOUND
