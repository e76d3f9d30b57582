"""Tests for the HTTP ledger client against an httpx MockTransport."""

import json
from datetime import date

import httpx
import pytest
from tenacity import wait_none

from ledgerlink.config import LedgerApiSettings
from ledgerlink.models.ledger import TransactionDraft
from ledgerlink.services.remote import HttpLedgerClient
from ledgerlink.services.remote.interface import (
    AuthError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailable,
)


BASE_URL = "https://api.test/v1"


def _txn_json(txn_id="t1", **extra):
    return {
        "id": txn_id,
        "date": "2026-01-15",
        "amount": -12340,
        "memo": "Groceries",
        "account_id": "acct",
        "category_id": "cat",
        "cleared": "cleared",
        "approved": True,
        "subtransactions": [],
        **extra,
    }


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _ok(data):
    return httpx.Response(200, json={"data": data})


def _error(status, detail="boom"):
    return httpx.Response(status, json={"error": {"id": str(status), "name": "error", "detail": detail}})


def _client(recorder, token="test-token"):
    return HttpLedgerClient(
        token=token,
        settings=LedgerApiSettings(base_url=BASE_URL, max_retries=3),
        transport=httpx.MockTransport(recorder),
        retry_wait=wait_none(),
    )


class TestReads:
    """Tests for envelope unwrapping and request shape."""

    @pytest.mark.asyncio
    async def test_list_ledgers(self):
        """The data envelope is unwrapped into summaries."""
        recorder = Recorder(_ok({"budgets": [{"id": "b1", "name": "Household"}]}))
        async with _client(recorder) as client:
            ledgers = await client.list_ledgers()

        assert [(l.id, l.name) for l in ledgers] == [("b1", "Household")]
        request = recorder.requests[0]
        assert request.url.path == "/v1/budgets"
        assert request.headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_list_transactions_with_cursor(self):
        """The cursor is sent as last_knowledge_of_server and the new one returned."""
        recorder = Recorder(_ok({"transactions": [_txn_json()], "server_knowledge": 42}))
        async with _client(recorder) as client:
            page = await client.list_transactions("b1", since_date=date(2024, 1, 1), since_cursor=41)

        params = recorder.requests[0].url.params
        assert params["since_date"] == "2024-01-01"
        assert params["last_knowledge_of_server"] == "41"
        assert page.cursor == 42
        assert page.transactions[0].id == "t1"
        assert page.transactions[0].amount == -12340

    @pytest.mark.asyncio
    async def test_list_transactions_without_floor(self):
        """No query parameters are sent when neither floor is given."""
        recorder = Recorder(_ok({"transactions": [], "server_knowledge": 1}))
        async with _client(recorder) as client:
            page = await client.list_transactions("b1")

        assert not recorder.requests[0].url.params
        assert page.transactions == []

    @pytest.mark.asyncio
    async def test_get_ledger_names_category_groups(self):
        """Categories are labelled with their group name and transfer payees kept."""
        recorder = Recorder(_ok({
            "budget": {
                "id": "b1",
                "name": "Household",
                "accounts": [{"id": "a1", "name": "Checking", "transfer_payee_id": "p1"}],
                "category_groups": [{"id": "g1", "name": "Shared"}],
                "categories": [{"id": "c1", "name": "Alice", "category_group_id": "g1"}],
            },
            "server_knowledge": 9,
        }))
        async with _client(recorder) as client:
            detail = await client.get_ledger("b1")

        assert detail.find_account("a1").transfer_payee_id == "p1"
        assert detail.categories[0].category_group_name == "Shared"
        assert detail.cursor == 9

    @pytest.mark.asyncio
    async def test_list_categories_flattens_groups(self):
        """Category groups are flattened into one list."""
        recorder = Recorder(_ok({"category_groups": [
            {"name": "Internal", "categories": [{"id": "rta", "name": "Inflow: Ready to Assign"}]},
            {"name": "Shared", "categories": [{"id": "c1", "name": "Alice"}, {"id": "c2", "name": "Bob"}]},
        ]}))
        async with _client(recorder) as client:
            categories = await client.list_categories("b1")

        assert [c.id for c in categories] == ["rta", "c1", "c2"]
        assert categories[1].category_group_name == "Shared"


class TestWrites:
    """Tests for write requests."""

    @pytest.mark.asyncio
    async def test_create_sends_only_set_fields(self):
        """Unset draft fields are not part of the body."""
        recorder = Recorder(_ok({"transaction": _txn_json("new")}))
        draft = TransactionDraft(account_id="acct", date=date(2026, 1, 15), amount=-12340, memo="x")
        async with _client(recorder) as client:
            txn = await client.create_transaction("b1", draft)

        request = recorder.requests[0]
        assert request.method == "POST"
        body = json.loads(request.content)
        assert body == {"transaction": {
            "account_id": "acct", "date": "2026-01-15", "amount": -12340, "memo": "x",
        }}
        assert txn.id == "new"

    @pytest.mark.asyncio
    async def test_update_category_budget(self):
        """Budget changes PATCH the month category."""
        recorder = Recorder(_ok({"category": {"id": "c1", "name": "Alice", "budgeted": 5000}}))
        async with _client(recorder) as client:
            category = await client.update_category_budget("b1", "2026-01-01", "c1", 5000)

        request = recorder.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/v1/budgets/b1/months/2026-01-01/categories/c1"
        assert json.loads(request.content) == {"category": {"budgeted": 5000}}
        assert category.budgeted == 5000

    @pytest.mark.asyncio
    async def test_writes_are_not_retried(self):
        """A server error on a write surfaces after one attempt."""
        recorder = Recorder(_error(503))
        async with _client(recorder) as client:
            with pytest.raises(ServiceUnavailable):
                await client.delete_transaction("b1", "t1")

        assert len(recorder.requests) == 1


class TestErrors:
    """Tests for status mapping and retries."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, AuthError),
        (404, NotFoundError),
    ])
    async def test_non_retryable_statuses(self, status, error):
        """Auth and not-found errors are raised on the first attempt."""
        recorder = Recorder(_error(status, detail="nope"))
        async with _client(recorder) as client:
            with pytest.raises(error, match="nope"):
                await client.get_transaction("b1", "t1")

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(self):
        """A 429 on a read is retried."""
        recorder = Recorder(
            httpx.Response(429, headers={"Retry-After": "1"}, json={}),
            _ok({"budgets": []}),
        )
        async with _client(recorder) as client:
            assert await client.list_ledgers() == []

        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        """Persistent rate limiting raises RateLimitError after max_retries attempts."""
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": "2"}, json={}))
        async with _client(recorder) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.list_ledgers()

        assert exc_info.value.retry_after == 2.0
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header,expected", [
        ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
        ("soon", None),
    ])
    async def test_rate_limit_with_non_numeric_retry_after(self, header, expected):
        """HTTP-date and unreadable Retry-After values still raise RateLimitError."""
        recorder = Recorder(httpx.Response(429, headers={"Retry-After": header}, json={}))
        async with _client(recorder) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.list_ledgers()

        assert exc_info.value.retry_after == expected

    @pytest.mark.asyncio
    async def test_server_error_exhausted(self):
        """Any other non-success status is ServiceUnavailable."""
        recorder = Recorder(_error(500))
        async with _client(recorder) as client:
            with pytest.raises(ServiceUnavailable) as exc_info:
                await client.get_month("b1", "2026-01-01")

        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_transport_failure_is_network_error(self):
        """A request that never gets a response is a NetworkError."""
        recorder = Recorder(httpx.ConnectError("connection refused"))
        async with _client(recorder) as client:
            with pytest.raises(NetworkError):
                await client.list_ledgers()

        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """Without a token no request is made."""
        recorder = Recorder(_ok({}))
        client = HttpLedgerClient(
            token=None,
            settings=LedgerApiSettings(base_url=BASE_URL, token=None),
            transport=httpx.MockTransport(recorder),
        )
        with pytest.raises(AuthError):
            await client.list_ledgers()

        assert recorder.requests == []
        assert not client.is_initialized
        await client.close()

    def test_user_messages(self):
        """Every error class carries a user-facing message."""
        assert "token" in AuthError.user_message
        assert "internet" in NetworkError.user_message
        assert NotFoundError("x").user_message != ServiceUnavailable("x").user_message
